"""
Gemini image generation client.
Talks to the generateContent REST endpoint directly or through a proxy
that handles authentication server-side.
"""

import os
import re
import base64
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

import aiohttp


logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = os.environ.get("GEMINI_BASE_URL", "https://proxy.flydao.top/v1")
DEFAULT_MODEL = "gemini-2.5-flash-image"
REQUEST_TIMEOUT_SECONDS = int(os.environ.get("GEMINI_TIMEOUT_SECONDS", "120"))

MODEL_ALIASES = {
    "nano-banana": "gemini-2.5-flash-image",
}

_DATA_URL_PREFIX = re.compile(r"^data:image/(png|jpeg|jpg|webp);base64,")

NO_IMAGE_MESSAGE = (
    "No image generated. The model might have refused the request due to "
    "safety filters or reached its token limit."
)


class GeminiAPIError(Exception):
    """Raised when the generation endpoint fails or returns no image."""


@dataclass
class GenAIConfig:
    """Per-user connection settings."""
    api_key: Optional[str] = None
    base_url: Optional[str] = None

    @property
    def effective_api_key(self) -> str:
        return self.api_key or os.environ.get("GEMINI_API_KEY") or "no-key"

    @property
    def effective_base_url(self) -> str:
        return self.base_url or DEFAULT_BASE_URL


@dataclass
class GeneratedImage:
    """Image returned inline by the model."""
    mime_type: str
    data: str  # raw base64, no data URL prefix

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    @property
    def extension(self) -> str:
        subtype = self.mime_type.split("/")[-1].lower()
        return "jpg" if subtype == "jpeg" else subtype

    def to_bytes(self) -> bytes:
        return base64.b64decode(self.data)


def resolve_model(model: Optional[str]) -> str:
    """Map UI aliases onto real model ids."""
    model = model or DEFAULT_MODEL
    return MODEL_ALIASES.get(model, model)


def strip_data_url(image_base64: str) -> str:
    return _DATA_URL_PREFIX.sub("", image_base64)


def build_generate_url(base_url: str, model: str, api_key: str) -> str:
    return f"{base_url.rstrip('/')}/models/{resolve_model(model)}:generateContent?key={api_key}"


def build_generate_body(prompt: str, image_base64: str, mime_type: str = "image/jpeg") -> Dict[str, Any]:
    """Standard Gemini JSON REST body: one text part plus one inline image."""
    return {
        "contents": [{
            "parts": [
                {"text": prompt},
                {
                    "inlineData": {
                        "mimeType": mime_type,
                        "data": strip_data_url(image_base64),
                    }
                },
            ]
        }]
    }


def extract_image(data: Dict[str, Any]) -> GeneratedImage:
    """
    Pull the first inline image out of a generateContent response.

    Raises:
        GeminiAPIError: if the response carries no image part
    """
    candidates = data.get("candidates") or [{}]
    parts = (candidates[0].get("content") or {}).get("parts") or []
    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline:
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            return GeneratedImage(mime_type=mime_type, data=inline["data"])
        if part.get("text"):
            logger.debug(f"Model text response: {part['text']}")

    raise GeminiAPIError(NO_IMAGE_MESSAGE)


async def _read_json(response: aiohttp.ClientResponse) -> Dict[str, Any]:
    """Decode a 2xx body; proxies sometimes answer with an HTML page instead of JSON."""
    try:
        data = await response.json(content_type=None)
    except ValueError:
        text = await response.text()
        logger.error(f"Non-JSON response from {response.url.host}: {text[:500]}")
        raise GeminiAPIError(f"Invalid response (not JSON): {text[:200]}")
    if not isinstance(data, dict):
        raise GeminiAPIError(f"Invalid response: expected a JSON object, got {type(data).__name__}")
    return data


async def generate_image_with_gemini(
    prompt: str,
    image_base64: str,
    model: str = DEFAULT_MODEL,
    config: Optional[GenAIConfig] = None,
    mime_type: str = "image/jpeg",
) -> GeneratedImage:
    """
    Generate a stylised image from a prompt and an input photo.

    Args:
        prompt: Style or edit instruction
        image_base64: Input image, raw base64 or data URL
        model: Model id or alias
        config: API key / base URL overrides
        mime_type: MIME type of the input image

    Returns:
        The first image part of the model response
    """
    config = config or GenAIConfig()
    url = build_generate_url(config.effective_base_url, model, config.effective_api_key)
    body = build_generate_body(prompt, image_base64, mime_type)

    logger.info(f"Requesting generation: model={resolve_model(model)}, prompt={len(prompt)} chars")

    async with aiohttp.ClientSession() as session:
        async with session.post(
            url,
            json=body,
            headers={"Content-Type": "application/json"},
            timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT_SECONDS),
        ) as response:
            if response.status < 200 or response.status >= 300:
                text = await response.text()
                logger.error(f"Gemini API error: {response.status}")
                logger.error(f"Response text: {text[:500]}")
                raise GeminiAPIError(f"API Error {response.status}: {text}")
            data = await _read_json(response)

    image = extract_image(data)
    logger.info(f"Generation complete: {image.mime_type}, {len(image.data)} base64 chars")
    return image


async def test_gemini_connection(config: Optional[GenAIConfig], model: str) -> str:
    """Send a tiny text-only request to verify the key and base URL."""
    config = config or GenAIConfig()
    url = build_generate_url(config.effective_base_url, model, config.effective_api_key)

    async with aiohttp.ClientSession() as session:
        async with session.post(
            url,
            json={
                "contents": [{"parts": [{"text": "Hello, reply with 'OK'."}]}],
                "generationConfig": {"maxOutputTokens": 10},
            },
            headers={"Content-Type": "application/json"},
            timeout=aiohttp.ClientTimeout(total=30),
        ) as response:
            if response.status < 200 or response.status >= 300:
                text = await response.text()
                raise GeminiAPIError(f"HTTP {response.status}: {text}")
            data = await _read_json(response)

    try:
        text = data["candidates"][0]["content"]["parts"][0].get("text")
    except (KeyError, IndexError, TypeError):
        text = None
    return text or "Connection established (No text response)"
