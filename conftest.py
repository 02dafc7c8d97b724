import base64
import io
import os
import tempfile

# Must be set before the application modules are imported
TEST_TEMP_DIR = tempfile.mkdtemp(prefix="studio-test-")
os.environ["TEMP_DIR"] = TEST_TEMP_DIR
os.environ["ENVIRONMENT"] = "development"
os.environ["SESSION_SECRET"] = "test-session-secret"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["SUPABASE_URL"] = "https://example.supabase.co"
os.environ["SUPABASE_ANON_KEY"] = "anon-test-key"
os.environ.pop("DATABASE_URL", None)
os.environ.pop("DODO_PAYMENTS_API_KEY", None)
os.environ.pop("GEMINI_API_KEY", None)
os.environ.pop("SUPABASE_SERVICE_ROLE_KEY", None)

import pytest
from PIL import Image

import gemini_service
from gemini_service import GeminiAPIError, GeneratedImage
import studio_store

studio_store.init_db()


def make_image_bytes(fmt="PNG", size=(16, 16), color=(250, 204, 21)):
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def png_bytes():
    return make_image_bytes("PNG")


@pytest.fixture
def jpeg_bytes():
    return make_image_bytes("JPEG")


def output_for(prompt):
    return f"out:{prompt}".encode()


@pytest.fixture
def fake_gemini(monkeypatch):
    """Replace the model call; prompts listed in .fail raise an API error."""

    class Fake:
        def __init__(self):
            self.calls = []
            self.fail = set()

        async def __call__(self, prompt, image_base64, model="", config=None, mime_type="image/jpeg"):
            self.calls.append({
                "prompt": prompt,
                "input": base64.b64decode(image_base64),
                "model": model,
                "mime_type": mime_type,
            })
            if prompt in self.fail:
                raise GeminiAPIError("API Error 500: boom")
            return GeneratedImage(mime_type="image/png", data=base64.b64encode(output_for(prompt)).decode())

    fake = Fake()
    monkeypatch.setattr(gemini_service, "generate_image_with_gemini", fake)
    return fake
