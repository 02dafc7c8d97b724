"""
Nano Banana Photo Studio Web Application
FastAPI backend: upload a portrait, fan out stylised generations to a
Gemini image model, then retry, refine and download the results.
"""

import os
import io
import base64
import binascii
import re
import sys
import uuid
import asyncio
import logging
from datetime import datetime
from typing import Optional, Dict, Any, Tuple
from urllib.parse import quote

import aiohttp
from PIL import Image
from fastapi import FastAPI, File, UploadFile, Form, BackgroundTasks, HTTPException, Request
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware
from pydantic import BaseModel

from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

import billing_service
import gemini_service
import studio_jobs
import studio_store
import supabase_client
from gemini_service import GenAIConfig, GeminiAPIError
from presets import (
    DEFAULT_LANG,
    DEFAULT_MODEL,
    DEFAULT_THEME,
    MODEL_OPTIONS,
    STYLES,
    SUBSCRIPTION_PRICE_LABEL,
    THEMES,
    TRANSLATIONS,
    get_theme,
    is_known_model,
    model_badge,
    translate,
)
from studio_jobs import BatchStore, BatchStateError
from supabase_client import AuthSession, AuthFailed, ProfileError, SupabaseNotConfigured

# Configure logging based on environment
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(sys.stdout)
    ]
)
logger = logging.getLogger(__name__)

logger.info("="*60)
logger.info("Starting Nano Banana Photo Studio")
logger.info("="*60)

# Configuration
TEMP_DIR = os.path.abspath(os.environ.get("TEMP_DIR", "./temp"))
ENVIRONMENT = os.environ.get("ENVIRONMENT", "production").lower()
MAX_UPLOAD_SIZE_MB = int(os.environ.get("MAX_UPLOAD_SIZE_MB", "8"))
MAX_AVATAR_SIZE_MB = int(os.environ.get("MAX_AVATAR_SIZE_MB", "2"))
BATCH_MAX_AGE_HOURS = int(os.environ.get("BATCH_MAX_AGE_HOURS", "24"))
RATE_LIMIT_ENABLED = os.environ.get("RATE_LIMIT_ENABLED", "true").lower() == "true"
GENERATE_RATE_LIMIT = os.environ.get("GENERATE_RATE_LIMIT", "20/minute")
ALLOWED_ORIGINS = os.environ.get("ALLOWED_ORIGINS", "*").split(",")
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
MAX_PROMPT_LENGTH = 4000

# Per-user studio defaults, overridable through /api/settings
DEFAULT_API_KEY = os.environ.get("DEFAULT_API_KEY", "123456")
DEFAULT_BASE_URL = gemini_service.DEFAULT_BASE_URL

SESSION_SECRET = os.environ.get("SESSION_SECRET", "")
if not SESSION_SECRET:
    if ENVIRONMENT == "production":
        logger.error("SESSION_SECRET is not set! Generating a random one (not secure for production).")
    else:
        logger.warning("SESSION_SECRET is not set; generating a temporary development secret.")
    SESSION_SECRET = uuid.uuid4().hex

logger.info(f"TEMP_DIR: {TEMP_DIR}")
logger.info(f"Gemini base URL: {DEFAULT_BASE_URL}")
logger.info(f"Rate limiting: {RATE_LIMIT_ENABLED} ({GENERATE_RATE_LIMIT})")
logger.info(f"Supabase configured: {supabase_client.is_supabase_configured()}")
logger.info(f"Dodo Payments enabled: {billing_service.get_client() is not None}")

os.makedirs(TEMP_DIR, exist_ok=True)
os.makedirs(studio_jobs.BATCHES_DIR, exist_ok=True)

# Initialize database
studio_store.init_db()

app = FastAPI(
    title="Nano Banana Photo Studio",
    version="1.0.0",
    docs_url="/docs" if ENVIRONMENT == "development" else None,
    redoc_url=None,
)

limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

is_dev = ENVIRONMENT == "development"
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if is_dev else [origin.strip() for origin in ALLOWED_ORIGINS],
    allow_credentials=False,
    allow_methods=["*"] if is_dev else ["GET", "POST", "DELETE"],
    allow_headers=["*"] if is_dev else ["Content-Type"],
)

app.add_middleware(
    SessionMiddleware,
    secret_key=SESSION_SECRET,
    session_cookie="studio_session",
    max_age=30 * 24 * 60 * 60,  # 30 days
    same_site="lax",
    https_only=ENVIRONMENT == "production",
)


@app.middleware("http")
async def add_security_headers(request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    response.headers["Permissions-Policy"] = "camera=(), microphone=(), geolocation=()"
    csp_header = (
        "default-src 'self'; "
        "base-uri 'self'; "
        "object-src 'none'; "
        "frame-ancestors 'none'; "
        "script-src 'self' 'unsafe-inline' cdn.tailwindcss.com; "
        "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com; "
        "img-src 'self' blob: data: https:; "
        "connect-src 'self'; "
        "font-src 'self' https://fonts.gstatic.com; "
    )
    if not is_dev:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    response.headers["Content-Security-Policy"] = csp_header
    return response


BASE_DIR = os.path.dirname(os.path.abspath(__file__))
templates = Jinja2Templates(directory=os.path.join(BASE_DIR, "frontend", "templates"))
app.mount("/static", StaticFiles(directory=os.path.join(BASE_DIR, "frontend", "static")), name="static")


class SettingsUpdate(BaseModel):
    """Partial update of the user's studio settings."""
    model: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    theme: Optional[str] = None
    lang: Optional[str] = None


class EditRequest(BaseModel):
    instruction: str


# ============= SESSION HELPERS =============

def get_auth(request: Request) -> Optional[AuthSession]:
    return AuthSession.from_dict(request.session.get("auth"))


def require_auth(request: Request) -> AuthSession:
    auth = get_auth(request)
    if not auth:
        raise HTTPException(status_code=401, detail="Authentication required")
    return auth


def get_settings(request: Request) -> Dict[str, str]:
    """Studio settings with defaults applied."""
    stored = request.session.get("settings") or {}
    return {
        "model": stored.get("model") or DEFAULT_MODEL,
        "api_key": stored.get("api_key") if stored.get("api_key") is not None else DEFAULT_API_KEY,
        "base_url": stored.get("base_url") or DEFAULT_BASE_URL,
        "theme": stored.get("theme") if stored.get("theme") in THEMES else DEFAULT_THEME,
        "lang": stored.get("lang") if stored.get("lang") in TRANSLATIONS else DEFAULT_LANG,
    }


def genai_config(settings: Dict[str, str]) -> GenAIConfig:
    return GenAIConfig(api_key=settings["api_key"], base_url=settings["base_url"])


def render_page(request: Request, template: str, status_code: int = 200, **context: Any) -> HTMLResponse:
    """Render a themed page; shows the configuration warning if Supabase is unset."""
    settings = get_settings(request)
    lang = settings["lang"]
    base_context = {
        "settings": settings,
        "theme": get_theme(settings["theme"]),
        "lang": lang,
        "t": lambda key: translate(lang, key),
        "auth": get_auth(request),
    }
    if not supabase_client.is_supabase_configured():
        return templates.TemplateResponse(request, "config_warning.html", base_context, status_code=503)
    base_context.update(context)
    return templates.TemplateResponse(request, template, base_context, status_code=status_code)


def redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=303)


# Validation functions
def validate_batch_id(batch_id: str) -> str:
    """Validate batch ID format to prevent path traversal attacks."""
    if not re.match(r'^[a-f0-9\-]{36}$', batch_id):
        raise HTTPException(status_code=400, detail="Invalid batch ID format")
    return batch_id


def validate_item_id(item_id: str) -> str:
    if not re.match(r'^[a-f0-9]{12}$', item_id):
        raise HTTPException(status_code=400, detail="Invalid item ID format")
    return item_id


_DATA_URL_HEADER = re.compile(r"^data:(image/[\w.+-]+);base64,")


# Pillow format -> MIME type the image model accepts as input.
# MPO is what many phone cameras write; it is a JPEG with extra frames appended.
MODEL_INPUT_TYPES = {
    "JPEG": "image/jpeg",
    "MPO": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}


def prepare_image(data: bytes) -> Optional[Tuple[bytes, str]]:
    """
    Validate an uploaded image and return (bytes, mime_type) ready for the model.

    JPEG, PNG and WEBP pass through untouched; any other decodable format
    (GIF, BMP, TIFF, ...) is re-encoded as PNG. Returns None if the bytes
    are not an image.
    """
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "").upper()
            img.verify()
    except Exception:
        return None

    if fmt in MODEL_INPUT_TYPES:
        return data, MODEL_INPUT_TYPES[fmt]

    try:
        with Image.open(io.BytesIO(data)) as img:
            converted = img.convert("RGBA")
            buf = io.BytesIO()
            converted.save(buf, format="PNG")
    except Exception as e:
        logger.warning(f"Could not convert {fmt or 'unknown'} image to PNG: {e}")
        return None

    logger.info(f"Converted {fmt} upload to PNG")
    return buf.getvalue(), "image/png"


async def read_image_upload(upload: UploadFile, max_size_mb: int, lang: str) -> Tuple[bytes, str]:
    """Read an uploaded photo, enforcing size and image type."""
    image_bytes = await upload.read()
    if len(image_bytes) == 0:
        raise HTTPException(status_code=400, detail="Empty image file")
    if len(image_bytes) > max_size_mb * 1024 * 1024:
        logger.warning(f"Upload too large: {len(image_bytes)} bytes (max {max_size_mb}MB)")
        raise HTTPException(status_code=413, detail=translate(lang, "errorTooLarge"))

    prepared = prepare_image(image_bytes)
    if not prepared:
        raise HTTPException(status_code=400, detail=translate(lang, "errorNotImage"))
    return prepared


def load_owned_batch(batch_id: str, auth: AuthSession) -> studio_jobs.Batch:
    """Batches are private; another user's batch looks like a missing one."""
    validate_batch_id(batch_id)
    batch = BatchStore.get_batch(batch_id)
    if not batch or batch.user_id != auth.user_id:
        raise HTTPException(status_code=404, detail="Batch not found")
    return batch


def batch_to_payload(batch: studio_jobs.Batch) -> Dict[str, Any]:
    items = []
    for item in batch.items:
        image_url = None
        download_url = None
        if item.has_image:
            base = f"/api/batches/{batch.batch_id}/items/{item.item_id}/image"
            image_url = f"{base}?v={int(item.updated_at * 1000)}"
            download_url = f"{base}?download=1"
        items.append({
            "item_id": item.item_id,
            "style_id": item.style_id,
            "title": item.title,
            "emoji": item.emoji,
            "prompt": item.prompt,
            "status": item.status,
            "error": item.error,
            "edits": item.edits,
            "image_url": image_url,
            "download_url": download_url,
        })
    return {
        "batch_id": batch.batch_id,
        "status": batch.status,
        "mode": batch.mode,
        "model": batch.model,
        "badge": model_badge(batch.model),
        "error": batch.error,
        "items": items,
    }


@app.on_event("startup")
async def startup_event():
    """Initialize application on startup."""
    os.makedirs(TEMP_DIR, exist_ok=True)
    os.makedirs(studio_jobs.BATCHES_DIR, exist_ok=True)
    cleanup_lock_file = os.path.join(TEMP_DIR, ".cleanup_lock")
    try:
        # Only one worker performs cleanup
        if not os.path.exists(cleanup_lock_file):
            with open(cleanup_lock_file, 'w') as f:
                f.write(str(os.getpid()))
            asyncio.create_task(async_cleanup_old_batches(cleanup_lock_file))
    except OSError as e:
        logger.warning(f"Could not start cleanup: {e}")

    logger.info(f"Application started. Environment: {ENVIRONMENT}")


async def async_cleanup_old_batches(lock_file: str):
    """Async cleanup that runs in background."""
    try:
        await asyncio.sleep(5)
        BatchStore.cleanup_old_batches(BATCH_MAX_AGE_HOURS)
    finally:
        if os.path.exists(lock_file):
            os.remove(lock_file)


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "version": "1.0.0",
        "supabase_configured": supabase_client.is_supabase_configured(),
    }


@app.get("/ready")
async def readiness_check():
    temp_dir_exists = os.path.exists(TEMP_DIR)
    return {
        "ready": temp_dir_exists,
        "temp_dir": TEMP_DIR,
        "timestamp": datetime.now().isoformat()
    }


# ============= AUTH PAGES =============

@app.get("/")
async def root():
    return redirect("/dashboard")


@app.get("/login", response_class=HTMLResponse)
async def login_form(request: Request):
    if get_auth(request):
        return redirect("/dashboard")
    return render_page(request, "login.html", error="", email="")


@app.post("/login", response_class=HTMLResponse)
def login_submit(request: Request, email: str = Form(...), password: str = Form(...)):
    if get_auth(request):
        return redirect("/dashboard")
    if not supabase_client.is_supabase_configured():
        return render_page(request, "login.html")

    try:
        auth = supabase_client.sign_in_with_password(email.strip(), password)
    except AuthFailed as e:
        return render_page(request, "login.html", status_code=400, error=str(e), email=email)

    request.session["auth"] = auth.to_dict()
    logger.info(f"User signed in: {auth.user_id}")
    return redirect("/dashboard")


@app.get("/signup", response_class=HTMLResponse)
async def signup_form(request: Request):
    if get_auth(request):
        return redirect("/dashboard")
    return render_page(request, "signup.html", error="", email="")


@app.post("/signup", response_class=HTMLResponse)
def signup_submit(request: Request, email: str = Form(...), password: str = Form(...)):
    if get_auth(request):
        return redirect("/dashboard")
    if not supabase_client.is_supabase_configured():
        return render_page(request, "signup.html")
    if len(password) < 6:
        return render_page(
            request, "signup.html", status_code=400,
            error="Password should be at least 6 characters.", email=email,
        )

    try:
        auth = supabase_client.sign_up(email.strip(), password, redirect_to=PUBLIC_BASE_URL)
    except AuthFailed as e:
        return render_page(request, "signup.html", status_code=400, error=str(e), email=email)

    if auth is None:
        return render_page(request, "verify_email.html", email=email)

    request.session["auth"] = auth.to_dict()
    logger.info(f"User signed up: {auth.user_id}")
    return redirect("/dashboard")


@app.get("/logout")
def logout_page(request: Request):
    auth = get_auth(request)
    if auth:
        supabase_client.sign_out(auth)
    request.session.pop("auth", None)
    return redirect("/login")


@app.get("/api/auth/me")
async def get_auth_me(request: Request):
    """Get current user info from session."""
    auth = get_auth(request)
    if not auth:
        return {"authenticated": False}
    return {
        "authenticated": True,
        "user": {"id": auth.user_id, "email": auth.email},
    }


@app.post("/api/auth/logout")
def logout(request: Request):
    """Clear user session."""
    auth = get_auth(request)
    if auth:
        supabase_client.sign_out(auth)
    request.session.pop("auth", None)
    return {"success": True}


# ============= STUDIO =============

@app.get("/dashboard", response_class=HTMLResponse)
async def dashboard(request: Request):
    auth = get_auth(request)
    if not auth:
        return redirect("/login")
    settings = get_settings(request)
    return render_page(
        request,
        "dashboard.html",
        styles=STYLES,
        themes=THEMES,
        model_options=MODEL_OPTIONS,
        badge=model_badge(settings["model"]),
        strings=TRANSLATIONS[settings["lang"]],
        max_upload_mb=MAX_UPLOAD_SIZE_MB,
    )


@app.get("/api/settings")
async def read_settings(request: Request):
    require_auth(request)
    return get_settings(request)


@app.post("/api/settings")
async def save_settings(request: Request, update: SettingsUpdate):
    require_auth(request)
    settings = get_settings(request)

    if update.model is not None:
        if not is_known_model(update.model):
            raise HTTPException(status_code=400, detail=f"Unknown model: {update.model}")
        settings["model"] = update.model
    if update.api_key is not None:
        settings["api_key"] = update.api_key.strip()
    if update.base_url is not None:
        base_url = update.base_url.strip()
        if base_url and not base_url.startswith(("http://", "https://")):
            raise HTTPException(status_code=400, detail="Base URL must start with http:// or https://")
        settings["base_url"] = base_url or DEFAULT_BASE_URL
    if update.theme is not None:
        if update.theme not in THEMES:
            raise HTTPException(status_code=400, detail=f"Unknown theme: {update.theme}")
        settings["theme"] = update.theme
    if update.lang is not None:
        if update.lang not in TRANSLATIONS:
            raise HTTPException(status_code=400, detail=f"Unsupported language: {update.lang}")
        settings["lang"] = update.lang

    request.session["settings"] = settings
    return settings


@app.post("/api/settings/test")
async def test_connection(request: Request, update: Optional[SettingsUpdate] = None):
    """Ping the generation endpoint with the saved (or supplied) settings."""
    require_auth(request)
    settings = get_settings(request)
    if update:
        for key in ("model", "api_key", "base_url"):
            value = getattr(update, key)
            if value is not None:
                settings[key] = value.strip() or settings[key]

    logs = [f"[{datetime.now().strftime('%H:%M:%S')}] Ping: {settings['base_url']}"]
    try:
        result = await gemini_service.test_gemini_connection(genai_config(settings), settings["model"])
        logs.append(f"✅ {result}")
        ok = True
    except (GeminiAPIError, aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.warning(f"Connection test failed: {e}")
        logs.append(f"❌ {e}")
        ok = False
    return {"ok": ok, "logs": logs}


@app.post("/api/generate")
@limiter.limit(GENERATE_RATE_LIMIT)
async def generate(
    request: Request,
    background_tasks: BackgroundTasks,
    image: UploadFile = File(...),
    mode: str = Form(studio_jobs.MODE_PRESET),
    custom_prompt: str = Form(""),
):
    """
    Start a generation batch.

    Accepts the portrait and the mode; returns the batch with every item
    loading. The fan-out runs in the background and is polled via
    /api/batches/{batch_id}.
    """
    auth = require_auth(request)
    settings = get_settings(request)
    lang = settings["lang"]

    logger.info("="*60)
    logger.info(f"API REQUEST: POST /api/generate - user={auth.user_id}, mode={mode}")

    if mode not in (studio_jobs.MODE_PRESET, studio_jobs.MODE_CUSTOM):
        raise HTTPException(status_code=400, detail=f"Unknown mode: {mode}")

    custom_prompt = custom_prompt.strip()
    if mode == studio_jobs.MODE_CUSTOM:
        if not custom_prompt:
            raise HTTPException(status_code=400, detail=translate(lang, "errorNoPrompt"))
        if len(custom_prompt) > MAX_PROMPT_LENGTH:
            raise HTTPException(status_code=400, detail=f"Prompt too long (max {MAX_PROMPT_LENGTH} characters)")

    image_bytes, mime_type = await read_image_upload(image, MAX_UPLOAD_SIZE_MB, lang)
    logger.info(f"✓ Image read: {len(image_bytes)} bytes, {mime_type}")

    items = studio_jobs.build_items(mode, custom_prompt, lang)
    batch = studio_jobs.create_batch(
        user_id=auth.user_id,
        mode=mode,
        model=settings["model"],
        source_bytes=image_bytes,
        source_mime=mime_type,
        items=items,
    )

    background_tasks.add_task(studio_jobs.run_batch, batch.batch_id, genai_config(settings))
    logger.info(f"✓✓✓ Batch {batch.batch_id} queued with {len(items)} item(s)")
    return batch_to_payload(batch)


@app.get("/api/batches/{batch_id}")
async def get_batch(batch_id: str, request: Request):
    auth = require_auth(request)
    return batch_to_payload(load_owned_batch(batch_id, auth))


@app.get("/api/batches/{batch_id}/items/{item_id}/image")
async def get_item_image(batch_id: str, item_id: str, request: Request, download: bool = False):
    """Serve an item's current output, inline or as a download."""
    auth = require_auth(request)
    batch = load_owned_batch(batch_id, auth)
    validate_item_id(item_id)

    item = batch.get_item(item_id)
    if not item:
        raise HTTPException(status_code=404, detail="Item not found")
    image_bytes = BatchStore.get_item_image(batch_id, item_id) if item.has_image else None
    if image_bytes is None:
        raise HTTPException(status_code=400, detail="Image not available")

    mime_type = item.mime_type or "image/png"
    ext = mime_type.split("/")[-1].replace("jpeg", "jpg")
    filename = f"nano-banana-{item.title}.{ext}"
    disposition = "attachment" if download else "inline"
    return Response(
        content=image_bytes,
        media_type=mime_type,
        headers={
            "Content-Disposition": (
                f"{disposition}; filename=\"nano-banana-{item.item_id}.{ext}\"; "
                f"filename*=UTF-8''{quote(filename)}"
            ),
            "Cache-Control": "private, max-age=3600",
        },
    )


@app.post("/api/batches/{batch_id}/items/{item_id}/retry")
async def retry_item(batch_id: str, item_id: str, request: Request, background_tasks: BackgroundTasks):
    """Regenerate one item from the original photo."""
    auth = require_auth(request)
    batch = load_owned_batch(batch_id, auth)
    validate_item_id(item_id)

    try:
        studio_jobs.mark_item_loading(batch, item_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Item not found")
    except BatchStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    background_tasks.add_task(studio_jobs.retry_item, batch_id, item_id, genai_config(get_settings(request)))
    return batch_to_payload(batch)


@app.post("/api/batches/{batch_id}/items/{item_id}/edit")
async def edit_item(
    batch_id: str,
    item_id: str,
    body: EditRequest,
    request: Request,
    background_tasks: BackgroundTasks,
):
    """Refine an item's current output with a follow-up instruction."""
    auth = require_auth(request)
    batch = load_owned_batch(batch_id, auth)
    validate_item_id(item_id)

    instruction = body.instruction.strip()
    if not instruction:
        raise HTTPException(status_code=400, detail="Edit instruction is required")
    if len(instruction) > MAX_PROMPT_LENGTH:
        raise HTTPException(status_code=400, detail=f"Instruction too long (max {MAX_PROMPT_LENGTH} characters)")

    try:
        studio_jobs.mark_item_loading(batch, item_id, for_edit=True)
    except KeyError:
        raise HTTPException(status_code=404, detail="Item not found")
    except BatchStateError as e:
        raise HTTPException(status_code=409, detail=str(e))

    background_tasks.add_task(
        studio_jobs.edit_item, batch_id, item_id, instruction, genai_config(get_settings(request))
    )
    return batch_to_payload(batch)


@app.get("/api/history")
async def read_history(request: Request):
    auth = require_auth(request)
    items = await run_in_threadpool(studio_store.get_history, auth.user_id)
    for entry in items:
        entry["image_url"] = f"/api/history/{entry['id']}/image"
    return {"items": items}


@app.get("/api/history/{entry_id}/image")
async def read_history_image(entry_id: str, request: Request):
    auth = require_auth(request)
    if not re.match(r'^[a-f0-9]{32}$', entry_id):
        raise HTTPException(status_code=400, detail="Invalid history ID format")

    data_url = await run_in_threadpool(studio_store.get_history_image, auth.user_id, entry_id)
    match = _DATA_URL_HEADER.match(data_url or "")
    if not match:
        raise HTTPException(status_code=404, detail="History entry not found")

    try:
        image_bytes = base64.b64decode(data_url[match.end():])
    except binascii.Error:
        logger.error(f"Corrupt image payload in history entry {entry_id}")
        raise HTTPException(status_code=404, detail="History entry not found")

    return Response(
        content=image_bytes,
        media_type=match.group(1),
        headers={"Cache-Control": "private, max-age=86400"},
    )


@app.delete("/api/history")
async def delete_history(request: Request):
    auth = require_auth(request)
    removed = await run_in_threadpool(studio_store.clear_history, auth.user_id)
    return {"cleared": removed}


# ============= PROFILE =============

def _load_profile_or_none(auth: AuthSession) -> Optional[supabase_client.Profile]:
    try:
        return supabase_client.get_profile(auth)
    except (ProfileError, SupabaseNotConfigured):
        return None


def render_profile(
    request: Request,
    auth: AuthSession,
    profile: Optional[supabase_client.Profile],
    message: str = "",
    error: bool = False,
    status_code: int = 200,
) -> HTMLResponse:
    """Profile page; Pro if either the profile flag or the local billing mirror says so."""
    subscription = studio_store.get_subscription(auth.user_id)
    is_pro = bool(profile and profile.subscription_status == "pro")
    if subscription and billing_service.profile_status_for(subscription["status"]) == "pro":
        is_pro = True
    return render_page(
        request, "profile.html", status_code=status_code,
        profile=profile, subscription=subscription, is_pro=is_pro,
        message=message, error=error,
    )


@app.get("/profile", response_class=HTMLResponse)
def profile_page(request: Request):
    auth = get_auth(request)
    if not auth:
        return redirect("/login")
    if not supabase_client.is_supabase_configured():
        return render_page(request, "profile.html")
    return render_profile(request, auth, _load_profile_or_none(auth))


@app.post("/profile", response_class=HTMLResponse)
def profile_save(request: Request, full_name: str = Form(""), bio: str = Form("")):
    auth = get_auth(request)
    if not auth:
        return redirect("/login")
    lang = get_settings(request)["lang"]
    current = _load_profile_or_none(auth)

    try:
        profile = supabase_client.upsert_profile(auth, full_name.strip(), bio.strip(), current=current)
    except (ProfileError, SupabaseNotConfigured):
        draft = supabase_client.Profile(
            id=auth.user_id,
            full_name=full_name,
            email=auth.email,
            bio=bio,
            avatar_url=current.avatar_url if current else None,
            subscription_status=current.subscription_status if current else "free",
        )
        return render_profile(
            request, auth, draft,
            message=translate(lang, "profileSaveFailed"), error=True, status_code=500,
        )

    return render_profile(request, auth, profile, message=translate(lang, "profileSaved"))


@app.post("/profile/avatar", response_class=HTMLResponse)
async def profile_avatar(request: Request, avatar: UploadFile = File(...)):
    auth = get_auth(request)
    if not auth:
        return redirect("/login")
    lang = get_settings(request)["lang"]

    data = await avatar.read()
    profile = await run_in_threadpool(_load_profile_or_none, auth)
    if len(data) > MAX_AVATAR_SIZE_MB * 1024 * 1024:
        return await run_in_threadpool(
            render_profile, request, auth, profile,
            translate(lang, "errorAvatarSize"), True, 413,
        )

    prepared = prepare_image(data) if data else None
    if not prepared:
        return await run_in_threadpool(
            render_profile, request, auth, profile,
            translate(lang, "errorNotImage"), True, 400,
        )
    data, mime_type = prepared

    try:
        await run_in_threadpool(supabase_client.upload_avatar, auth, data, mime_type)
    except (ProfileError, SupabaseNotConfigured):
        return await run_in_threadpool(
            render_profile, request, auth, profile,
            translate(lang, "errorUploadFailed"), True, 502,
        )

    profile = await run_in_threadpool(_load_profile_or_none, auth)
    return await run_in_threadpool(render_profile, request, auth, profile)


# ============= BILLING =============

@app.get("/subscribe", response_class=HTMLResponse)
async def subscribe_page(request: Request):
    if not get_auth(request):
        return redirect("/login")
    return render_page(request, "subscribe.html", price=SUBSCRIPTION_PRICE_LABEL, error="")


@app.post("/subscribe")
def subscribe_submit(request: Request):
    """Start hosted checkout and send the browser there."""
    auth = get_auth(request)
    if not auth:
        return redirect("/login")
    lang = get_settings(request)["lang"]

    try:
        checkout = billing_service.create_checkout(auth.user_id, auth.email)
    except (billing_service.BillingNotConfigured, billing_service.CheckoutError) as e:
        logger.error(f"Payment error: {e}")
        return render_page(
            request, "subscribe.html", status_code=502,
            price=SUBSCRIPTION_PRICE_LABEL, error=f"{translate(lang, 'paymentInitFailed')}: {e}",
        )
    return redirect(checkout["checkout_url"])


@app.post("/api/billing/checkout")
def get_checkout_url(request: Request):
    """Create hosted checkout session for the Pro upgrade."""
    auth = require_auth(request)
    try:
        return billing_service.create_checkout(auth.user_id, auth.email)
    except billing_service.BillingNotConfigured as e:
        raise HTTPException(status_code=500, detail=str(e))
    except billing_service.CheckoutError as e:
        raise HTTPException(status_code=502, detail=str(e))


@app.post("/api/billing/webhook")
async def handle_webhook(request: Request):
    """Handle Dodo Payments webhook events."""
    raw_body = await request.body()
    headers = {
        "webhook-id": request.headers.get("webhook-id", ""),
        "webhook-signature": request.headers.get("webhook-signature", ""),
        "webhook-timestamp": request.headers.get("webhook-timestamp", ""),
    }
    try:
        return await run_in_threadpool(billing_service.handle_webhook, raw_body, headers)
    except billing_service.BillingNotConfigured as e:
        raise HTTPException(status_code=500, detail=str(e))
    except billing_service.WebhookSignatureError as e:
        raise HTTPException(status_code=401, detail=str(e))
    except billing_service.WebhookProcessingError as e:
        raise HTTPException(status_code=502, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/payment/success", response_class=HTMLResponse)
async def payment_success(request: Request):
    return render_page(request, "payment_success.html")


@app.get("/payment/cancel", response_class=HTMLResponse)
async def payment_cancel(request: Request):
    return render_page(request, "payment_cancel.html")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
