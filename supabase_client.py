"""
Supabase integration: email/password auth, profiles table and avatar storage.
All calls pass straight through to the hosted project.
"""

import os
import uuid
import logging
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, Dict, Any

from supabase import create_client, Client, AuthError


logger = logging.getLogger(__name__)

# Accept the frontend-style variable names as a fallback
SUPABASE_URL = os.environ.get("SUPABASE_URL") or os.environ.get("NEXT_PUBLIC_SUPABASE_URL", "")
SUPABASE_ANON_KEY = os.environ.get("SUPABASE_ANON_KEY") or os.environ.get("NEXT_PUBLIC_SUPABASE_ANON_KEY", "")
SUPABASE_SERVICE_ROLE_KEY = os.environ.get("SUPABASE_SERVICE_ROLE_KEY", "")
AVATAR_BUCKET = os.environ.get("SUPABASE_AVATAR_BUCKET", "avatars")
PROFILES_TABLE = "profiles"


class SupabaseNotConfigured(Exception):
    """Raised when SUPABASE_URL / SUPABASE_ANON_KEY are missing or invalid."""


class AuthFailed(Exception):
    """Raised when the auth provider rejects a sign-in or sign-up."""


class ProfileError(Exception):
    """Raised when a profile read/write or avatar upload fails."""


@dataclass
class AuthSession:
    """The slice of a Supabase session kept in the signed cookie."""
    user_id: str
    email: str
    access_token: str
    refresh_token: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["AuthSession"]:
        if not data or not data.get("user_id"):
            return None
        return cls(
            user_id=data["user_id"],
            email=data.get("email") or "",
            access_token=data.get("access_token") or "",
            refresh_token=data.get("refresh_token") or "",
        )


@dataclass
class Profile:
    id: str
    full_name: Optional[str] = None
    email: Optional[str] = None
    bio: Optional[str] = None
    avatar_url: Optional[str] = None
    subscription_status: str = "free"  # free, pro

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Profile":
        return cls(
            id=row["id"],
            full_name=row.get("full_name"),
            email=row.get("email"),
            bio=row.get("bio"),
            avatar_url=row.get("avatar_url"),
            subscription_status=row.get("subscription_status") or "free",
        )


def is_supabase_configured() -> bool:
    """URL must look like http(s) and the anon key must be present."""
    return bool(
        SUPABASE_URL
        and SUPABASE_URL.startswith("http")
        and SUPABASE_ANON_KEY
    )


def is_service_configured() -> bool:
    """Webhooks write profiles with the service role key."""
    return bool(SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY)


def _anon_client() -> Client:
    if not is_supabase_configured():
        raise SupabaseNotConfigured("SUPABASE_URL and SUPABASE_ANON_KEY must be set")
    return create_client(SUPABASE_URL, SUPABASE_ANON_KEY)


def _user_client(session: AuthSession) -> Client:
    """Client acting as the signed-in user, so row level security applies."""
    client = _anon_client()
    client.auth.set_session(session.access_token, session.refresh_token)
    return client


def _service_client() -> Client:
    if not is_service_configured():
        raise SupabaseNotConfigured("SUPABASE_SERVICE_ROLE_KEY must be set")
    return create_client(SUPABASE_URL, SUPABASE_SERVICE_ROLE_KEY)


# ============= AUTH =============

def sign_in_with_password(email: str, password: str) -> AuthSession:
    client = _anon_client()
    try:
        response = client.auth.sign_in_with_password({"email": email, "password": password})
    except AuthError as e:
        logger.info(f"Sign-in rejected for {email}: {e}")
        raise AuthFailed(str(e))

    if not response.session or not response.user:
        raise AuthFailed("Invalid login credentials")

    return AuthSession(
        user_id=response.user.id,
        email=response.user.email or email,
        access_token=response.session.access_token,
        refresh_token=response.session.refresh_token,
    )


def sign_up(email: str, password: str, redirect_to: str) -> Optional[AuthSession]:
    """
    Register a new account.
    Returns a session when the project issues one immediately, or None when
    the user has to confirm their email first.
    """
    client = _anon_client()
    try:
        response = client.auth.sign_up({
            "email": email,
            "password": password,
            "options": {"email_redirect_to": redirect_to},
        })
    except AuthError as e:
        logger.info(f"Sign-up rejected for {email}: {e}")
        raise AuthFailed(str(e))

    if response.session and response.user:
        return AuthSession(
            user_id=response.user.id,
            email=response.user.email or email,
            access_token=response.session.access_token,
            refresh_token=response.session.refresh_token,
        )
    return None


def sign_out(session: AuthSession) -> None:
    """Revoke the session upstream. Best effort: the cookie is cleared regardless."""
    try:
        client = _user_client(session)
        client.auth.sign_out()
    except Exception as e:
        logger.warning(f"Supabase sign-out failed for {session.user_id}: {e}")


# ============= PROFILE =============

def get_profile(session: AuthSession) -> Optional[Profile]:
    """Fetch the user's profile row; a missing row is not an error."""
    try:
        response = (
            _user_client(session)
            .table(PROFILES_TABLE)
            .select("*")
            .eq("id", session.user_id)
            .limit(1)
            .execute()
        )
    except SupabaseNotConfigured:
        raise
    except Exception as e:
        logger.error(f"Error loading profile {session.user_id}: {e}")
        raise ProfileError(str(e))

    rows = response.data or []
    return Profile.from_row(rows[0]) if rows else None


def upsert_profile(
    session: AuthSession,
    full_name: str,
    bio: str,
    current: Optional[Profile] = None,
) -> Profile:
    """Save name and bio; email is synced from the session."""
    updates = {
        "id": session.user_id,
        "email": session.email,
        "full_name": full_name,
        "bio": bio,
        "updated_at": datetime.utcnow().isoformat(),
    }
    try:
        _user_client(session).table(PROFILES_TABLE).upsert(updates).execute()
    except SupabaseNotConfigured:
        raise
    except Exception as e:
        logger.error(f"Error updating profile {session.user_id}: {e}")
        raise ProfileError(str(e))

    return Profile(
        id=session.user_id,
        full_name=full_name,
        email=session.email,
        bio=bio,
        avatar_url=current.avatar_url if current else None,
        subscription_status=current.subscription_status if current else "free",
    )


def upload_avatar(session: AuthSession, data: bytes, content_type: str) -> str:
    """Store an avatar in the avatars bucket and point the profile at it."""
    ext = (content_type.split("/")[-1] or "png").lower()
    if ext == "jpeg":
        ext = "jpg"
    path = f"{session.user_id}/{uuid.uuid4().hex}.{ext}"

    try:
        client = _user_client(session)
        bucket = client.storage.from_(AVATAR_BUCKET)
        bucket.upload(path, data, {"content-type": content_type, "upsert": "true"})
        public_url = bucket.get_public_url(path)
        client.table(PROFILES_TABLE).upsert({
            "id": session.user_id,
            "email": session.email,
            "avatar_url": public_url,
            "updated_at": datetime.utcnow().isoformat(),
        }).execute()
    except SupabaseNotConfigured:
        raise
    except Exception as e:
        logger.error(f"Avatar upload failed for {session.user_id}: {e}")
        raise ProfileError(str(e))

    logger.info(f"Avatar uploaded for {session.user_id}: {path}")
    return public_url


def set_subscription_status(user_id: str, status: str) -> None:
    """Flip a profile between free and pro (service role, webhook only)."""
    client = _service_client()
    try:
        client.table(PROFILES_TABLE).update(
            {"subscription_status": status, "updated_at": datetime.utcnow().isoformat()}
        ).eq("id", user_id).execute()
    except Exception as e:
        logger.error(f"Error setting subscription status for {user_id}: {e}")
        raise ProfileError(str(e))
    logger.info(f"Subscription status for {user_id} set to {status}")
