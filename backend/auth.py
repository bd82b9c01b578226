"""
API key authentication
Each profile holds the SHA-256 of its key; admins are profiles with role "admin"
"""

from fastapi import Depends, Security, HTTPException, status
from fastapi.security import APIKeyHeader
from sqlalchemy.orm import Session
import hashlib
import os
import secrets
from dotenv import load_dotenv

from backend.core.errors import AuthorizationError
from backend.models import Profile, get_db

# Load .env file
load_dotenv()

# API Key header
API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)

DEV_API_KEY = "dev-key-insecure"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    """New random key; only its hash is stored."""
    return secrets.token_urlsafe(32)


def _dev_profile(db: Session) -> Profile:
    """Development fallback: a single non-admin profile behind DEV_API_KEY."""
    key_hash = hash_api_key(DEV_API_KEY)
    profile = db.query(Profile).filter(Profile.api_key_hash == key_hash).first()
    if profile is None:
        profile = Profile(display_name="dev_user", role="user", api_key_hash=key_hash)
        db.add(profile)
        db.commit()
        db.refresh(profile)
    return profile


async def verify_api_key(
    api_key: str = Security(API_KEY_HEADER),
    db: Session = Depends(get_db),
) -> Profile:
    """
    Verify API key and return the caller's profile

    Usage in FastAPI routes:
        @app.get("/protected")
        async def protected_route(user: Profile = Depends(verify_api_key)):
            return {"user": user.display_name}
    """
    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="API key required. Include 'X-API-Key' header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    # Development fallback (never use in production)
    if api_key == DEV_API_KEY and os.getenv("ENVIRONMENT") == "development":
        return _dev_profile(db)

    profile = (
        db.query(Profile)
        .filter(Profile.api_key_hash == hash_api_key(api_key))
        .first()
    )
    if profile is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return profile


async def verify_admin(user: Profile = Security(verify_api_key)) -> Profile:
    """
    Admin-only routes

    Usage:
        @app.post("/admin/settle")
        async def admin_route(user: Profile = Depends(verify_admin)):
            ...
    """
    if user.role != "admin":
        raise AuthorizationError("Admin access required")
    return user
