"""Supabase JWT validation dependency and role checks."""

import logging
from typing import Optional

from fastapi import Header, HTTPException
from pydantic import BaseModel
from supabase import create_client

from docflow.config import settings
from docflow.storage.base import USER_ROLES_TABLE, JobStore

logger = logging.getLogger(__name__)

ADMIN_ROLES = ("admin", "superadmin")


class AuthContext(BaseModel):
    user_id: str
    email: Optional[str] = None
    # Forwarded to the Edge Function, which acts as the user
    token: str


async def verify_jwt(authorization: str = Header(None)) -> AuthContext:
    """Validate Supabase JWT from Authorization header."""
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid token")

    token = authorization.replace("Bearer ", "")
    try:
        client = create_client(settings.supabase_url, settings.supabase_anon_key)
        user = client.auth.get_user(token).user
    except Exception as e:
        logger.info("Token rejected: %s", e)
        raise HTTPException(status_code=401, detail="Invalid token")
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid token")

    return AuthContext(user_id=user.id, email=user.email, token=token)


async def user_is_admin(store: JobStore, user_id: str) -> bool:
    row = await store.select_one(USER_ROLES_TABLE, user_id=user_id)
    return bool(row) and row.get("role") in ADMIN_ROLES
