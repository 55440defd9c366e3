import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException
from firebase_admin import auth as firebase_auth
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.concurrency import run_in_threadpool

from db import IdentityProvider, User, get_db
from errors import UnauthenticatedError

logger = logging.getLogger(__name__)

_PROVIDERS = {
    "google.com": IdentityProvider.GOOGLE,
    "facebook.com": IdentityProvider.FACEBOOK,
}


async def decode_token(token: str) -> dict:
    """Verify a Firebase ID token and return its claims"""
    try:
        return await run_in_threadpool(firebase_auth.verify_id_token, token)
    except Exception as e:
        logger.warning(f"Token verification failed: {e}")
        raise UnauthenticatedError("Invalid authentication token")


async def verify_firebase_token(authorization: Optional[str] = Header(None)):
    """Verify Firebase ID token from Authorization header"""
    if not authorization:
        raise HTTPException(status_code=401, detail="Authentication token is missing")

    # Extract token from "Bearer <token>"
    try:
        token = authorization.split(" ")[1] if " " in authorization else authorization
    except IndexError:
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    try:
        return await decode_token(token)
    except UnauthenticatedError as e:
        raise HTTPException(status_code=401, detail=e.message)


def _provider_from_claims(claims: dict) -> IdentityProvider:
    sign_in = (claims.get("firebase") or {}).get("sign_in_provider")
    return _PROVIDERS.get(sign_in, IdentityProvider.LOCAL)


async def resolve_user(db: AsyncSession, claims: dict) -> User:
    """Map a verified identity assertion to a user, registering it on first sight"""
    uid = claims.get("uid") or claims.get("user_id")
    email = (claims.get("email") or "").strip().lower()
    if not email:
        raise UnauthenticatedError("Identity has no email address")

    user = None
    if uid:
        user = (await db.execute(select(User).where(User.provider_id == uid))).scalar_one_or_none()
    if user is None:
        user = (
            await db.execute(select(User).where(func.lower(User.email) == email))
        ).scalar_one_or_none()
        if user is not None and uid and not user.provider_id:
            user.provider_id = uid
            await db.commit()

    if user is None:
        user = User(
            name=claims.get("name") or email.split("@")[0],
            email=email,
            profile_picture=claims.get("picture"),
            provider=_provider_from_claims(claims).value,
            provider_id=uid,
        )
        db.add(user)
        await db.commit()
        logger.info(f"Registered user {user.id} ({email})")
    return user


async def get_current_user(
    claims: dict = Depends(verify_firebase_token),
    db: AsyncSession = Depends(get_db),
) -> User:
    try:
        return await resolve_user(db, claims)
    except UnauthenticatedError as e:
        raise HTTPException(status_code=401, detail=e.message)
