"""Auth routes: webapp tokens issued from a Telegram login."""

from __future__ import annotations

import hashlib
import hmac
import time
from datetime import datetime, timedelta, timezone

import jwt
from fastapi import APIRouter, Depends, HTTPException
from loguru import logger

from relaybot.api.deps import get_config, get_db
from relaybot.core.channels.base import normalize_user_id
from relaybot.core.channels.context import Source
from relaybot.core.config.schema import Config
from relaybot.memory.models import RefreshRequest, TelegramAuthRequest, TokenResponse
from relaybot.memory.store import MemoryStore

router = APIRouter(prefix="/auth", tags=["auth"])

# Telegram login payloads older than this are rejected
LOGIN_MAX_AGE_S = 86_400


# ── Helpers ──────────────────────────────────────────────────


def create_token(
    user_id: str, secret: str, algorithm: str, expires: timedelta, kind: str = "access"
) -> tuple[str, datetime]:
    """Create a JWT. Returns (token, expiry)."""
    exp = datetime.now(timezone.utc) + expires
    payload = {"sub": user_id, "type": kind, "exp": exp}
    return jwt.encode(payload, secret, algorithm=algorithm), exp


def decode_token(token: str, secret: str, algorithm: str, kind: str = "access") -> str:
    """Decode a JWT and return user_id. Raises on invalid/expired."""
    try:
        payload = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id: str | None = payload.get("sub")
    if user_id is None or payload.get("type") != kind:
        raise HTTPException(status_code=401, detail="Invalid token payload")
    return user_id


def issue_tokens(db: MemoryStore, config: Config, user_id: str) -> TokenResponse:
    """Create and persist a fresh access + refresh token pair."""
    secret, algorithm = config.auth.jwt_secret_key, config.auth.jwt_algorithm
    access, access_exp = create_token(
        user_id, secret, algorithm, timedelta(minutes=config.auth.access_token_expire_minutes)
    )
    refresh, refresh_exp = create_token(
        user_id,
        secret,
        algorithm,
        timedelta(days=config.auth.refresh_token_expire_days),
        kind="refresh",
    )
    db.store_auth_tokens(
        user_id, access, refresh, access_exp.isoformat(), refresh_exp.isoformat()
    )
    return TokenResponse(
        user_id=user_id,
        access_token=access,
        refresh_token=refresh,
        expires_at=access_exp.isoformat(),
    )


def refresh_access_token(db: MemoryStore, config: Config, user_id: str) -> bool:
    """Issue a new access token from the stored refresh token. False if that is impossible."""
    tokens = db.get_auth_tokens(user_id)
    if not tokens or not tokens.get("refresh_token"):
        return False
    try:
        payload = jwt.decode(
            tokens["refresh_token"],
            config.auth.jwt_secret_key,
            algorithms=[config.auth.jwt_algorithm],
        )
    except jwt.InvalidTokenError as e:
        logger.info(f"Refresh token rejected for {user_id}: {e}")
        return False
    if payload.get("sub") != user_id or payload.get("type") != "refresh":
        return False

    access, access_exp = create_token(
        user_id,
        config.auth.jwt_secret_key,
        config.auth.jwt_algorithm,
        timedelta(minutes=config.auth.access_token_expire_minutes),
    )
    db.store_auth_tokens(user_id, access, None, access_exp.isoformat())
    return True


def verify_telegram_login(payload: TelegramAuthRequest, bot_token: str) -> bool:
    """Check the Login Widget signature: HMAC-SHA256 keyed by sha256(bot_token)."""
    fields = payload.model_dump(exclude={"hash"}, exclude_none=True)
    data_check = "\n".join(f"{k}={fields[k]}" for k in sorted(fields))
    secret = hashlib.sha256(bot_token.encode()).digest()
    expected = hmac.new(secret, data_check.encode(), hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, payload.hash):
        return False
    return time.time() - payload.auth_date <= LOGIN_MAX_AGE_S


# ── Endpoints ────────────────────────────────────────────────


@router.post("/telegram", response_model=TokenResponse)
async def telegram_login(
    body: TelegramAuthRequest,
    db: MemoryStore = Depends(get_db),
    config: Config = Depends(get_config),
):
    """Exchange a signed Telegram login for webapp tokens."""
    if not config.auth_enabled:
        raise HTTPException(status_code=400, detail="Webapp auth is disabled")
    if not config.channels.telegram.token or not verify_telegram_login(
        body, config.channels.telegram.token
    ):
        raise HTTPException(status_code=401, detail="Invalid Telegram login")

    user_id = normalize_user_id(Source.TELEGRAM, str(body.id))
    db.get_or_create_user(user_id, name=body.first_name or body.username, source="webapp")
    logger.info(f"Webapp login: {user_id}")
    return issue_tokens(db, config, user_id)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(
    body: RefreshRequest,
    db: MemoryStore = Depends(get_db),
    config: Config = Depends(get_config),
):
    """Rotate the token pair using a refresh token."""
    if not config.auth_enabled:
        raise HTTPException(status_code=400, detail="Webapp auth is disabled")
    user_id = decode_token(
        body.refresh_token, config.auth.jwt_secret_key, config.auth.jwt_algorithm, kind="refresh"
    )
    stored = db.get_auth_tokens(user_id)
    if not stored or stored.get("refresh_token") != body.refresh_token:
        raise HTTPException(status_code=401, detail="Refresh token revoked")
    return issue_tokens(db, config, user_id)
