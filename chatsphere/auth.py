import logging
import time
from typing import Optional

from fastapi import Depends, HTTPException, Request, WebSocket
from jose import JWTError, jwt
from passlib.context import CryptContext

from . import config

log = logging.getLogger(__name__)

# New passwords use Argon2; bcrypt hashes from older seeds still verify.
pwd_context = CryptContext(
    schemes=["argon2", "bcrypt"],
    default="argon2",
    deprecated="auto",
)

_DEV_SECRET = "dev-unsafe-secret"

# Identity used for every request when DISABLE_AUTH=1 (tests, local dev).
ANONYMOUS_ADMIN = {"id": "admin", "username": "admin", "role": "admin"}


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, stored: str) -> bool:
    try:
        return bool(pwd_context.verify(password, stored))
    except Exception:
        return False


def _jwt_secret() -> str:
    secret = (config.AUTH_SECRET or "").strip()
    if not secret:
        log.warning("AUTH_SECRET is not set; using an insecure development secret")
        return _DEV_SECRET
    return secret


def issue_access_token(user: dict) -> str:
    now = int(time.time())
    payload = {
        "sub": str(user["id"]),
        "username": str(user["username"]),
        "role": str(user.get("role") or "user"),
        "iat": now,
        "exp": now + int(config.ACCESS_TOKEN_TTL_SECONDS),
        "iss": config.JWT_ISSUER,
    }
    return jwt.encode(payload, _jwt_secret(), algorithm="HS256")


def parse_access_token(token: str) -> Optional[dict]:
    if not token:
        return None
    try:
        data = jwt.decode(token, _jwt_secret(), algorithms=["HS256"], issuer=config.JWT_ISSUER)
    except JWTError:
        return None
    if not data.get("sub") or not data.get("username"):
        return None
    return {"id": data["sub"], "username": data["username"], "role": data.get("role") or "user"}


def token_from_headers(headers, cookies, query_params) -> Optional[str]:
    auth = (headers.get("authorization") or "").strip()
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    token = cookies.get(config.ACCESS_COOKIE_NAME)
    if token:
        return token
    return query_params.get("token") or None


async def get_current_user(request: Request) -> dict:
    if config.DISABLE_AUTH:
        return dict(ANONYMOUS_ADMIN)
    token = token_from_headers(request.headers, request.cookies, request.query_params)
    user = parse_access_token(token or "")
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


async def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if user.get("role") != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user


def websocket_user(websocket: WebSocket) -> Optional[dict]:
    """Resolve the operator of a push-channel handshake (cookie, bearer or ?token=)."""
    if config.DISABLE_AUTH:
        return dict(ANONYMOUS_ADMIN)
    token = token_from_headers(websocket.headers, websocket.cookies, websocket.query_params)
    return parse_access_token(token or "")
