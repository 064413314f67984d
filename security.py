import time
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer
from passlib.context import CryptContext

from config import get_settings

ACCESS = "access"
REFRESH = "refresh"

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # unknown or malformed hash
        return False


def _serializer(kind: str) -> URLSafeTimedSerializer:
    settings = get_settings()
    secret = (
        settings.refresh_token_secret if kind == REFRESH else settings.access_token_secret
    )
    return URLSafeTimedSerializer(secret, salt=f"{kind}-token")


def _ttl(kind: str) -> int:
    settings = get_settings()
    if kind == REFRESH:
        return settings.refresh_token_ttl_secs
    return settings.access_token_ttl_secs


def issue_token(user_id: int, username: str, kind: str = ACCESS) -> str:
    timestamp = int(time.time())
    token_data = {
        "u": user_id,
        "n": username,
        "k": kind,
        "iat": timestamp,
        "exp": timestamp + _ttl(kind),
    }
    return _serializer(kind).dumps(token_data)


def decode_token(token: str, kind: str = ACCESS) -> Optional[dict]:
    """Return the token payload, or None if it is forged, expired or of another kind."""
    try:
        data = _serializer(kind).loads(token, max_age=_ttl(kind))
    except BadSignature:
        return None

    if not isinstance(data, dict) or data.get("k") != kind:
        return None
    if int(time.time()) > int(data.get("exp", 0)):
        return None
    if not isinstance(data.get("u"), int):
        return None
    return data


def access_token_ttl() -> int:
    return _ttl(ACCESS)
