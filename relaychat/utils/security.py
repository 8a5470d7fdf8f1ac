from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from relaychat.config import get_settings
from relaychat.schemas.user import TokenPayload


def create_access_token(subject: str, expires_minutes: int = 60, secret: Optional[str] = None) -> str:
    settings = get_settings()
    expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes)
    payload = {"sub": subject, "exp": int(expire.timestamp())}
    return jwt.encode(payload, secret or settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> TokenPayload:
    settings = get_settings()
    payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    return TokenPayload(**payload)
