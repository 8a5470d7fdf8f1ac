from typing import Optional

from pydantic import BaseModel


class TokenPayload(BaseModel):

    sub: str
    exp: int


def display_name_of(user: Optional[dict], fallback: str) -> str:
    if not user:
        return fallback
    return user.get("full_name") or user.get("email") or fallback
