import os
from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import BaseModel, Field


ReadStateBackend = Literal["cursor", "read_by"]


class Settings(BaseModel):

    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db: str = "relaychat"
    redis_url: Optional[str] = None
    jwt_secret: str = "change-me"
    jwt_algorithm: str = "HS256"
    admin_token: Optional[str] = None
    reserved_group_names: List[str] = Field(default_factory=lambda: ["Channel"])
    read_state_backend: ReadStateBackend = "cursor"
    append_max_attempts: int = Field(8, ge=1)
    read_retry_attempts: int = Field(3, ge=1)
    snapshot_limit: int = Field(50, ge=1, le=200)
    log_level: str = "INFO"

    def is_reserved_name(self, name: str) -> bool:
        folded = name.strip().casefold()
        return any(folded == r.strip().casefold() for r in self.reserved_group_names)


def _split(value: Optional[str]) -> Optional[List[str]]:
    if value is None:
        return None
    return [part.strip() for part in value.split(",") if part.strip()]


def load_settings() -> Settings:
    raw = {
        "mongodb_url": os.getenv("MONGODB_URL"),
        "mongodb_db": os.getenv("MONGODB_DB"),
        "redis_url": os.getenv("REDIS_URL"),
        "jwt_secret": os.getenv("JWT_SECRET"),
        "jwt_algorithm": os.getenv("JWT_ALGORITHM"),
        "admin_token": os.getenv("ADMIN_TOKEN"),
        "reserved_group_names": _split(os.getenv("RESERVED_GROUP_NAMES")),
        "read_state_backend": os.getenv("READ_STATE_BACKEND"),
        "append_max_attempts": os.getenv("APPEND_MAX_ATTEMPTS"),
        "read_retry_attempts": os.getenv("READ_RETRY_ATTEMPTS"),
        "snapshot_limit": os.getenv("SNAPSHOT_LIMIT"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    return Settings(**{k: v for k, v in raw.items() if v is not None})


@lru_cache
def get_settings() -> Settings:
    return load_settings()
