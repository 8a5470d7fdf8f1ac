import asyncio
import logging
from contextlib import contextmanager
from typing import Awaitable, Callable, Iterator, TypeVar

from pymongo.errors import ConnectionFailure, ExecutionTimeout

from relaychat.errors import Transient


logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS = (ConnectionFailure, ExecutionTimeout)


async def retry_read(operation: Callable[[], Awaitable[T]], attempts: int = 3, delay: float = 0.05) -> T:
    """Run a read-only operation, retrying storage hiccups before giving up with Transient."""
    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except TRANSIENT_ERRORS as exc:
            if attempt == attempts:
                raise Transient(f"Storage unavailable: {exc}") from exc
            logger.warning("Read failed (attempt %d/%d): %s", attempt, attempts, exc)
            await asyncio.sleep(delay * attempt)
    raise Transient("Storage unavailable")


@contextmanager
def storage_errors() -> Iterator[None]:
    """Surface storage failures of non-idempotent writes as Transient, without retrying."""
    try:
        yield
    except TRANSIENT_ERRORS as exc:
        raise Transient(f"Storage unavailable: {exc}") from exc
