import logging
from typing import Set

from redis.exceptions import RedisError

from relaychat.schemas.events import Event
from relaychat.utils.realtime_bus import Bus


logger = logging.getLogger(__name__)


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class DeliveryBus:
    """Push side of delivery: best-effort, at-most-once per connected subscriber.

    Nothing here is a source of truth. A failed or missed push is repaired by
    the client's next pull.
    """

    def __init__(self, bus: Bus) -> None:
        self._bus = bus

    def recipients(self, event: Event, exclude_actor: bool = False) -> Set[str]:
        targets = set(event.participants)
        if exclude_actor and event.actor_id:
            targets.discard(event.actor_id)
        return targets

    async def publish(self, event: Event, exclude_actor: bool = False) -> int:
        payload = event.model_dump_json()
        delivered = 0
        for user_id in sorted(self.recipients(event, exclude_actor)):
            try:
                delivered += await self._bus.publish(user_channel(user_id), payload)
            except (RedisError, OSError) as exc:
                logger.warning("Dropped %s push to %s: %s", getattr(event, "type", "event"), user_id, exc)
        return delivered

    async def subscribe(self, user_id: str):
        logger.info("Opening push subscription for %s", user_id)
        return await self._bus.subscribe(user_channel(user_id))
