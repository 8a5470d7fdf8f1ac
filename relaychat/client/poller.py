import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set, Union

import httpx

from relaychat.client.reconciler import Inbox


logger = logging.getLogger(__name__)

EVENT_TYPES = {
    "message_created",
    "conversation_created",
    "conversation_renamed",
    "conversation_deleted",
    "participants_added",
    "read_state_changed",
}


class ChatPoller:
    """Keeps an Inbox current by polling, and folds in push frames when a socket is up.

    Polling alone is enough for a correct view; the view is at most one
    ``interval`` stale.
    """

    def __init__(self, http: httpx.AsyncClient, inbox: Inbox, interval: float = 5.0, page_limit: int = 200) -> None:
        self._http = http
        self.inbox = inbox
        self.interval = interval
        self.page_limit = page_limit
        self.open_conversations: Set[str] = set()

    async def poll_once(self) -> None:
        resp = await self._http.get("/conversations", params={"limit": self.page_limit})
        resp.raise_for_status()
        self.inbox.apply_snapshot(resp.json())
        for conversation_id in sorted(self.open_conversations):
            await self.pull_messages(conversation_id)

    async def pull_messages(self, conversation_id: str) -> int:
        added = 0
        while True:
            params: Dict[str, Any] = {"limit": self.page_limit}
            since = self.inbox.cursor(conversation_id)
            if since is not None:
                params["since"] = since
            resp = await self._http.get(f"/conversations/{conversation_id}/messages", params=params)
            resp.raise_for_status()
            items = resp.json()["items"]
            added += self.inbox.apply_messages(conversation_id, items)
            if len(items) < self.page_limit:
                return added

    async def open(self, conversation_id: str) -> None:
        self.open_conversations.add(conversation_id)
        await self.pull_messages(conversation_id)

    def close(self, conversation_id: str) -> None:
        self.open_conversations.discard(conversation_id)

    async def mark_read(self, conversation_id: str) -> int:
        resp = await self._http.post(f"/conversations/{conversation_id}/read")
        resp.raise_for_status()
        unread = resp.json()["unread_count"]
        self.inbox.note_read(conversation_id, unread)
        return unread

    async def resync(self) -> None:
        # after a reconnect nothing missed while offline is replayed by push
        await self.poll_once()

    def handle_frame(self, frame: Union[str, bytes, Dict[str, Any]]) -> Optional[str]:
        """Apply one socket frame; returns its type."""
        if isinstance(frame, (str, bytes)):
            frame = json.loads(frame)
        kind = frame.get("type")
        if kind == "snapshot":
            self.inbox.apply_snapshot(frame)
        elif kind in EVENT_TYPES:
            self.inbox.apply_event(frame)
        return kind

    async def run(self, stop: Optional[asyncio.Event] = None) -> None:
        stop = stop or asyncio.Event()
        while not stop.is_set():
            try:
                await self.poll_once()
            except httpx.HTTPError as exc:
                logger.warning("Poll failed, retrying in %.1fs: %s", self.interval, exc)
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                continue
