import asyncio
import inspect
import logging
from typing import Any, Callable, List, Optional, Set

import settings
from models import ChatMessage
from services.chat import ChatService

logger = logging.getLogger(__name__)


class ChatPoller:
    """Polls a party's chat on a fixed interval and reports messages not seen before."""

    def __init__(
        self,
        chat: ChatService,
        party_code: str,
        on_messages: Callable[[List[ChatMessage]], Any],
        *,
        interval: float = settings.CHAT_POLL_INTERVAL,
        limit: int = settings.CHAT_DEFAULT_LIMIT,
    ):
        self.chat = chat
        self.party_code = party_code
        self.on_messages = on_messages
        self.interval = interval
        self.limit = limit
        self._seen: Set[str] = set()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name=f"chat-poll-{self.party_code}")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def poll_once(self) -> List[ChatMessage]:
        try:
            messages = await asyncio.to_thread(self.chat.fetch, self.party_code, self.limit)
        except Exception:
            logger.exception("Chat fetch for party %s failed", self.party_code)
            return []
        fresh = [m for m in messages if m.id not in self._seen]
        if not fresh:
            return []
        self._seen.update(m.id for m in fresh)
        result = self.on_messages(fresh)
        if inspect.isawaitable(result):
            await result
        return fresh

    async def _run(self) -> None:
        while True:
            await self.poll_once()
            await asyncio.sleep(self.interval)
