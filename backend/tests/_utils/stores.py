"""In-memory stores that hand control back to the event loop mid-operation."""

import asyncio
from datetime import datetime
from typing import Optional

from chatline.storage.memory import InMemoryDirectoryStore


class YieldingStore(InMemoryDirectoryStore):
    """
    Yields once before each read or presence write, so concurrent callers
    interleave the way they would against a real database.

    Set ``offline_gate`` to hold offline presence writes until it is set;
    ``offline_started`` fires when one is waiting.
    """

    def __init__(self) -> None:
        super().__init__()
        self.offline_gate: Optional[asyncio.Event] = None
        self.offline_started = asyncio.Event()

    async def get_user(self, user_id):
        await asyncio.sleep(0)
        return await super().get_user(user_id)

    async def get_conversation(self, conversation_id):
        await asyncio.sleep(0)
        return await super().get_conversation(conversation_id)

    async def list_conversations_for_user(self, user_id):
        await asyncio.sleep(0)
        return await super().list_conversations_for_user(user_id)

    async def set_user_presence(self, user_id: str, is_online: bool, last_seen: datetime) -> None:
        await asyncio.sleep(0)
        if not is_online and self.offline_gate is not None:
            self.offline_started.set()
            await self.offline_gate.wait()
        await super().set_user_presence(user_id, is_online, last_seen)
