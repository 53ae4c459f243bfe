from typing import Dict, Any, List, Optional, Union
import asyncio
import itertools
from datetime import datetime

import structlog
from pydantic import BaseModel

from lm_dispatch.domain.models.conversation import Conversation, ConversationStatus

logger = structlog.get_logger(__name__)

# Fields the registry owns; callers cannot supply or overwrite them
_IMMUTABLE_FIELDS = frozenset({"id", "goal", "started_at"})

# None in an update leaves these unchanged
_REQUIRED_FIELDS = frozenset({"caller", "status", "current_turn", "total_tokens", "cancelled"})


class ConversationRegistry:
    """In-memory store of conversation records keyed by auto-incrementing id.

    Pure bookkeeping: no I/O. Every mutation happens under one asyncio lock so
    concurrent conversations can register and update safely.
    """

    def __init__(self, first_id: int = 1):
        self._conversations: Dict[int, Conversation] = {}
        self._ids = itertools.count(first_id)
        self._lock = asyncio.Lock()

    async def register(self, data: Union[Dict[str, Any], BaseModel]) -> int:
        """Register a new conversation and return its id"""

        if isinstance(data, BaseModel):
            data = data.model_dump(exclude_unset=True)
        fields = {k: v for k, v in data.items() if v is not None and k != "id"}

        async with self._lock:
            conversation_id = next(self._ids)
            now = datetime.utcnow()
            fields.update({
                "id": conversation_id,
                "status": ConversationStatus.STARTED,
                "current_turn": 0,
                "cancelled": False,
                "started_at": now,
                "updated_at": now,
            })
            self._conversations[conversation_id] = Conversation(**fields)

        logger.debug("Conversation registered", conversation_id=conversation_id)
        return conversation_id

    async def update(self, conversation_id: int, updates: Dict[str, Any]):
        """Shallow-merge updates into a conversation; unknown ids are ignored"""

        async with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None:
                logger.debug("Ignoring update for unknown conversation", conversation_id=conversation_id)
                return

            merged = dict(current)
            for key, value in updates.items():
                if key in _IMMUTABLE_FIELDS:
                    continue
                if value is None and key in _REQUIRED_FIELDS:
                    continue
                # Cancellation is terminal: late progress updates cannot revive it
                if key == "status" and current.cancelled and value != ConversationStatus.CANCELLED:
                    continue
                if key == "current_turn" and value < current.current_turn:
                    logger.warning(
                        "Ignoring turn regression",
                        conversation_id=conversation_id,
                        current_turn=current.current_turn,
                        requested_turn=value,
                    )
                    continue
                merged[key] = value
            merged["updated_at"] = datetime.utcnow()

            self._conversations[conversation_id] = Conversation(**merged)

    async def mark_cancelled(self, conversation_id: int):
        """Mark a conversation cancelled (state only, never touches the token)"""

        await self.update(
            conversation_id,
            {"cancelled": True, "status": ConversationStatus.CANCELLED},
        )

    async def get(self, conversation_id: int) -> Optional[Conversation]:
        """Get a conversation by id"""

        async with self._lock:
            return self._conversations.get(conversation_id)

    async def get_all(self) -> List[Conversation]:
        """Get all conversations in registration order"""

        async with self._lock:
            return [self._conversations[k] for k in sorted(self._conversations)]

    async def delete(self, conversation_id: int) -> bool:
        """Forget a conversation. Only the monitor UI deletes records."""

        async with self._lock:
            return self._conversations.pop(conversation_id, None) is not None

    async def snapshot(self) -> List[Dict[str, Any]]:
        """JSON-ready view of all conversations for the monitor"""

        return [c.model_dump(mode="json") for c in await self.get_all()]
