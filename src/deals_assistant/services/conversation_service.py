"""Conversation persistence in the data store (``ai_conversations`` / ``ai_messages``).

Turn persistence is best-effort: a chat turn that succeeded must still succeed
when saving it fails, so data store errors are logged and swallowed at this
boundary. The management operations behind the conversation routes let them
propagate.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from deals_assistant.clients.supabase_client import SupabaseClient
from deals_assistant.config import Settings, get_settings
from deals_assistant.models.chat import HistoryMessage
from deals_assistant.utils.errors import ExternalServiceError
from deals_assistant.utils.logging import get_logger

logger = get_logger("conversation_service")

TITLE_LENGTH = 50
DEFAULT_TITLE = "New Conversation"

# Deal/coupon fields kept on an assistant message for cross-device replay.
STORED_DEAL_FIELDS = (
    "id", "title", "price", "original_price", "discount_percent", "merchant", "image_url", "url",
)
STORED_COUPON_FIELDS = (
    "id", "title", "coupon_code", "discount_type", "discount_value", "company",
)
# Columns re-read for messages that stored only deal ids.
REPLAY_DEAL_COLUMNS = ("id", "title", "price", "original_price", "merchant", "image_url", "url")


def conversation_title(first_message: str) -> str:
    if len(first_message) > TITLE_LENGTH:
        return first_message[:TITLE_LENGTH] + "..."
    return first_message


def assistant_metadata(
    deals: Optional[List[Dict[str, Any]]],
    coupons: Optional[List[Dict[str, Any]]],
) -> Dict[str, Any]:
    """Slim copies of the deals/coupons actually shown, plus their ids."""
    deals = deals or []
    coupons = coupons or []
    return {
        "deals": [{k: deal.get(k) for k in STORED_DEAL_FIELDS} for deal in deals],
        "coupons": [{k: coupon.get(k) for k in STORED_COUPON_FIELDS} for coupon in coupons],
        "dealIds": [deal.get("id") for deal in deals],
    }


class ConversationService:
    """Loads history and records turns and feedback."""

    def __init__(
        self,
        supabase: SupabaseClient,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._db = supabase
        self.settings = settings or get_settings()
        self._clock = clock

    async def load_history(
        self, conversation_id: str, user_id: Optional[str] = None
    ) -> List[HistoryMessage]:
        """Most recent messages of a conversation, oldest first.

        Returns an empty list when the conversation belongs to another user
        or the data store is unavailable.
        """
        try:
            if user_id:
                owned = await self._db.select(
                    "ai_conversations",
                    [("select", "id"), ("id", f"eq.{conversation_id}"), ("user_id", f"eq.{user_id}")],
                    single=True,
                )
                if not owned:
                    return []

            rows = await self._db.select(
                "ai_messages",
                [
                    ("select", "role,content,metadata"),
                    ("conversation_id", f"eq.{conversation_id}"),
                    ("order", "created_at.desc"),
                    ("limit", self.settings.limits.max_conversation_history),
                ],
            )
        except ExternalServiceError as e:
            logger.error(f"Failed to load conversation history {conversation_id}: {e.message}")
            return []

        history: List[HistoryMessage] = []
        for row in reversed(rows):
            metadata = row.get("metadata") or {}
            history.append(
                HistoryMessage(
                    role=row.get("role", "user"),
                    content=row.get("content") or "",
                    deals=metadata.get("deals") or None,
                )
            )
        return history

    async def _create_conversation(self, user_id: str, first_message: str) -> Optional[str]:
        row = await self._db.insert(
            "ai_conversations",
            {"user_id": user_id, "title": conversation_title(first_message)},
        )
        return str(row["id"]) if row and row.get("id") is not None else None

    async def _append_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._db.insert(
            "ai_messages",
            {
                "conversation_id": conversation_id,
                "role": role,
                "content": content,
                "metadata": metadata,
            },
        )

    async def _touch(self, conversation_id: str, added: int) -> None:
        current = await self._db.select(
            "ai_conversations",
            [("select", "message_count"), ("id", f"eq.{conversation_id}")],
            single=True,
        )
        await self._db.update(
            "ai_conversations",
            [("id", f"eq.{conversation_id}")],
            {
                "updated_at": self._clock().isoformat(),
                "message_count": ((current or {}).get("message_count") or 0) + added,
            },
        )

    async def save_turn(
        self,
        conversation_id: Optional[str],
        user_id: Optional[str],
        user_message: str,
        assistant_message: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Persist a user turn and (optionally) the assistant reply.

        A conversation is created for an authenticated user who did not pass
        one. Guests without a conversation id are not persisted.

        Returns:
            The conversation id used, or None when nothing was saved
        """
        try:
            convo_id = conversation_id
            if not convo_id and user_id:
                convo_id = await self._create_conversation(user_id, user_message)
            if not convo_id:
                return None

            await self._append_message(convo_id, "user", user_message)
            added = 1
            if assistant_message is not None:
                await self._append_message(convo_id, "assistant", assistant_message, metadata)
                added += 1
            await self._touch(convo_id, added)
            return convo_id
        except ExternalServiceError as e:
            logger.error(f"Failed to save conversation turn: {e.message}")
            return None

    async def record_feedback(
        self, message_id: str, rating: str, comment: Optional[str] = None
    ) -> bool:
        """Merge a feedback block into the message metadata. Returns False on failure."""
        try:
            message = await self._db.select(
                "ai_messages",
                [("select", "metadata"), ("id", f"eq.{message_id}")],
                single=True,
            )
            metadata = dict((message or {}).get("metadata") or {})
            metadata["feedback"] = {
                "rating": rating,
                "comment": comment,
                "at": self._clock().isoformat(),
            }
            await self._db.update("ai_messages", [("id", f"eq.{message_id}")], {"metadata": metadata})
            return True
        except ExternalServiceError as e:
            logger.error(f"Failed to save feedback for message {message_id}: {e.message}")
            return False

    # ------------------------------------------------------------------
    # Conversation management, scoped to the owning user
    # ------------------------------------------------------------------

    async def list_conversations(self, user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        """The user's live conversations, most recently active first. Empty on store failure."""
        try:
            return await self._db.select(
                "ai_conversations",
                [
                    ("select", "id,title,created_at,updated_at,message_count"),
                    ("user_id", f"eq.{user_id}"),
                    ("is_archived", "eq.false"),
                    ("order", "updated_at.desc"),
                    ("limit", limit),
                ],
            )
        except ExternalServiceError as e:
            logger.error(f"Failed to list conversations for {user_id}: {e.message}")
            return []

    async def create_conversation(
        self, user_id: str, title: str = DEFAULT_TITLE
    ) -> Optional[Dict[str, Any]]:
        return await self._db.insert("ai_conversations", {"user_id": user_id, "title": title})

    async def _deals_by_id(self, deal_ids: List[Any]) -> List[Dict[str, Any]]:
        ids = ",".join(str(deal_id) for deal_id in deal_ids if deal_id is not None)
        if not ids:
            return []
        return await self._db.select(
            "deals",
            [("select", ",".join(REPLAY_DEAL_COLUMNS)), ("id", f"in.({ids})")],
        )

    async def get_conversation(
        self, conversation_id: str, user_id: str
    ) -> Optional[Tuple[Dict[str, Any], List[Dict[str, Any]]]]:
        """
        A conversation and all of its messages, oldest first.

        Each message carries the ``deals`` and ``coupons`` it showed. Older
        messages that stored only ``dealIds`` have their deals re-read from
        the ``deals`` table.

        Returns:
            ``(conversation, messages)``, or None when the user does not own it

        Raises:
            ExternalServiceError: If the data store fails
        """
        conversation = await self._db.select(
            "ai_conversations",
            [("select", "*"), ("id", f"eq.{conversation_id}"), ("user_id", f"eq.{user_id}")],
            single=True,
        )
        if not conversation:
            return None

        rows = await self._db.select(
            "ai_messages",
            [
                ("select", "id,role,content,metadata,created_at"),
                ("conversation_id", f"eq.{conversation_id}"),
                ("order", "created_at.asc"),
            ],
        )

        messages: List[Dict[str, Any]] = []
        for row in rows:
            metadata = row.get("metadata") or {}
            message = dict(row)
            if metadata.get("deals"):
                message["deals"] = metadata["deals"]
                message["coupons"] = metadata.get("coupons") or []
            elif metadata.get("dealIds"):
                message["deals"] = await self._deals_by_id(metadata["dealIds"])
            messages.append(message)
        return conversation, messages

    async def archive_conversation(self, conversation_id: str, user_id: str) -> bool:
        """Hide a conversation from the user's list. False when nothing matched."""
        rows = await self._db.update(
            "ai_conversations",
            [("id", f"eq.{conversation_id}"), ("user_id", f"eq.{user_id}")],
            {"is_archived": True},
        )
        return bool(rows)

    async def cleanup(self, days_to_keep: int = 30) -> Dict[str, Any]:
        """Delete messages older than the cutoff, then conversations left empty and idle."""
        cutoff = (self._clock() - timedelta(days=days_to_keep)).isoformat()
        messages_deleted = await self._db.delete(
            "ai_messages", [("created_at", f"lt.{cutoff}")]
        )
        conversations_deleted = await self._db.delete(
            "ai_conversations",
            [("message_count", "eq.0"), ("updated_at", f"lt.{cutoff}")],
        )
        logger.info(
            f"Conversation cleanup: {messages_deleted} messages, "
            f"{conversations_deleted} conversations older than {cutoff}"
        )
        return {
            "messagesDeleted": messages_deleted,
            "conversationsDeleted": conversations_deleted,
            "cutoffDate": cutoff,
        }
