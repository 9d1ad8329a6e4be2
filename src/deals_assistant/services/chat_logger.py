"""Append-only NDJSON log of chat interactions for debugging and review."""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from deals_assistant.config import Settings, get_settings
from deals_assistant.utils.logging import get_logger

logger = get_logger("chat_logger")


def _parse_timestamp(value: Any) -> datetime:
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ChatLogger:
    """Writes one JSON object per line; write failures are logged, never raised."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.settings = settings or get_settings()
        self.path = Path(self.settings.chat_log.log_file)
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.settings.features.logging_enabled

    def _append_line(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as fh:
            fh.write(line)

    def _read_lines(self) -> List[str]:
        if not self.path.exists():
            return []
        return [line for line in self.path.read_text(encoding="utf-8").splitlines() if line.strip()]

    def _write_lines(self, lines: List[str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")

    async def _write(self, entry: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        line = json.dumps(entry, default=str) + "\n"
        try:
            async with self._lock:
                await asyncio.to_thread(self._append_line, line)
        except OSError as e:
            logger.error(f"Failed to write chat log entry: {e}")

    def _entry(
        self,
        request_id: str,
        user_id: Optional[str],
        input_text: Optional[str],
        output: Optional[str] = None,
        entry_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        entry: Dict[str, Any] = {"timestamp": self._clock().isoformat()}
        if entry_type:
            entry["type"] = entry_type
        entry.update(
            requestId=request_id,
            userId=user_id or "guest",
            input=input_text or "",
            inputLength=len(input_text or ""),
        )
        if entry_type != "stream_start":
            entry.update(output=output or "", outputLength=len(output or ""))
        entry.update(metadata or {})
        return entry

    async def log_interaction(
        self,
        request_id: str,
        user_id: Optional[str],
        input_text: str,
        output: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._write(self._entry(request_id, user_id, input_text, output, metadata=metadata))

    async def log_stream_start(
        self,
        request_id: str,
        user_id: Optional[str],
        input_text: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._write(
            self._entry(request_id, user_id, input_text, entry_type="stream_start", metadata=metadata)
        )

    async def log_stream_end(
        self,
        request_id: str,
        user_id: Optional[str],
        input_text: str,
        output: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        await self._write(
            self._entry(
                request_id, user_id, input_text, output, entry_type="stream_end", metadata=metadata
            )
        )

    async def get_recent_logs(self, limit: int = 50, cursor: Optional[str] = None) -> Dict[str, Any]:
        """
        Newest-first page of log entries.

        Args:
            limit: Page size
            cursor: Timestamp or requestId of the last entry of the previous page

        Returns:
            ``{logs, nextCursor, hasMore, total}``
        """
        try:
            lines = await asyncio.to_thread(self._read_lines)
        except OSError as e:
            logger.error(f"Failed to read chat logs: {e}")
            lines = []

        entries: List[Dict[str, Any]] = []
        for line in lines:
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        entries.sort(key=lambda entry: _parse_timestamp(entry.get("timestamp")), reverse=True)

        start = 0
        if cursor:
            for index, entry in enumerate(entries):
                if entry.get("timestamp") == cursor or entry.get("requestId") == cursor:
                    start = index + 1
                    break

        page = entries[start : start + limit]
        has_more = start + limit < len(entries)
        return {
            "logs": page,
            "nextCursor": page[-1].get("timestamp") if has_more and page else None,
            "hasMore": has_more,
            "total": len(entries),
        }

    async def clear_old_logs(self, days_to_keep: int = 30) -> int:
        """Drop entries older than ``days_to_keep`` days. Returns how many were kept."""
        cutoff = self._clock() - timedelta(days=days_to_keep)

        def keep(line: str) -> bool:
            try:
                return _parse_timestamp(json.loads(line).get("timestamp")) >= cutoff
            except (json.JSONDecodeError, AttributeError):
                return False

        try:
            async with self._lock:
                lines = await asyncio.to_thread(self._read_lines)
                kept = [line for line in lines if keep(line)]
                await asyncio.to_thread(self._write_lines, kept)
        except OSError as e:
            logger.error(f"Failed to clear old chat logs: {e}")
            return 0
        logger.info(f"Cleared old chat logs, kept {len(kept)} entries")
        return len(kept)
