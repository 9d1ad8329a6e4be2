"""Tests for the NDJSON chat log."""

import json
from datetime import timedelta

import pytest

from conftest import FIXED_NOW
from deals_assistant.services.chat_logger import ChatLogger


class SteppingClock:
    """Each reading is one second after the previous one."""

    def __init__(self, start=FIXED_NOW):
        self.current = start

    def __call__(self):
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture
def clock():
    return SteppingClock()


@pytest.fixture
def chat_logger(settings, clock):
    return ChatLogger(settings, clock=clock)


def read_entries(chat_logger):
    return [json.loads(line) for line in chat_logger.path.read_text().splitlines()]


class TestWriting:
    """Test entry shapes."""

    @pytest.mark.asyncio
    async def test_interaction_entry(self, chat_logger):
        await chat_logger.log_interaction(
            "req-1", None, "find laptops", "Here are two", metadata={"intent": "search", "cached": False}
        )

        (entry,) = read_entries(chat_logger)
        assert entry["requestId"] == "req-1"
        assert entry["userId"] == "guest"
        assert entry["input"] == "find laptops"
        assert entry["inputLength"] == 12
        assert entry["output"] == "Here are two"
        assert entry["outputLength"] == 12
        assert entry["intent"] == "search"
        assert "type" not in entry

    @pytest.mark.asyncio
    async def test_stream_start_has_no_output(self, chat_logger):
        await chat_logger.log_stream_start("req-2", "user-9", "hello", metadata={"streaming": True})

        (entry,) = read_entries(chat_logger)
        assert entry["type"] == "stream_start"
        assert entry["userId"] == "user-9"
        assert "output" not in entry
        assert "outputLength" not in entry

    @pytest.mark.asyncio
    async def test_stream_end(self, chat_logger):
        await chat_logger.log_stream_end("req-3", "user-9", "hello", "Hey!", metadata={"success": True})

        (entry,) = read_entries(chat_logger)
        assert entry["type"] == "stream_end"
        assert entry["output"] == "Hey!"
        assert entry["success"] is True

    @pytest.mark.asyncio
    async def test_disabled_logger_writes_nothing(self, chat_logger, settings):
        settings.features.logging_enabled = False
        await chat_logger.log_interaction("req-4", None, "q", "a")
        assert not chat_logger.path.exists()


class TestReading:
    """Test paging and retention."""

    @pytest.mark.asyncio
    async def test_newest_first_with_cursor(self, chat_logger):
        for index in range(5):
            await chat_logger.log_interaction(f"req-{index}", None, f"q{index}", "a")

        first = await chat_logger.get_recent_logs(limit=2)
        assert [e["requestId"] for e in first["logs"]] == ["req-4", "req-3"]
        assert first["hasMore"] is True
        assert first["total"] == 5

        second = await chat_logger.get_recent_logs(limit=2, cursor=first["nextCursor"])
        assert [e["requestId"] for e in second["logs"]] == ["req-2", "req-1"]

        last = await chat_logger.get_recent_logs(limit=2, cursor="req-1")
        assert [e["requestId"] for e in last["logs"]] == ["req-0"]
        assert last["hasMore"] is False
        assert last["nextCursor"] is None

    @pytest.mark.asyncio
    async def test_missing_file_is_empty(self, chat_logger):
        result = await chat_logger.get_recent_logs()
        assert result == {"logs": [], "nextCursor": None, "hasMore": False, "total": 0}

    @pytest.mark.asyncio
    async def test_corrupt_lines_are_skipped(self, chat_logger):
        await chat_logger.log_interaction("req-ok", None, "q", "a")
        with chat_logger.path.open("a") as fh:
            fh.write("{not json\n")

        result = await chat_logger.get_recent_logs()
        assert [e["requestId"] for e in result["logs"]] == ["req-ok"]

    @pytest.mark.asyncio
    async def test_clear_old_logs(self, chat_logger, clock):
        await chat_logger.log_interaction("req-old", None, "q", "a")
        clock.current += timedelta(days=40)
        await chat_logger.log_interaction("req-new", None, "q", "a")

        kept = await chat_logger.clear_old_logs(days_to_keep=30)

        assert kept == 1
        assert [e["requestId"] for e in read_entries(chat_logger)] == ["req-new"]
