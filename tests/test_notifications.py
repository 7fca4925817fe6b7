"""Tests for usage recording and webhook fan-out."""

import json

import httpx
import pytest

from llamagate.database import SQLiteDatabase
from llamagate.notifications import UsageNotifier, build_notification

from tests.conftest import RecordingTransport


class BrokenUsageLog(SQLiteDatabase):
    async def log_usage(self, key, timestamp=None):
        raise RuntimeError("database is locked")


PAYLOAD = {"model": "llama3", "prompt": "Why is the sky blue?", "stream": False}


@pytest.mark.asyncio
async def test_records_usage_and_notifies_every_webhook(database, webhooks):
    await database.add_webhook("https://hooks.example.com/a")
    await database.add_webhook("https://hooks.example.com/b")
    async with webhooks.client() as http:
        notifier = UsageNotifier(database, http)
        notifier.on_success("k1", PAYLOAD)
        await notifier.drain()

    assert await database.count_usage("k1") == 1
    assert sorted(str(r.url) for r in webhooks.requests) == [
        "https://hooks.example.com/a",
        "https://hooks.example.com/b",
    ]


@pytest.mark.asyncio
async def test_notification_body_describes_request(database, webhooks):
    await database.add_webhook("https://hooks.example.com/a")
    async with webhooks.client() as http:
        notifier = UsageNotifier(database, http)
        notifier.on_success("k1", PAYLOAD)
        await notifier.drain()

    body = json.loads(webhooks.requests[0].content)
    details = json.loads(body["content"])
    assert details["apikey"] == "k1"
    assert details["model"] == "llama3"
    assert details["prompt"] == "Why is the sky blue?"
    assert "timestamp" in details


@pytest.mark.asyncio
async def test_failing_webhook_does_not_affect_others(database):
    await database.add_webhook("https://down.example.com/hook")
    await database.add_webhook("https://error.example.com/hook")
    await database.add_webhook("https://ok.example.com/hook")

    def respond(request):
        if request.url.host == "down.example.com":
            raise httpx.ConnectError("no route to host", request=request)
        if request.url.host == "error.example.com":
            return httpx.Response(500, text="boom")
        return httpx.Response(200)

    transport = RecordingTransport(respond)
    async with transport.client() as http:
        notifier = UsageNotifier(database, http)
        notifier.on_success("k1", PAYLOAD)
        await notifier.drain()

    assert len(transport.requests) == 3
    assert await database.count_usage("k1") == 1


@pytest.mark.asyncio
async def test_no_webhooks_only_records_usage(database, webhooks):
    async with webhooks.client() as http:
        notifier = UsageNotifier(database, http)
        notifier.on_success("k1", PAYLOAD)
        await notifier.drain()

    assert webhooks.requests == []
    assert await database.count_usage("k1") == 1


@pytest.mark.asyncio
async def test_usage_failure_still_notifies(settings, webhooks):
    db = BrokenUsageLog(settings.database_path)
    await db.initialize()
    try:
        await db.add_webhook("https://hooks.example.com/a")
        async with webhooks.client() as http:
            notifier = UsageNotifier(db, http)
            notifier.on_success("k1", PAYLOAD)
            await notifier.drain()
    finally:
        await db.close()

    assert len(webhooks.requests) == 1


@pytest.mark.asyncio
async def test_on_success_returns_before_work_is_done(database, webhooks):
    async with webhooks.client() as http:
        notifier = UsageNotifier(database, http)
        notifier.on_success("k1", PAYLOAD)

        assert notifier.pending == 1
        await notifier.drain()

    assert notifier.pending == 0


def test_build_notification_is_discord_shaped():
    message = build_notification("k1", {"images": None, "raw": True}, "2025-01-01T00:00:00+00:00")

    assert list(message) == ["content"]
    assert json.loads(message["content"])["raw"] is True
