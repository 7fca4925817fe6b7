"""End-to-end tests for /generate and /health."""

import json

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from llamagate.main import create_app

from tests.conftest import OLLAMA_URL, ChunkStream


async def usage_count(gateway, key):
    await gateway.notifier.drain()
    return await gateway.database.count_usage(key)


class TestAuthentication:

    @pytest.mark.asyncio
    async def test_missing_key(self, client, backend):
        response = await client.post("/generate", json={"model": "llama3", "prompt": "hi"})

        assert response.status_code == 400
        assert response.json() == {"error": "API key is required"}
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_empty_key_counts_as_missing(self, client, backend):
        response = await client.post("/generate", json={"apikey": "", "prompt": "hi"})

        assert response.status_code == 400
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_unknown_key(self, client, backend):
        response = await client.post("/generate", json={"apikey": "nope", "prompt": "hi"})

        assert response.status_code == 403
        assert response.json() == {"error": "Invalid API key"}
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_deactivated_key(self, client, database, backend, api_key):
        await database.set_key_active(api_key, False)

        response = await client.post("/generate", json={"apikey": api_key, "prompt": "hi"})

        assert response.status_code == 403
        assert response.json() == {"error": "API key is deactivated"}
        assert backend.requests == []


class TestForwarding:

    @pytest.mark.asyncio
    async def test_success_returns_backend_body(self, client, api_key):
        response = await client.post(
            "/generate", json={"apikey": api_key, "model": "llama3", "prompt": "hi"}
        )

        assert response.status_code == 200
        assert response.json() == {"model": "llama3", "response": "Hello!", "done": True}

    @pytest.mark.asyncio
    async def test_backend_never_sees_api_key(self, client, backend, api_key):
        await client.post("/generate", json={"apikey": api_key, "model": "llama3", "prompt": "hi"})

        sent = json.loads(backend.requests[0].content)
        assert str(backend.requests[0].url) == f"{OLLAMA_URL}/api/generate"
        assert sent == {"model": "llama3", "prompt": "hi", "stream": False}

    @pytest.mark.asyncio
    async def test_unknown_fields_are_forwarded(self, client, backend, api_key):
        await client.post(
            "/generate",
            json={
                "apikey": api_key,
                "model": "llama3",
                "prompt": "hi",
                "options": {"temperature": 0.1},
                "system": "be brief",
            },
        )

        sent = json.loads(backend.requests[0].content)
        assert sent["options"] == {"temperature": 0.1}
        assert sent["system"] == "be brief"

    @pytest.mark.asyncio
    async def test_success_records_usage_and_notifies(self, client, gateway, webhooks, api_key):
        await gateway.database.add_webhook("https://hooks.example.com/usage")

        await client.post("/generate", json={"apikey": api_key, "model": "llama3", "prompt": "hi"})

        assert await usage_count(gateway, api_key) == 1
        assert len(webhooks.requests) == 1
        details = json.loads(json.loads(webhooks.requests[0].content)["content"])
        assert details["apikey"] == api_key
        assert details["prompt"] == "hi"

    @pytest.mark.asyncio
    async def test_rejection_has_no_side_effects(self, client, gateway, webhooks, api_key):
        await gateway.database.add_webhook("https://hooks.example.com/usage")
        await gateway.database.set_key_active(api_key, False)

        await client.post("/generate", json={"apikey": api_key, "prompt": "hi"})

        assert await usage_count(gateway, api_key) == 0
        assert webhooks.requests == []

    @pytest.mark.asyncio
    async def test_stored_backend_address_takes_precedence(self, client, gateway, backend, api_key):
        await gateway.database.update_config("http://other-ollama:11434")

        await client.post("/generate", json={"apikey": api_key, "prompt": "hi"})

        assert str(backend.requests[0].url) == "http://other-ollama:11434/api/generate"


class TestRateLimiting:

    @pytest.mark.asyncio
    async def test_rate_limit_sequence(self, client, database, clock):
        await database.create_api_key("limited-key", 2)
        body = {"apikey": "limited-key", "prompt": "hi"}

        statuses = [(await client.post("/generate", json=body)).status_code for _ in range(3)]
        assert statuses == [200, 200, 429]

        clock.advance(60)

        assert (await client.post("/generate", json=body)).status_code == 200

    @pytest.mark.asyncio
    async def test_rate_limited_response(self, client, database, backend):
        await database.create_api_key("one-shot", 1)
        body = {"apikey": "one-shot", "prompt": "hi"}
        await client.post("/generate", json=body)

        response = await client.post("/generate", json=body)

        assert response.status_code == 429
        assert response.json()["error"] == "Rate limit exceeded. Try again later."
        assert response.json()["retry_after"] == 60
        assert response.headers["retry-after"] == "60"
        assert len(backend.requests) == 1

    @pytest.mark.asyncio
    async def test_rate_limited_request_is_not_recorded(self, client, gateway, database):
        await database.create_api_key("one-shot", 1)
        body = {"apikey": "one-shot", "prompt": "hi"}
        await client.post("/generate", json=body)
        await client.post("/generate", json=body)

        assert await usage_count(gateway, "one-shot") == 1


class TestBackendFailures:

    @pytest.mark.asyncio
    async def test_backend_error_status_passes_through(self, client, gateway, backend, api_key):
        backend.responder = lambda r: httpx.Response(404, json={"error": "model 'nope' not found"})

        response = await client.post("/generate", json={"apikey": api_key, "model": "nope"})

        assert response.status_code == 404
        assert response.json() == {"error": "model 'nope' not found"}
        assert await usage_count(gateway, api_key) == 0

    @pytest.mark.asyncio
    async def test_failed_request_still_spends_token(self, client, database, backend):
        await database.create_api_key("one-shot", 1)
        backend.responder = lambda r: httpx.Response(500, json={"error": "out of memory"})
        body = {"apikey": "one-shot", "prompt": "hi"}

        first = await client.post("/generate", json=body)
        second = await client.post("/generate", json=body)

        assert first.status_code == 500
        assert second.status_code == 429

    @pytest.mark.asyncio
    async def test_unreachable_backend(self, client, backend, api_key):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        backend.responder = refuse

        response = await client.post("/generate", json={"apikey": api_key, "prompt": "hi"})

        assert response.status_code == 500
        assert response.json() == {"error": "Error making request to Ollama API"}

    @pytest.mark.asyncio
    async def test_invalid_backend_json(self, client, backend, api_key):
        backend.responder = lambda r: httpx.Response(200, text="not json at all")

        response = await client.post("/generate", json={"apikey": api_key, "prompt": "hi"})

        assert response.status_code == 500
        assert response.json() == {"error": "Invalid response from Ollama API"}


class TestStreaming:

    @pytest.mark.asyncio
    async def test_stream_relays_ndjson(self, client, gateway, backend, api_key):
        lines = [
            b'{"response":"Hel","done":false}\n',
            b'{"response":"lo","done":false}\n',
            b'{"response":"","done":true}\n',
        ]
        backend.responder = lambda r: httpx.Response(
            200, content=b"".join(lines), headers={"content-type": "application/x-ndjson"}
        )

        response = await client.post(
            "/generate", json={"apikey": api_key, "prompt": "hi", "stream": True}
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/x-ndjson")
        assert response.content == b"".join(lines)
        assert json.loads(backend.requests[0].content)["stream"] is True
        assert await usage_count(gateway, api_key) == 1

    @pytest.mark.asyncio
    async def test_stream_backend_error_is_json(self, client, backend, api_key):
        backend.responder = lambda r: httpx.Response(400, json={"error": "bad options"})

        response = await client.post(
            "/generate", json={"apikey": api_key, "prompt": "hi", "stream": True}
        )

        assert response.status_code == 400
        assert response.json() == {"error": "bad options"}


class TestHealth:

    @pytest.mark.asyncio
    async def test_requires_key(self, client):
        response = await client.get("/health")

        assert response.status_code == 400
        assert response.json() == {"error": "API key is required"}

    @pytest.mark.asyncio
    async def test_unknown_key(self, client):
        response = await client.get("/health", params={"apikey": "nope"})

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_healthy(self, client, api_key):
        response = await client.get("/health", params={"apikey": api_key})

        assert response.status_code == 200
        assert response.json()["status"] == "API is healthy"
        assert "timestamp" in response.json()

    @pytest.mark.asyncio
    async def test_does_not_spend_tokens(self, client, database):
        await database.create_api_key("one-shot", 1)
        for _ in range(3):
            assert (await client.get("/health", params={"apikey": "one-shot"})).status_code == 200

        response = await client.post("/generate", json={"apikey": "one-shot", "prompt": "hi"})

        assert response.status_code == 200


class TestRequestBody:

    @pytest.mark.asyncio
    async def test_fields_are_forwarded_without_validation(self, client, backend, api_key):
        response = await client.post(
            "/generate",
            json={"apikey": api_key, "model": "llava", "prompt": 5, "images": "abc", "raw": "yes"},
        )

        assert response.status_code == 200
        sent = json.loads(backend.requests[0].content)
        assert sent["prompt"] == 5
        assert sent["images"] == "abc"
        assert sent["raw"] == "yes"

    @pytest.mark.asyncio
    async def test_missing_key_wins_over_odd_fields(self, client, backend):
        response = await client.post("/generate", json={"model": "m", "prompt": 5, "images": 1})

        assert response.status_code == 400
        assert response.json() == {"error": "API key is required"}
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_non_string_key_is_invalid(self, client, backend):
        response = await client.post("/generate", json={"apikey": 12345, "prompt": "hi"})

        assert response.status_code == 403
        assert response.json() == {"error": "Invalid API key"}
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_malformed_json(self, client, backend):
        response = await client.post(
            "/generate", content=b'{"apikey": ', headers={"content-type": "application/json"}
        )

        assert response.status_code == 400
        assert set(response.json()) == {"error"}
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_body_must_be_an_object(self, client, backend):
        response = await client.post("/generate", json=["not", "an", "object"])

        assert response.status_code == 400
        assert set(response.json()) == {"error"}
        assert backend.requests == []


class TestStreamFailures:

    @pytest.mark.asyncio
    async def test_mid_stream_failure_truncates_and_records_nothing(
        self, gateway, backend, webhooks, api_key
    ):
        await gateway.database.add_webhook("https://hooks.example.com/usage")
        first = b'{"response":"Hel","done":false}\n'
        body = ChunkStream([first], fail_after=True)
        backend.responder = lambda r: httpx.Response(200, stream=body)
        # The server aborts the response; surface what the caller received instead of the error.
        transport = ASGITransport(app=create_app(gateway), raise_app_exceptions=False)

        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.post(
                "/generate", json={"apikey": api_key, "prompt": "hi", "stream": True}
            )

        assert response.status_code == 200
        assert b'"done":true' not in response.content
        assert body.closed
        assert await usage_count(gateway, api_key) == 0
        assert webhooks.requests == []
