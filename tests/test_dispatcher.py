"""Tests for the generation dispatcher (HTTP mocked with httpx.MockTransport)."""

import json

import httpx
import pytest

from studio import dispatcher as dispatcher_module
from studio import metrics
from studio.dispatcher import GenerationDispatcher

ENDPOINT = "https://example.supabase.co/functions/v1/trigger-generation"
PAYLOAD = {"pipeline_id": "p1", "user_id": "u1", "credits_cost": 0.25}


@pytest.fixture(autouse=True)
def no_jitter(monkeypatch):
    monkeypatch.setattr(dispatcher_module, "JITTER_MAX", 0.0)


def make_dispatcher(handler, **kwargs) -> GenerationDispatcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GenerationDispatcher(ENDPOINT, api_key="secret-key", client=client, base_delay=0, **kwargs)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_accepted(self):
        seen = []

        def handler(request: httpx.Request):
            seen.append(request)
            return httpx.Response(200, json={"success": True})

        result = await make_dispatcher(handler).dispatch("pipeline_script", PAYLOAD)

        assert result.success is True
        body = json.loads(seen[0].content)
        assert body == {"type": "pipeline_script", "payload": PAYLOAD}
        assert seen[0].headers["Authorization"] == "Bearer secret-key"
        assert seen[0].headers["x-api-key"] == "secret-key"
        assert metrics.get_counter("dispatch.accepted") == 1

    @pytest.mark.asyncio
    async def test_rejection_carries_backend_error(self):
        def handler(request):
            return httpx.Response(402, json={"success": False, "error": "Insufficient credits"})

        result = await make_dispatcher(handler).dispatch("pipeline_voice", PAYLOAD)

        assert result.success is False
        assert result.error == "Insufficient credits"
        assert metrics.get_counter("errors.dispatch_rejected") == 1

    @pytest.mark.asyncio
    async def test_ok_status_without_success_is_rejection(self):
        def handler(request):
            return httpx.Response(200, json={"error": "Unsupported type"})

        result = await make_dispatcher(handler).dispatch("pipeline_voice", PAYLOAD)
        assert result.success is False
        assert result.error == "Unsupported type"

    @pytest.mark.asyncio
    async def test_non_json_error(self):
        def handler(request):
            return httpx.Response(500, text="<html>oops</html>")

        result = await make_dispatcher(handler).dispatch("animate", PAYLOAD)
        assert result.error == "Generation service error (500)"


class TestRetries:
    @pytest.mark.asyncio
    async def test_retryable_status_then_success(self):
        responses = iter([httpx.Response(503), httpx.Response(200, json={"success": True})])
        calls = []

        def handler(request):
            calls.append(request)
            return next(responses)

        result = await make_dispatcher(handler).dispatch("animate", PAYLOAD)

        assert result.success is True
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(429, json={"error": "Rate limited"})

        result = await make_dispatcher(handler, max_retries=2).dispatch("animate", PAYLOAD)

        assert len(calls) == 3
        assert result.success is False
        assert result.error == "Rate limited"

    @pytest.mark.asyncio
    async def test_client_errors_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(400, json={"error": "Bad payload"})

        await make_dispatcher(handler).dispatch("animate", PAYLOAD)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_network_failure_returns_rejection(self):
        calls = []

        def handler(request):
            calls.append(request)
            raise httpx.ConnectError("connection refused")

        result = await make_dispatcher(handler, max_retries=1).dispatch("animate", PAYLOAD)

        assert len(calls) == 2
        assert result.success is False
        assert result.error == "Network error"
