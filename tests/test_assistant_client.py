"""Tests for the Assistants v2 HTTP client (retry policy, payloads)."""

from __future__ import annotations

import json

import httpx
import pytest

from src import config
from src.models import RunStatus, ToolOutput
from src.services import assistant_client
from src.services.assistant_client import AssistantAPIError, AssistantClient, _route, message_text
from src.services.metrics import MetricsClient
from tests.helpers import assistant_message, run_payload


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr(assistant_client, "INITIAL_BACKOFF_SECONDS", 0)


def _client(handler) -> tuple[AssistantClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    client = AssistantClient(
        api_key="sk-test", assistant_id="asst_1",
        base_url="https://assistant.test/v1",
        transport=httpx.MockTransport(_record),
    )
    return client, seen


# ── Writes ───────────────────────────────────────────────────────────


class TestWrites:
    async def test_create_thread_sends_auth_and_beta_headers(self):
        client, seen = _client(lambda r: httpx.Response(200, json={"id": "thread_abc"}))
        assert await client.create_thread() == "thread_abc"
        assert seen[0].headers["Authorization"] == "Bearer sk-test"
        assert seen[0].headers["OpenAI-Beta"] == "assistants=v2"
        assert seen[0].url.path == "/v1/threads"

    async def test_add_message_plain_text(self):
        client, seen = _client(lambda r: httpx.Response(200, json={"id": "msg_1"}))
        await client.add_message("thread_1", "My faucet leaks")
        body = json.loads(seen[0].content)
        assert body == {"role": "user", "content": "My faucet leaks"}

    async def test_add_message_with_image_builds_content_parts(self):
        client, seen = _client(lambda r: httpx.Response(200, json={"id": "msg_1"}))
        await client.add_message("thread_1", "See photo", image_file_id="file_9")
        content = json.loads(seen[0].content)["content"]
        assert content[0] == {"type": "text", "text": "See photo"}
        assert content[1]["type"] == "image_file"
        assert content[1]["image_file"]["file_id"] == "file_9"

    async def test_create_run_passes_assistant_and_instructions(self):
        client, seen = _client(lambda r: httpx.Response(200, json=run_payload("queued")))
        run = await client.create_run("thread_1", additional_instructions="Channel: webchat.")
        body = json.loads(seen[0].content)
        assert body == {"assistant_id": "asst_1", "additional_instructions": "Channel: webchat."}
        assert run.status is RunStatus.QUEUED

    async def test_submit_tool_outputs_is_not_retried(self):
        client, seen = _client(lambda r: httpx.Response(500, text="upstream down"))
        with pytest.raises(AssistantAPIError) as exc_info:
            await client.submit_tool_outputs(
                "thread_1", "run_1", [ToolOutput(tool_call_id="call_1", output="{}")],
            )
        assert exc_info.value.status_code == 500
        assert len(seen) == 1

    async def test_transport_error_on_write_becomes_api_error(self):
        def _boom(request):
            raise httpx.ConnectError("refused", request=request)

        client, _ = _client(_boom)
        with pytest.raises(AssistantAPIError):
            await client.create_thread()

    async def test_upload_image_uses_vision_purpose(self):
        client, seen = _client(lambda r: httpx.Response(200, json={"id": "file_1"}))
        file_id = await client.upload_image(b"jpeg-bytes", "leak.jpg", "image/jpeg")
        assert file_id == "file_1"
        assert b'name="purpose"' in seen[0].content
        assert b"vision" in seen[0].content


# ── Reads ────────────────────────────────────────────────────────────


class TestReads:
    async def test_get_run_retries_on_server_error(self):
        responses = iter([
            httpx.Response(503, text="busy"),
            httpx.Response(200, json=run_payload("in_progress")),
        ])
        client, seen = _client(lambda r: next(responses))
        run = await client.get_run("thread_1", "run_1")
        assert run.status is RunStatus.IN_PROGRESS
        assert len(seen) == 2

    async def test_get_run_gives_up_after_max_retries(self):
        client, seen = _client(lambda r: httpx.Response(502, text="bad gateway"))
        with pytest.raises(AssistantAPIError):
            await client.get_run("thread_1", "run_1")
        assert len(seen) == assistant_client.MAX_RETRIES

    async def test_get_run_does_not_retry_client_errors(self):
        client, seen = _client(lambda r: httpx.Response(404, json={"error": "no run"}))
        with pytest.raises(AssistantAPIError) as exc_info:
            await client.get_run("thread_1", "run_1")
        assert exc_info.value.status_code == 404
        assert len(seen) == 1

    async def test_get_run_retries_rate_limit(self):
        responses = iter([
            httpx.Response(429, json={"error": "rate limited"}),
            httpx.Response(200, json=run_payload("queued")),
        ])
        client, seen = _client(lambda r: next(responses))
        run = await client.get_run("thread_1", "run_1")
        assert run.status is RunStatus.QUEUED
        assert len(seen) == 2

    async def test_unknown_run_status_is_an_api_error(self):
        client, _ = _client(lambda r: httpx.Response(200, json=run_payload("teleported")))
        with pytest.raises(AssistantAPIError, match="Unexpected run object"):
            await client.get_run("thread_1", "run_1")

    async def test_error_status_is_recorded_as_failure(self, monkeypatch):
        recorder = MetricsClient()
        monkeypatch.setattr(assistant_client, "metrics", recorder)
        client, _ = _client(lambda r: httpx.Response(404, json={"error": "no run"}))
        with pytest.raises(AssistantAPIError):
            await client.get_run("thread_1", "run_1")
        statuses = {
            d["Value"] for m in recorder._buffer for d in m["Dimensions"] if d["Name"] == "Status"
        }
        assert statuses == {"failure"}

    async def test_list_messages_passes_run_filter(self):
        client, seen = _client(
            lambda r: httpx.Response(200, json={"data": [assistant_message("Hi")]}),
        )
        messages = await client.list_messages("thread_1", run_id="run_1", limit=10)
        assert len(messages) == 1
        params = seen[0].url.params
        assert params["run_id"] == "run_1"
        assert params["limit"] == "10"
        assert params["order"] == "desc"


# ── Helpers ──────────────────────────────────────────────────────────


class TestHelpers:
    def test_message_text_joins_text_parts(self):
        message = {
            "content": [
                {"type": "text", "text": {"value": "Hello"}},
                {"type": "image_file", "image_file": {"file_id": "f"}},
                {"type": "text", "text": {"value": "there"}},
            ],
        }
        assert message_text(message) == "Hello\nthere"

    def test_message_text_empty(self):
        assert message_text({"content": []}) == ""

    def test_route_collapses_ids(self):
        assert _route("/threads/thread_1/runs/run_2") == "/threads/{id}/runs/{id}"

    def test_is_configured_requires_key_and_assistant(self, monkeypatch):
        monkeypatch.setattr(config, "OPENAI_API_KEY", None)
        monkeypatch.setattr(config, "OPENAI_ASSISTANT_ID", None)
        assert AssistantClient().is_configured is False
        assert AssistantClient(api_key="k", assistant_id="a").is_configured is True
