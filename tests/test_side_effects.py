"""Tests for the side-effect runner and the Telegram notifier."""

from __future__ import annotations

import asyncio
import logging

import httpx

from src.models import LeadRecord
from src.services.notifier import TelegramNotifier, format_lead_message
from src.services.side_effects import SideEffects


class TestSideEffects:
    async def test_failure_is_logged_not_raised(self, caplog):
        async def _boom():
            raise RuntimeError("telegram down")

        side_effects = SideEffects()
        with caplog.at_level(logging.ERROR):
            task = side_effects.fire(_boom(), "notify-lead")
            await side_effects.drain()

        assert task.result() is None
        assert "notify-lead" in caplog.text

    async def test_keeps_reference_until_done(self):
        gate = asyncio.Event()

        async def _wait():
            await gate.wait()
            return "done"

        side_effects = SideEffects()
        side_effects.fire(_wait(), "slow")
        assert side_effects.pending == 1
        gate.set()
        await side_effects.drain()
        assert side_effects.pending == 0

    async def test_drain_with_timeout_leaves_stragglers(self):
        side_effects = SideEffects()
        task = side_effects.fire(asyncio.sleep(10), "stuck")
        await side_effects.drain(timeout=0.01)
        assert not task.done()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def test_run_returns_value_or_none(self):
        async def _ok():
            return 42

        async def _bad():
            raise ValueError("nope")

        side_effects = SideEffects()
        assert await side_effects.run(_ok(), "ok") == 42
        assert await side_effects.run(_bad(), "bad") is None


class TestTelegramNotifier:
    def _notifier(self, handler) -> tuple[TelegramNotifier, list[httpx.Request]]:
        seen: list[httpx.Request] = []

        def _record(request):
            seen.append(request)
            return handler(request)

        return TelegramNotifier("123:abc", "-100", transport=httpx.MockTransport(_record)), seen

    async def test_send_text(self):
        notifier, seen = self._notifier(lambda r: httpx.Response(200, json={"ok": True}))
        assert await notifier.send_text("hello") is True
        assert seen[0].url.path == "/bot123:abc/sendMessage"

    async def test_send_photo_truncates_caption(self):
        notifier, seen = self._notifier(lambda r: httpx.Response(200, json={"ok": True}))
        assert await notifier.send_photo(b"img", caption="x" * 2000) is True
        assert seen[0].url.path.endswith("/sendPhoto")
        assert b"x" * 1024 in seen[0].content
        assert b"x" * 1025 not in seen[0].content

    async def test_rejection_returns_false(self):
        notifier, _ = self._notifier(lambda r: httpx.Response(400, json={"ok": False}))
        assert await notifier.send_text("hello") is False

    async def test_unconfigured_is_a_no_op(self):
        notifier = TelegramNotifier("", "", transport=httpx.MockTransport(lambda r: httpx.Response(500)))
        notifier._token = None
        notifier._chat_id = None
        assert await notifier.send_text("hello") is False

    def test_format_lead_message(self):
        lead = LeadRecord(name="Ann", phone="+15551234567", service="Faucet", source="chatbot-webchat")
        text = format_lead_message(lead, headline="Lead partially saved")
        assert text.splitlines()[0] == "🔔 Lead partially saved (chatbot-webchat)"
        assert "🔧 Faucet" in text
