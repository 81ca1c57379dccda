import asyncio
import json

import pytest

from lecture_assist.streaming.upstream import (
    ClosedEvent,
    ParseErrorEvent,
    ProviderErrorEvent,
    TokensEvent,
    UpstreamError,
    UpstreamSession,
    UpstreamSettings,
    UpstreamState,
    mask_secret,
    parse_provider_message,
)


class _FakeProviderWS:
    def __init__(self, frames=()):
        self.sent = []
        self.closed = False
        self._incoming = asyncio.Queue()
        for frame in frames:
            self.push(frame)

    def push(self, frame):
        self._incoming.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    async def send(self, data):
        if self.closed:
            raise RuntimeError("send after close")
        self.sent.append(data)

    async def close(self):
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


def _settings(**kw):
    base = dict(api_key="sk-test-123456", language_hints=("ja",), target_language="zh")
    base.update(kw)
    return UpstreamSettings(**base)


def _session_with(ws, **kw):
    calls = []

    async def _connect(url, max_size=None):
        calls.append((url, max_size))
        return ws

    return UpstreamSession(_settings(**kw), connect=_connect), calls


async def _collect(session, limit=20):
    events = []
    async for ev in session.events():
        events.append(ev)
        if len(events) >= limit:
            break
    return events


def test_config_message_with_translation():
    cfg = _settings(language_hints=("ja", "en")).config_message()
    assert cfg["api_key"] == "sk-test-123456"
    assert cfg["model"] == "stt-rt-preview"
    assert cfg["audio_format"] == "auto"
    assert cfg["language_hints"] == ["ja", "en"]
    assert cfg["enable_endpoint_detection"] is True
    assert cfg["translation"] == {"type": "one_way", "target_language": "zh"}


def test_config_message_without_translation():
    cfg = _settings(translate=False).config_message()
    assert "translation" not in cfg


def test_mask_secret_hides_key():
    assert mask_secret("") == ""
    assert mask_secret("abc") == "***"
    masked = mask_secret("sk-test-123456")
    assert "test-1234" not in masked
    assert masked.startswith("sk-") and masked.endswith("56")


def test_parse_provider_message_tokens_and_boundary():
    events = parse_provider_message(
        json.dumps({"tokens": [{"text": "は", "language": "ja"}, {"text": "<end>", "is_final": True}]})
    )
    assert len(events) == 1
    assert isinstance(events[0], TokensEvent)
    assert events[0].boundary is True
    assert [tk.text for tk in events[0].tokens] == ["は", "<end>"]


def test_parse_provider_message_error_and_finished():
    events = parse_provider_message(json.dumps({"error_code": 401, "error_message": "bad key", "finished": True}))
    assert isinstance(events[0], ProviderErrorEvent)
    assert events[0].code == "401"
    assert events[0].message == "bad key"
    assert isinstance(events[-1], ClosedEvent)
    assert events[-1].reason == "finished"


def test_parse_provider_message_rejects_non_object():
    events = parse_provider_message("[1, 2]")
    assert len(events) == 1
    assert isinstance(events[0], ParseErrorEvent)


def test_parse_provider_message_empty_tokens_yields_nothing():
    assert parse_provider_message(b'{"tokens": []}') == []


def test_open_sends_config_and_streams_audio():
    async def _run():
        ws = _FakeProviderWS()
        session, calls = _session_with(ws)
        await session.open()
        assert session.state == UpstreamState.CONFIGURED
        assert calls and calls[0][0] == session.settings.url
        config = json.loads(ws.sent[0])
        assert config["model"] == "stt-rt-preview"

        assert await session.send_audio(b"\x01\x02") is True
        assert session.state == UpstreamState.STREAMING
        assert ws.sent[1] == b"\x01\x02"
        assert await session.finalize() is True
        assert json.loads(ws.sent[2]) == {"type": "finalize"}

        await session.close("done")
        assert session.is_closed
        assert session.state == UpstreamState.CLOSED
        assert await session.send_audio(b"\x03") is False
        assert await session.finalize() is False
        assert session.dropped_chunks == 1
        assert session.sent_chunks == 1

    asyncio.run(_run())


def test_events_stream_tokens_then_closed_on_finished():
    async def _run():
        ws = _FakeProviderWS(
            [
                {"tokens": [{"text": "こん", "language": "ja", "translation_status": "original"}]},
                "not-json",
                {"finished": True},
            ]
        )
        session, _ = _session_with(ws)
        await session.open()
        events = await asyncio.wait_for(_collect(session), timeout=2.0)
        assert isinstance(events[0], TokensEvent)
        assert isinstance(events[1], ParseErrorEvent)
        assert isinstance(events[-1], ClosedEvent)
        assert events[-1].requested is False
        assert events[-1].reason == "finished"
        assert ws.closed is True

    asyncio.run(_run())


def test_provider_error_marks_session_errored():
    async def _run():
        ws = _FakeProviderWS([{"error_code": 503, "error_message": "overloaded"}])
        session, _ = _session_with(ws)
        await session.open()
        events = await asyncio.wait_for(_collect(session, limit=1), timeout=2.0)
        assert isinstance(events[0], ProviderErrorEvent)
        assert session.is_errored
        assert session.last_error == "503: overloaded"
        await session.close()
        assert session.state == UpstreamState.ERRORED

    asyncio.run(_run())


def test_close_is_idempotent_and_emits_single_closed_event():
    async def _run():
        ws = _FakeProviderWS()
        session, _ = _session_with(ws)
        await session.open()
        await session.close("client disconnected")
        await session.close("again")
        events = await asyncio.wait_for(_collect(session), timeout=2.0)
        assert len(events) == 1
        assert isinstance(events[0], ClosedEvent)
        assert events[0].requested is True
        assert events[0].reason == "client disconnected"

    asyncio.run(_run())


def test_open_failure_raises_upstream_error():
    async def _run():
        async def _connect(url, max_size=None):
            raise OSError("connection refused")

        session = UpstreamSession(_settings(), connect=_connect)
        with pytest.raises(UpstreamError, match="connect to provider failed"):
            await session.open()
        assert session.is_closed

    asyncio.run(_run())
