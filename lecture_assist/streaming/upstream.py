# coding=utf-8
from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple, Union

import websockets
from websockets.exceptions import ConnectionClosed

from .aggregator import Token, has_boundary

logger = logging.getLogger(__name__)

DEFAULT_REALTIME_URL = "wss://stt-rt.soniox.com/transcribe-websocket"


class UpstreamError(RuntimeError):
    pass


class UpstreamState(str, Enum):
    CONNECTING = "connecting"
    CONFIGURED = "configured"
    STREAMING = "streaming"
    CLOSED = "closed"
    ERRORED = "errored"


@dataclass(frozen=True)
class TokensEvent:
    tokens: Tuple[Token, ...]
    boundary: bool


@dataclass(frozen=True)
class ProviderErrorEvent:
    code: str
    message: str


@dataclass(frozen=True)
class ParseErrorEvent:
    message: str


@dataclass(frozen=True)
class ClosedEvent:
    reason: str
    requested: bool = False


UpstreamEvent = Union[TokensEvent, ProviderErrorEvent, ParseErrorEvent, ClosedEvent]


def mask_secret(s: str) -> str:
    if not s:
        return ""
    return (s[:3] + "***" + s[-2:]) if len(s) > 5 else "***"


@dataclass(frozen=True)
class UpstreamSettings:
    api_key: str = ""
    model: str = "stt-rt-preview"
    url: str = DEFAULT_REALTIME_URL
    audio_format: str = "auto"
    language_hints: Tuple[str, ...] = ("ja",)
    enable_endpoint_detection: bool = True
    translate: bool = True
    target_language: str = "zh"
    open_timeout_sec: float = 10.0
    max_message_bytes: int = 16 * 1024 * 1024

    def config_message(self) -> Dict[str, Any]:
        config: Dict[str, Any] = {
            "api_key": self.api_key,
            "model": self.model,
            "audio_format": self.audio_format,
            "language_hints": list(self.language_hints),
            "enable_endpoint_detection": bool(self.enable_endpoint_detection),
        }
        if self.translate and self.target_language:
            config["translation"] = {"type": "one_way", "target_language": self.target_language}
        return config


def parse_provider_message(raw: Union[str, bytes]) -> List[UpstreamEvent]:
    """
    Turn one provider frame into typed events.

    A frame may carry tokens, an error code, and/or the ``finished`` flag.
    Frames that are not JSON objects yield a single ParseErrorEvent.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = bytes(raw).decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as exc:
        return [ParseErrorEvent(message=f"invalid provider json: {exc}")]
    if not isinstance(payload, dict):
        return [ParseErrorEvent(message="provider message must be a JSON object")]

    events: List[UpstreamEvent] = []
    if payload.get("error_code") is not None:
        events.append(
            ProviderErrorEvent(
                code=str(payload.get("error_code")),
                message=str(payload.get("error_message", "") or ""),
            )
        )

    raw_tokens = payload.get("tokens")
    if isinstance(raw_tokens, list) and raw_tokens:
        tokens = tuple(Token.from_dict(tk) for tk in raw_tokens if isinstance(tk, dict))
        if tokens:
            events.append(TokensEvent(tokens=tokens, boundary=has_boundary(tokens)))

    if bool(payload.get("finished", False)):
        events.append(ClosedEvent(reason="finished"))
    return events


class UpstreamSession:
    """
    One outbound connection to the provider's streaming endpoint.

    connecting -> configured -> streaming -> closed, with an absorbing
    errored state. Provider output is exposed through ``events()``; the
    stream ends after exactly one ClosedEvent.
    """

    def __init__(
        self,
        settings: UpstreamSettings,
        connect: Optional[Callable[..., Any]] = None,
    ) -> None:
        self.settings = settings
        self._connect = connect or websockets.connect
        self.state = UpstreamState.CONNECTING
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self.sent_chunks = 0
        self.sent_bytes = 0
        self.dropped_chunks = 0
        self.last_error = ""

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_errored(self) -> bool:
        return self.state == UpstreamState.ERRORED

    async def open(self) -> None:
        self.state = UpstreamState.CONNECTING
        try:
            self._ws = await asyncio.wait_for(
                self._connect(self.settings.url, max_size=self.settings.max_message_bytes),
                timeout=self.settings.open_timeout_sec,
            )
        except Exception as exc:
            self._closed = True
            self.state = UpstreamState.CLOSED
            raise UpstreamError(f"connect to provider failed: {exc}") from exc

        try:
            await self._ws.send(json.dumps(self.settings.config_message(), ensure_ascii=False))
        except Exception as exc:
            self._closed = True
            self.state = UpstreamState.CLOSED
            with suppress(Exception):
                await self._ws.close()
            raise UpstreamError(f"send config to provider failed: {exc}") from exc

        self.state = UpstreamState.CONFIGURED
        logger.info(
            "upstream opened url=%s model=%s api_key=%s hints=%s translate=%s target=%s",
            self.settings.url,
            self.settings.model,
            mask_secret(self.settings.api_key),
            ",".join(self.settings.language_hints),
            self.settings.translate,
            self.settings.target_language,
        )
        self._reader = asyncio.create_task(self._read_loop())

    async def send_audio(self, data: bytes) -> bool:
        if self._closed or self._ws is None:
            self.dropped_chunks += 1
            return False
        try:
            await self._ws.send(bytes(data))
        except ConnectionClosed as exc:
            self.dropped_chunks += 1
            await self._shutdown(f"connection lost while sending audio: {exc}", requested=False)
            return False
        self.sent_chunks += 1
        self.sent_bytes += len(data)
        if self.state == UpstreamState.CONFIGURED:
            self.state = UpstreamState.STREAMING
        return True

    async def finalize(self) -> bool:
        if self._closed or self._ws is None:
            return False
        try:
            await self._ws.send(json.dumps({"type": "finalize"}))
        except ConnectionClosed as exc:
            await self._shutdown(f"connection lost while sending finalize: {exc}", requested=False)
            return False
        return True

    async def events(self) -> AsyncIterator[UpstreamEvent]:
        while True:
            event = await self._events.get()
            yield event
            if isinstance(event, ClosedEvent):
                return

    async def close(self, reason: str = "session closed") -> None:
        if self._closed:
            return
        reader = self._reader
        if reader is not None and not reader.done() and reader is not asyncio.current_task():
            reader.cancel()
            with suppress(asyncio.CancelledError, Exception):
                await reader
        await self._shutdown(reason, requested=True)

    async def _read_loop(self) -> None:
        reason = "provider closed connection"
        try:
            async for raw in self._ws:
                for event in parse_provider_message(raw):
                    if isinstance(event, ClosedEvent):
                        reason = event.reason
                        await self._shutdown(reason, requested=False)
                        return
                    if isinstance(event, ProviderErrorEvent):
                        self.state = UpstreamState.ERRORED
                        self.last_error = f"{event.code}: {event.message}"
                        logger.warning("upstream provider error code=%s message=%s", event.code, event.message)
                    elif isinstance(event, ParseErrorEvent):
                        logger.warning("upstream parse error: %s", event.message)
                    await self._events.put(event)
        except ConnectionClosed as exc:
            reason = f"connection lost: {exc}"
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("upstream read loop failed")
            reason = f"read failed: {exc}"
        await self._shutdown(reason, requested=False)

    async def _shutdown(self, reason: str, *, requested: bool) -> None:
        if self._closed:
            return
        self._closed = True
        if self.state != UpstreamState.ERRORED:
            self.state = UpstreamState.CLOSED
        if self._ws is not None:
            with suppress(Exception):
                await self._ws.close()
        logger.info(
            "upstream closed reason=%s requested=%s sent_chunks=%d sent_bytes=%d dropped=%d",
            reason,
            requested,
            self.sent_chunks,
            self.sent_bytes,
            self.dropped_chunks,
        )
        await self._events.put(ClosedEvent(reason=reason, requested=requested))
