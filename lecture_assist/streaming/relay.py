# coding=utf-8
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import suppress
from dataclasses import dataclass, field
from types import SimpleNamespace
from typing import Any, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

from .aggregator import TokenAggregator
from .finalize_policy import FinalizationPolicy
from .upstream import (
    ClosedEvent,
    ParseErrorEvent,
    ProviderErrorEvent,
    TokensEvent,
    UpstreamError,
    UpstreamSession,
)

logger = logging.getLogger(__name__)


def _parse_json_message(text: str) -> Dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as e:
        raise ValueError(f"invalid json: {e.msg}") from e
    if not isinstance(payload, dict):
        raise ValueError("json message must be an object")
    return payload


@dataclass(frozen=True)
class RelaySettings:
    source_language: str = "ja"
    target_language: str = "zh"
    silence_finalize_ms: float = 2000.0
    max_segment_ms: float = 0.0
    finalize_tick_ms: float = 500.0
    save_audio: bool = True
    emit_empty_segments: bool = False


@dataclass
class Session:
    client_id: str
    aggregator: TokenAggregator
    upstream: Any
    last_audio_chunk_at: float
    segment_opened_at: Optional[float] = None
    stats: SimpleNamespace = field(
        default_factory=lambda: SimpleNamespace(
            audio_chunks=0,
            audio_bytes=0,
            partial_msgs=0,
            final_msgs=0,
            empty_segments=0,
            error_msgs=0,
            finalize_directives=0,
            suppressed_batches=0,
            last_error="",
        )
    )


class SessionRegistry:
    """Live relays of this process, keyed by client id."""

    def __init__(self) -> None:
        self._sessions: Dict[str, "SessionRelay"] = {}

    def add(self, relay: "SessionRelay") -> None:
        self._sessions[relay.client_id] = relay

    def remove(self, client_id: str) -> None:
        self._sessions.pop(client_id, None)

    def get(self, client_id: str) -> Optional["SessionRelay"]:
        return self._sessions.get(client_id)

    def __len__(self) -> int:
        return len(self._sessions)


class SessionRelay:
    """
    Owns one client WebSocket: forwards its audio upstream, turns provider
    tokens into partial/final caption events and persists final segments.

    Three tasks share the Session: the audio loop (writes
    ``last_audio_chunk_at``), the provider loop (owns the aggregator and
    ``segment_opened_at``) and the finalize tick loop (owns the policy).
    """

    def __init__(
        self,
        websocket: WebSocket,
        *,
        settings: RelaySettings,
        upstream_factory: Callable[[], UpstreamSession],
        sink: Any,
        audio_store: Any = None,
        registry: Optional[SessionRegistry] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.websocket = websocket
        self.settings = settings
        self.sink = sink
        self.audio_store = audio_store
        self.registry = registry
        self.clock = clock
        self.client_id = str(uuid.uuid4())
        self.policy = FinalizationPolicy(
            silence_finalize_ms=settings.silence_finalize_ms,
            max_segment_ms=settings.max_segment_ms,
            tick_ms=settings.finalize_tick_ms,
        )
        self.session = Session(
            client_id=self.client_id,
            aggregator=TokenAggregator(settings.source_language, settings.target_language),
            upstream=upstream_factory(),
            last_audio_chunk_at=clock(),
        )
        self._send_lock = asyncio.Lock()
        self._tasks: list = []
        self._closed = False
        self._client_gone = False

    @property
    def peer(self) -> str:
        client = getattr(self.websocket, "client", None)
        return f"{client.host}:{client.port}" if client else "unknown"

    async def run(self) -> None:
        if self.registry is not None:
            self.registry.add(self)
        logger.info("ws open client=%s peer=%s", self.client_id, self.peer)
        try:
            try:
                await self.session.upstream.open()
            except UpstreamError as exc:
                self.session.stats.last_error = str(exc)
                logger.warning("ws upstream open failed client=%s err=%s", self.client_id, exc)
                await self._send_error(str(exc))
                return

            self._tasks = [
                asyncio.create_task(self._audio_loop(), name=f"audio-{self.client_id}"),
                asyncio.create_task(self._provider_loop(), name=f"provider-{self.client_id}"),
                asyncio.create_task(self._finalize_ticker(), name=f"finalize-{self.client_id}"),
            ]
            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None:
                    self.session.stats.last_error = str(exc)
                    logger.error("ws task failed client=%s task=%s err=%r", self.client_id, task.get_name(), exc)
        finally:
            await self.close()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()
        for task in self._tasks:
            if task is not current:
                with suppress(asyncio.CancelledError, Exception):
                    await task
        await self.session.upstream.close("client disconnected")
        if self.audio_store is not None:
            await self.audio_store.drain()
        if not self._client_gone:
            with suppress(Exception):
                await self.websocket.close(code=1000)
        if self.registry is not None:
            self.registry.remove(self.client_id)
        stats = self.session.stats
        logger.info(
            "ws close client=%s audio_chunks=%d audio_bytes=%d partial=%d final=%d empty=%d errors=%d finalize=%d suppressed=%d last_error=%s",
            self.client_id,
            stats.audio_chunks,
            stats.audio_bytes,
            stats.partial_msgs,
            stats.final_msgs,
            stats.empty_segments,
            stats.error_msgs,
            stats.finalize_directives,
            stats.suppressed_batches,
            stats.last_error,
        )

    async def _send_json(self, payload: Dict[str, Any]) -> None:
        if self._client_gone:
            return
        async with self._send_lock:
            await self.websocket.send_json(payload)

    async def _send_error(self, message: str) -> None:
        self.session.stats.error_msgs += 1
        with suppress(Exception):
            await self._send_json({"type": "error", "error": str(message)})

    async def _audio_loop(self) -> None:
        stats = self.session.stats
        while True:
            try:
                msg = await self.websocket.receive()
            except WebSocketDisconnect:
                self._client_gone = True
                return
            if msg.get("type") == "websocket.disconnect":
                self._client_gone = True
                return

            raw = msg.get("bytes")
            text = msg.get("text")
            if raw is not None:
                if not raw:
                    continue
                self.session.last_audio_chunk_at = self.clock()
                stats.audio_chunks += 1
                stats.audio_bytes += len(raw)
                if self.settings.save_audio and self.audio_store is not None:
                    self.audio_store.submit(self.client_id, raw)
                await self.session.upstream.send_audio(raw)
                if stats.audio_chunks == 1 or stats.audio_chunks % 50 == 0:
                    logger.info(
                        "ws recv client=%s chunks=%d bytes=%d",
                        self.client_id,
                        stats.audio_chunks,
                        stats.audio_bytes,
                    )
                continue

            if text is not None:
                try:
                    payload = _parse_json_message(text)
                except ValueError as e:
                    await self._send_error(str(e))
                    continue
                if str(payload.get("type", "")).lower() == "finalize":
                    await self._request_finalize("client")
                    continue
                logger.debug("ws ignores text message client=%s type=%s", self.client_id, payload.get("type"))

    async def _provider_loop(self) -> None:
        stats = self.session.stats
        upstream = self.session.upstream
        async for event in upstream.events():
            if isinstance(event, TokensEvent):
                if upstream.is_errored:
                    stats.suppressed_batches += 1
                    continue
                await self._on_tokens(event)
            elif isinstance(event, ProviderErrorEvent):
                stats.last_error = f"{event.code}: {event.message}"
                await self._send_error(f"provider error {event.code}: {event.message}")
            elif isinstance(event, ParseErrorEvent):
                stats.last_error = event.message
                await self._send_error("failed to parse provider message")
            elif isinstance(event, ClosedEvent):
                if not event.requested:
                    stats.last_error = event.reason
                    logger.warning("ws upstream lost client=%s reason=%s", self.client_id, event.reason)
                    await self._send_error(f"upstream closed: {event.reason}")
                return

    async def _on_tokens(self, event: TokensEvent) -> None:
        session = self.session
        agg = session.aggregator
        if agg.apply_tokens(event.tokens):
            if session.segment_opened_at is None and not agg.is_empty:
                session.segment_opened_at = self.clock()
            session.stats.partial_msgs += 1
            await self._send_json(agg.get_partial().to_message())

        if not event.boundary:
            return

        segment = agg.finalize_segment()
        session.segment_opened_at = None
        if segment.is_empty and not self.settings.emit_empty_segments:
            session.stats.empty_segments += 1
            return
        await asyncio.to_thread(self.sink.append, segment)
        session.stats.final_msgs += 1
        await self._send_json(segment.to_message())

    async def _finalize_ticker(self) -> None:
        while True:
            await asyncio.sleep(self.policy.tick_sec)
            decision = self.policy.evaluate(
                now=self.clock(),
                last_audio_at=self.session.last_audio_chunk_at,
                segment_opened_at=self.session.segment_opened_at,
            )
            if decision.should_finalize:
                await self._request_finalize(decision.reason)

    async def _request_finalize(self, reason: str) -> None:
        if await self.session.upstream.finalize():
            self.session.stats.finalize_directives += 1
            logger.debug("ws finalize requested client=%s reason=%s", self.client_id, reason)
