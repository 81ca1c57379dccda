#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path
from typing import Any, Dict, List

import websockets

from lecture_assist.debug.caption_selfcheck import analyze_caption_events, summarize_result


def _chunk_bytes(raw: bytes, chunk_bytes: int) -> List[bytes]:
    size = max(1, int(chunk_bytes))
    return [raw[i : i + size] for i in range(0, len(raw), size) if raw[i : i + size]]


async def _recv_loop(ws, events: List[Dict[str, Any]], stop: asyncio.Event) -> None:
    while not stop.is_set():
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=0.5)
        except asyncio.TimeoutError:
            continue
        except websockets.exceptions.ConnectionClosed:
            break
        if isinstance(raw, bytes):
            continue
        try:
            msg = json.loads(raw)
        except ValueError:
            continue
        events.append(msg)
        if str(msg.get("type", "")).lower() == "error":
            stop.set()


async def _replay_file(
    ws_url: str,
    audio_path: Path,
    chunk_bytes: int,
    chunk_ms: int,
    realtime_factor: float,
    tail_sec: float,
) -> List[Dict[str, Any]]:
    chunks = _chunk_bytes(audio_path.read_bytes(), chunk_bytes)
    events: List[Dict[str, Any]] = []
    stop = asyncio.Event()

    async with websockets.connect(ws_url, max_size=16 * 1024 * 1024) as ws:
        recv_task = asyncio.create_task(_recv_loop(ws, events, stop))
        sleep_sec = max(0.0, (chunk_ms / 1000.0) / max(0.01, float(realtime_factor)))

        for chunk in chunks:
            if stop.is_set():
                break
            await ws.send(chunk)
            if sleep_sec > 0:
                await asyncio.sleep(sleep_sec)

        if not stop.is_set():
            await ws.send(json.dumps({"type": "finalize"}))

        # Finals arrive after the provider answers the finalize request.
        try:
            await asyncio.wait_for(stop.wait(), timeout=max(0.0, tail_sec))
        except asyncio.TimeoutError:
            pass
        stop.set()
        await recv_task

    return events


def _load_events_jsonl(path: Path) -> List[Dict[str, Any]]:
    events: List[Dict[str, Any]] = []
    with path.open("r", encoding="utf-8") as f:
        for line in f:
            text = line.strip()
            if not text:
                continue
            events.append(json.loads(text))
    return events


def _save_events_jsonl(path: Path, events: List[Dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        for event in events:
            f.write(json.dumps(event, ensure_ascii=False) + "\n")


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Replay an audio file into /ingest and self-check caption stability.")
    p.add_argument("--ws-url", default="ws://127.0.0.1:4350/ingest")
    p.add_argument("--audio", default="", help="Encoded audio file (webm/ogg/wav...) to replay as binary chunks")
    p.add_argument("--chunk-bytes", type=int, default=16000)
    p.add_argument("--chunk-ms", type=int, default=1000, help="Pause between chunks at realtime-factor 1.0")
    p.add_argument("--realtime-factor", type=float, default=1.0, help="1.0=realtime, 2.0=2x faster")
    p.add_argument("--tail-sec", type=float, default=10.0, help="Keep listening this long after the last chunk")
    p.add_argument("--events-jsonl", default="", help="save replayed events to jsonl; or load existing when --audio omitted")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    events_path = Path(args.events_jsonl).expanduser() if args.events_jsonl else None

    if args.audio:
        events = asyncio.run(
            _replay_file(
                ws_url=str(args.ws_url),
                audio_path=Path(args.audio).expanduser(),
                chunk_bytes=int(args.chunk_bytes),
                chunk_ms=int(args.chunk_ms),
                realtime_factor=float(args.realtime_factor),
                tail_sec=float(args.tail_sec),
            )
        )
        if events_path is not None:
            _save_events_jsonl(events_path, events)
    else:
        if events_path is None:
            raise SystemExit("provide --audio for replay, or --events-jsonl to load existing events")
        events = _load_events_jsonl(events_path)

    result = analyze_caption_events(events)
    print(summarize_result(result))


if __name__ == "__main__":
    main()
