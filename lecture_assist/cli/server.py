# coding=utf-8
# Copyright 2026 The Lecture Assist Authors.
# SPDX-License-Identifier: Apache-2.0
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""
Lecture caption relay: browser microphone -> streaming STT provider over WebSocket,
plus SRT export and asynchronous file transcription.
"""
import argparse
import asyncio
import logging
import os
import shutil
import socket
import uuid
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, File, UploadFile, WebSocket
from fastapi.responses import HTMLResponse, JSONResponse, Response

from lecture_assist.export.subtitles import render_srt, render_text
from lecture_assist.jobs import AsyncJobOrchestrator, JobRegistry, JobStatus, SonioxRestClient
from lecture_assist.persistence import AudioChunkStore, PersistenceStats, TranscriptSink, create_run_dir
from lecture_assist.streaming.relay import RelaySettings, SessionRegistry, SessionRelay
from lecture_assist.streaming.upstream import DEFAULT_REALTIME_URL, UpstreamSession, UpstreamSettings

logger = logging.getLogger(__name__)

INGEST_PATH = "/ingest"


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    return default if raw is None or raw.strip() == "" else raw.strip()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning("ignoring invalid integer env %s=%r", name, raw)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning("ignoring invalid float env %s=%r", name, raw)
        return default


def _split_csv(text: Any) -> List[str]:
    return [x.strip() for x in str(text or "").split(",") if x.strip()]


def _assert_port_bindable(host: str, port: int) -> None:
    bind_host = str(host or "0.0.0.0").strip() or "0.0.0.0"
    if bind_host == "*":
        bind_host = "0.0.0.0"
    bind_port = int(port)
    try:
        addr_infos = socket.getaddrinfo(
            bind_host,
            bind_port,
            family=socket.AF_UNSPEC,
            type=socket.SOCK_STREAM,
            proto=socket.IPPROTO_TCP,
            flags=socket.AI_PASSIVE,
        )
    except socket.gaierror as exc:
        raise RuntimeError(f"invalid bind host '{bind_host}': {exc}") from exc

    last_error: Optional[OSError] = None
    for family, socktype, proto, _, sockaddr in addr_infos:
        probe = socket.socket(family, socktype, proto)
        with suppress(OSError):
            probe.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            probe.bind(sockaddr)
            return
        except OSError as exc:
            last_error = exc
        finally:
            probe.close()
    raise RuntimeError(f"port {bind_port} on {bind_host} is not bindable: {last_error}")


INDEX_HTML_TEMPLATE = r"""<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8" />
  <meta name="viewport" content="width=device-width,initial-scale=1" />
  <title>Lecture Assist</title>
  <style>
    :root{
      --ink:#1d2129;
      --line:#d9dde3;
      --ok:#29b26b;
      --warn:#cc8f28;
      --err:#d75858;
    }
    body{
      font-family: system-ui, "Segoe UI", Roboto, Helvetica, Arial, sans-serif;
      color: var(--ink);
      padding: 16px;
      max-width: 900px;
      margin: auto;
    }
    .row{ display:flex; gap:10px; align-items:center; flex-wrap: wrap; }
    .panel{
      font-size: 20px;
      white-space: pre-wrap;
      min-height: 2.4em;
      margin: 8px 0;
      padding: 8px;
      border: 1px solid var(--line);
      border-radius: 8px;
    }
    .partial{ color: #6b7280; }
    .badge{ padding: 2px 8px; border-radius: 8px; border: 1px solid var(--line); }
    .badge.ok{ color: var(--ok); }
    .badge.warn{ color: var(--warn); }
    .badge.err{ color: var(--err); }
    .progress{ height: 6px; background: var(--line); border-radius: 3px; width: 240px; }
    .progress > div{ height: 100%; width: 0; background: var(--ok); border-radius: 3px; }
  </style>
</head>
<body>
  <h1>Lecture Assist</h1>

  <div class="row">
    <button id="btnStart">Start</button>
    <button id="btnStop" disabled>Stop</button>
    <a href="/export/srt" target="_blank" rel="noreferrer"><button>Export SRT</button></a>
    <span id="status" class="badge warn">Idle</span>
  </div>

  <h2>__SOURCE_LABEL__</h2>
  <div id="source" class="panel"></div>
  <h2>__TARGET_LABEL__</h2>
  <div id="target" class="panel"></div>

  <h2>File transcription</h2>
  <div class="row">
    <input id="fileInput" type="file" accept="audio/*" />
    <span id="jobStatus"></span>
    <div class="progress"><div id="jobProgress"></div></div>
  </div>
  <div id="asyncSource" class="panel"></div>
  <div id="asyncTarget" class="panel"></div>

<script>
(() => {
  const CHUNK_MS = __CHUNK_MS__;
  const POLL_MS = __POLL_MS__;
  const $ = (id) => document.getElementById(id);
  const btnStart = $("btnStart");
  const btnStop = $("btnStop");
  const statusEl = $("status");
  let ws = null, recorder = null, stream = null;
  let finalSource = "", finalTarget = "";

  function setStatus(text, cls) {
    statusEl.textContent = text;
    statusEl.className = "badge " + cls;
  }

  function render(partial) {
    const src = partial ? partial.sourceText || "" : "";
    const tgt = partial ? partial.targetText || "" : "";
    $("source").innerHTML = "";
    $("target").innerHTML = "";
    $("source").append(finalSource, Object.assign(document.createElement("span"), {className: "partial", textContent: src}));
    $("target").append(finalTarget, Object.assign(document.createElement("span"), {className: "partial", textContent: tgt}));
  }

  function onMessage(ev) {
    let msg;
    try { msg = JSON.parse(ev.data); } catch (e) { return; }
    if (msg.type === "partial") {
      render(msg);
    } else if (msg.type === "final") {
      if (msg.sourceText) finalSource += msg.sourceText + "\n";
      if (msg.targetText) finalTarget += msg.targetText + "\n";
      render(null);
    } else if (msg.type === "error") {
      setStatus(msg.error || "error", "err");
    }
  }

  async function start() {
    stream = await navigator.mediaDevices.getUserMedia({
      audio: { echoCancellation: true, noiseSuppression: true, channelCount: 1 },
      video: false,
    });
    recorder = new MediaRecorder(stream, { mimeType: "audio/webm;codecs=opus", audioBitsPerSecond: 24000 });
    const proto = location.protocol === "https:" ? "wss" : "ws";
    ws = new WebSocket(`${proto}://${location.host}__WS_PATH__`);
    ws.binaryType = "arraybuffer";
    ws.onmessage = onMessage;
    ws.onclose = () => setStatus("Closed", "warn");
    ws.onopen = () => setStatus("Live", "ok");
    recorder.ondataavailable = (e) => e.data.arrayBuffer().then((buf) => ws && ws.readyState === 1 && ws.send(buf));
    recorder.start(CHUNK_MS);
    btnStart.disabled = true;
    btnStop.disabled = false;
  }

  function stop() {
    recorder && recorder.stop();
    stream && stream.getTracks().forEach((t) => t.stop());
    ws && ws.close();
    ws = null;
    btnStart.disabled = false;
    btnStop.disabled = true;
    setStatus("Idle", "warn");
  }

  async function upload(file) {
    const form = new FormData();
    form.append("audio", file);
    $("jobStatus").textContent = "uploading";
    const resp = await fetch("/api/upload", { method: "POST", body: form });
    if (!resp.ok) { $("jobStatus").textContent = "upload failed"; return; }
    const { jobId } = await resp.json();
    const timer = setInterval(async () => {
      const st = await fetch(`/api/status/${jobId}`).then((r) => r.json());
      $("jobStatus").textContent = st.status + (st.error ? ": " + st.error : "");
      $("jobProgress").style.width = (st.progress || 0) + "%";
      if (st.status === "completed") {
        clearInterval(timer);
        const res = await fetch(`/api/result/${jobId}`).then((r) => r.json());
        $("asyncSource").textContent = res.result.sourceText;
        $("asyncTarget").textContent = res.result.targetText;
      } else if (st.status === "error") {
        clearInterval(timer);
      }
    }, POLL_MS);
  }

  btnStart.onclick = start;
  btnStop.onclick = stop;
  $("fileInput").onchange = (e) => e.target.files[0] && upload(e.target.files[0]);
})();
</script>
</body>
</html>
"""


def _store_upload(src: Any, save_path: Path) -> int:
    """Copy an uploaded file to disk and return the stored size in bytes."""
    with open(save_path, "wb") as f:
        shutil.copyfileobj(src, f)
    return save_path.stat().st_size


def _upstream_settings(args: argparse.Namespace) -> UpstreamSettings:
    return UpstreamSettings(
        api_key=str(getattr(args, "api_key", "") or ""),
        model=str(getattr(args, "model", "stt-rt-preview") or "stt-rt-preview"),
        url=str(getattr(args, "realtime_url", DEFAULT_REALTIME_URL) or DEFAULT_REALTIME_URL),
        language_hints=tuple(getattr(args, "language_hints", ["ja"]) or ["ja"]),
        enable_endpoint_detection=bool(getattr(args, "enable_endpoint_detection", True)),
        translate=bool(getattr(args, "translate", True)),
        target_language=str(getattr(args, "target_language", "zh") or ""),
    )


def _relay_settings(args: argparse.Namespace) -> RelaySettings:
    hints = list(getattr(args, "language_hints", ["ja"]) or ["ja"])
    source_language = str(getattr(args, "source_language", "") or "") or hints[0]
    return RelaySettings(
        source_language=source_language,
        target_language=str(getattr(args, "target_language", "zh") or ""),
        silence_finalize_ms=float(getattr(args, "silence_finalize_ms", 2000)),
        max_segment_ms=float(getattr(args, "max_segment_ms", 0)),
        finalize_tick_ms=float(getattr(args, "finalize_tick_ms", 500)),
        save_audio=bool(getattr(args, "save_audio", True)),
        emit_empty_segments=bool(getattr(args, "emit_empty_segments", False)),
    )


def _create_app(
    args: argparse.Namespace,
    upstream_factory: Optional[Callable[[], Any]] = None,
    rest_client: Optional[Any] = None,
) -> FastAPI:
    paths = create_run_dir(args.root_dir, getattr(args, "course_name", "course-default"))
    persistence_stats = PersistenceStats()
    sink = TranscriptSink(paths.transcript, persistence_stats)
    audio_store = AudioChunkStore(paths.audio_dir, persistence_stats)
    sessions = SessionRegistry()
    jobs = JobRegistry()
    relay_settings = _relay_settings(args)
    upstream_settings = _upstream_settings(args)
    max_connections = max(1, int(getattr(args, "max_connections", 16)))

    if upstream_factory is None:
        def upstream_factory() -> UpstreamSession:
            return UpstreamSession(upstream_settings)

    if rest_client is None and upstream_settings.api_key:
        rest_client = SonioxRestClient(
            api_key=upstream_settings.api_key,
            base_url=str(getattr(args, "api_base_url", "") or "https://api.soniox.com"),
            model=str(getattr(args, "async_model", "stt-async-preview") or "stt-async-preview"),
            language_hints=upstream_settings.language_hints,
            translate=upstream_settings.translate,
            target_language=upstream_settings.target_language,
        )
    orchestrator: Optional[AsyncJobOrchestrator] = None
    if rest_client is not None:
        orchestrator = AsyncJobOrchestrator(
            rest_client,
            jobs,
            target_language=upstream_settings.target_language if upstream_settings.translate else "",
            poll_interval_sec=float(getattr(args, "poll_interval_sec", 2.0)),
            max_wait_sec=float(getattr(args, "job_max_wait_sec", 1800.0)),
        )

    @asynccontextmanager
    async def _lifespan(_app: FastAPI):
        yield
        if orchestrator is not None:
            await orchestrator.shutdown()

    app = FastAPI(title="Lecture Assist Caption Relay", lifespan=_lifespan)
    app.state.paths = paths
    app.state.sink = sink
    app.state.sessions = sessions
    app.state.jobs = jobs
    app.state.orchestrator = orchestrator
    app.state.persistence_stats = persistence_stats

    @app.get("/")
    async def index() -> HTMLResponse:
        html = INDEX_HTML_TEMPLATE.replace("__CHUNK_MS__", str(int(getattr(args, "client_chunk_ms", 1000))))
        html = html.replace("__POLL_MS__", str(int(float(getattr(args, "poll_interval_sec", 2.0)) * 1000)))
        html = html.replace("__WS_PATH__", INGEST_PATH)
        html = html.replace("__SOURCE_LABEL__", relay_settings.source_language.upper() or "SOURCE")
        html = html.replace("__TARGET_LABEL__", relay_settings.target_language.upper() or "TARGET")
        return HTMLResponse(html)

    @app.get("/health")
    async def health() -> dict:
        return {
            "ok": True,
            "sessions": len(sessions),
            "jobs": len(jobs.list_ids()),
            "persistence": persistence_stats.snapshot(),
        }

    @app.get("/export/srt")
    async def export_srt() -> Response:
        try:
            segments = await asyncio.to_thread(sink.read_segments)
            body = render_srt(segments)
        except Exception:
            logger.exception("export.srt failed path=%s", sink.path)
            return JSONResponse(status_code=500, content={"error": "export_failed"})
        return Response(
            content=body,
            media_type="application/x-subrip",
            headers={"Content-Disposition": 'attachment; filename="lecture.srt"'},
        )

    @app.get("/export/txt")
    async def export_txt() -> Response:
        try:
            segments = await asyncio.to_thread(sink.read_segments)
            body = render_text(segments)
        except Exception:
            logger.exception("export.txt failed path=%s", sink.path)
            return JSONResponse(status_code=500, content={"error": "export_failed"})
        return Response(
            content=body,
            media_type="text/plain; charset=utf-8",
            headers={"Content-Disposition": 'attachment; filename="lecture.txt"'},
        )

    @app.post("/api/upload")
    async def upload(audio: UploadFile = File(...)) -> JSONResponse:
        if orchestrator is None:
            return JSONResponse(status_code=503, content={"error": "async transcription is not configured"})
        ext = Path(audio.filename or "").suffix or ".webm"
        save_path = paths.uploads_dir / f"{uuid.uuid4()}{ext}"
        try:
            size = await asyncio.to_thread(_store_upload, audio.file, save_path)
        except OSError as exc:
            logger.error("upload.save_failed path=%s err=%s", save_path, exc)
            return JSONResponse(status_code=500, content={"error": "failed to store upload"})
        if size == 0:
            await asyncio.to_thread(save_path.unlink)
            return JSONResponse(status_code=400, content={"error": "empty audio file"})
        job_id = orchestrator.submit(str(save_path))
        logger.info("upload.accepted job=%s name=%s path=%s", job_id, audio.filename, save_path)
        return JSONResponse(content={"jobId": job_id})

    @app.get("/api/status/{job_id}")
    async def job_status(job_id: str) -> JSONResponse:
        job = jobs.get(job_id)
        if job is None:
            return JSONResponse(status_code=404, content={"error": "job not found"})
        return JSONResponse(content=job.status_view())

    @app.get("/api/result/{job_id}")
    async def job_result(job_id: str) -> JSONResponse:
        job = jobs.get(job_id)
        if job is None:
            return JSONResponse(status_code=404, content={"error": "job not found"})
        if job.status != JobStatus.COMPLETED:
            return JSONResponse(
                status_code=409,
                content={"error": "job not completed", "status": job.status.value},
            )
        return JSONResponse(content={"id": job.id, "status": job.status.value, "result": job.result})

    @app.websocket(INGEST_PATH)
    async def ingest(websocket: WebSocket) -> None:
        if len(sessions) >= max_connections:
            await websocket.accept()
            await websocket.send_json({"type": "error", "error": "too many active connections"})
            await websocket.close(code=1013)
            return

        await websocket.accept()
        relay = SessionRelay(
            websocket,
            settings=relay_settings,
            upstream_factory=upstream_factory,
            sink=sink,
            audio_store=audio_store,
            registry=sessions,
        )
        await relay.run()

    return app


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Lecture Assist live caption relay (HTTP + WebSocket)")
    p.add_argument("--host", default=_env_str("HOST", "0.0.0.0"), help="Bind host")
    p.add_argument("--port", type=int, default=_env_int("PORT", 4350), help="Bind port")
    p.add_argument("--root-dir", default=_env_str("ROOT_DIR", "./storage"), help="Storage root for run directories")
    p.add_argument("--course-name", default=_env_str("COURSE_NAME", "course-default"), help="Run directory label")
    p.add_argument(
        "--save-audio",
        default=_env_bool("SAVE_AUDIO", True),
        action=argparse.BooleanOptionalAction,
        help="Keep a raw copy of every client audio chunk under <run>/audio",
    )
    p.add_argument(
        "--translate",
        default=_env_bool("DO_TRANSLATE", True),
        action=argparse.BooleanOptionalAction,
        help="Request one-way translation from the provider",
    )
    p.add_argument("--target-language", default=_env_str("TARGET_LANGUAGE", "zh"), help="Translation target language")
    p.add_argument(
        "--language-hints",
        type=_split_csv,
        default=_split_csv(_env_str("LANGUAGE_HINTS", "ja")),
        help="Comma separated source language hints, e.g. ja,en",
    )
    p.add_argument(
        "--source-language",
        default=_env_str("SOURCE_LANGUAGE", ""),
        help="Language of the source caption lane (defaults to the first language hint)",
    )
    p.add_argument("--model", default=_env_str("MODEL", "stt-rt-preview"), help="Real-time provider model")
    p.add_argument("--async-model", default=_env_str("ASYNC_MODEL", "stt-async-preview"), help="Async provider model")
    p.add_argument(
        "--enable-endpoint-detection",
        default=_env_bool("ENABLE_ENDPOINT_DETECTION", True),
        action=argparse.BooleanOptionalAction,
        help="Let the provider emit <end> markers on detected utterance ends",
    )
    p.add_argument(
        "--silence-finalize-ms",
        type=int,
        default=_env_int("SILENCE_FINALIZE_MS", 2000),
        help="Ask the provider to finalize after this much time without client audio",
    )
    p.add_argument(
        "--max-segment-ms",
        type=int,
        default=_env_int("MAX_SEGMENT_MS", 0),
        help="Ask the provider to finalize a segment open this long (0 disables)",
    )
    p.add_argument(
        "--finalize-tick-ms",
        type=int,
        default=_env_int("FINALIZE_TICK_MS", 500),
        help="Finalization timer tick",
    )
    p.add_argument(
        "--emit-empty-segments",
        default=_env_bool("EMIT_EMPTY_SEGMENTS", False),
        action=argparse.BooleanOptionalAction,
        help="Persist and emit segments that closed without any text",
    )
    p.add_argument("--api-key", default=_env_str("SONIOX_API_KEY", ""), help="Provider API key")
    p.add_argument("--realtime-url", default=_env_str("REALTIME_URL", DEFAULT_REALTIME_URL))
    p.add_argument("--api-base-url", default=_env_str("API_BASE_URL", "https://api.soniox.com"))
    p.add_argument(
        "--poll-interval-sec",
        type=float,
        default=_env_float("POLL_INTERVAL_SEC", 2.0),
        help="Async transcription status poll interval",
    )
    p.add_argument(
        "--job-max-wait-sec",
        type=float,
        default=_env_float("JOB_MAX_WAIT_SEC", 1800.0),
        help="Give up on an async transcription after this long (0 waits forever)",
    )
    p.add_argument("--client-chunk-ms", type=int, default=_env_int("CLIENT_CHUNK_MS", 1000))
    p.add_argument("--max-connections", type=int, default=_env_int("MAX_CONNECTIONS", 16))
    p.add_argument("--ssl-certfile", default=os.getenv("SSL_CERTFILE") or None, help="TLS certificate (enables HTTPS/WSS)")
    p.add_argument("--ssl-keyfile", default=os.getenv("SSL_KEYFILE") or None, help="TLS private key")
    p.add_argument(
        "--log-level",
        default=_env_str("LOG_LEVEL", "info").lower(),
        choices=["critical", "error", "warning", "info", "debug"],
    )
    return p.parse_args(argv)


def main() -> None:
    load_dotenv(override=False)
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
    )
    try:
        _assert_port_bindable(args.host, args.port)
    except RuntimeError as exc:
        logger.error("startup guard failed: %s", exc)
        raise SystemExit(2) from exc

    if not args.api_key:
        logger.warning("SONIOX_API_KEY is not set; provider connections will be rejected")

    app = _create_app(args)
    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        ssl_certfile=args.ssl_certfile,
        ssl_keyfile=args.ssl_keyfile,
    )


if __name__ == "__main__":
    main()
