# coding=utf-8
from __future__ import annotations

import asyncio
import logging
import time
from contextlib import suppress
from typing import Any, Callable, Dict, Optional

from .provider_api import ProviderAPIError
from .registry import AsyncJob, JobRegistry, JobStatus
from .reshape import reshape_transcript

logger = logging.getLogger(__name__)


class JobTimeoutError(RuntimeError):
    pass


class AsyncJobOrchestrator:
    """
    Drive uploaded files through the provider's asynchronous API:
    upload -> create transcription -> poll -> fetch transcript -> reshape.

    Every failure is terminal for its job only and lands in ``job.error``;
    nothing is retried.
    """

    def __init__(
        self,
        client: Any,
        registry: JobRegistry,
        *,
        target_language: str = "",
        poll_interval_sec: float = 2.0,
        progress_step: int = 5,
        progress_cap: int = 95,
        max_wait_sec: float = 1800.0,
        cleanup_remote_files: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.registry = registry
        self.target_language = str(target_language or "")
        self.poll_interval_sec = max(0.0, float(poll_interval_sec))
        self.progress_step = max(1, int(progress_step))
        self.progress_cap = min(99, max(50, int(progress_cap)))
        self.max_wait_sec = max(0.0, float(max_wait_sec))
        self.cleanup_remote_files = bool(cleanup_remote_files)
        self.clock = clock
        self._tasks: Dict[str, asyncio.Task] = {}

    def submit(self, file_path: str) -> str:
        job = self.registry.create(file_path)
        task = asyncio.create_task(self._run(job.id), name=f"job-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _t, jid=job.id: self._tasks.pop(jid, None))
        logger.info("job.submitted job=%s file=%s", job.id, file_path)
        return job.id

    def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = self.registry.get(job_id)
        return job.status_view() if job is not None else None

    def get_result(self, job_id: str) -> Optional[AsyncJob]:
        return self.registry.get(job_id)

    async def wait(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            with suppress(asyncio.CancelledError):
                await task

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError, Exception):
                await task

    async def _run(self, job_id: str) -> None:
        job = self.registry.get(job_id)
        if job is None:
            return
        try:
            file_id = await asyncio.to_thread(self.client.upload_file, job.file_path)
            self.registry.advance(job_id, JobStatus.PROCESSING, progress=30, file_id=file_id)

            transcription_id = await asyncio.to_thread(self.client.create_transcription, file_id)
            self.registry.advance(job_id, progress=50, transcription_id=transcription_id)
            logger.info("job.processing job=%s transcription=%s", job_id, transcription_id)

            await self._poll_until_done(job_id, transcription_id)

            transcript = await asyncio.to_thread(self.client.get_transcript, transcription_id)
            tokens = transcript.get("tokens") if isinstance(transcript, dict) else None
            result = reshape_transcript(tokens or [], target_language=self.target_language)
            self.registry.complete(job_id, result)
            logger.info(
                "job.completed job=%s tokens=%d source_chars=%d target_chars=%d",
                job_id,
                len(result["rawTokens"]),
                len(result["sourceText"]),
                len(result["targetText"]),
            )
        except asyncio.CancelledError:
            self.registry.fail(job_id, "cancelled")
            raise
        except (ProviderAPIError, JobTimeoutError, OSError) as exc:
            logger.warning("job.failed job=%s err=%s", job_id, exc)
            self.registry.fail(job_id, str(exc))
        except Exception as exc:
            logger.exception("job.failed.unexpected job=%s", job_id)
            self.registry.fail(job_id, f"unexpected error: {exc}")
        finally:
            await self._cleanup_remote(job_id)

    async def _poll_until_done(self, job_id: str, transcription_id: str) -> None:
        started = self.clock()
        while True:
            await asyncio.sleep(self.poll_interval_sec)
            info = await asyncio.to_thread(self.client.get_transcription, transcription_id)
            status = str((info or {}).get("status", "")).lower()
            if status == "completed":
                return
            if status == "error":
                message = str((info or {}).get("error_message") or "transcription failed")
                raise ProviderAPIError(message)
            if self.max_wait_sec > 0 and (self.clock() - started) > self.max_wait_sec:
                raise JobTimeoutError(f"transcription not finished after {self.max_wait_sec:.0f}s")
            self.registry.bump_progress(job_id, self.progress_step, self.progress_cap)

    async def _cleanup_remote(self, job_id: str) -> None:
        if not self.cleanup_remote_files:
            return
        job = self.registry.get(job_id)
        if job is None or not job.file_id:
            return
        try:
            await asyncio.to_thread(self.client.delete_file, job.file_id)
        except Exception as exc:
            logger.warning("job.cleanup_failed job=%s file_id=%s err=%s", job_id, job.file_id, exc)
