# coding=utf-8
from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class JobStatus(str, Enum):
    UPLOADING = "uploading"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR)


_ALLOWED_TRANSITIONS = {
    JobStatus.UPLOADING: {JobStatus.UPLOADING, JobStatus.PROCESSING, JobStatus.ERROR},
    JobStatus.PROCESSING: {JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.ERROR},
    JobStatus.COMPLETED: set(),
    JobStatus.ERROR: set(),
}


class InvalidJobTransition(ValueError):
    pass


@dataclass
class AsyncJob:
    id: str
    file_path: str
    status: JobStatus = JobStatus.UPLOADING
    progress: int = 0
    file_id: Optional[str] = None
    transcription_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def status_view(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "status": self.status.value,
            "progress": self.progress,
            "transcriptionId": self.transcription_id,
            "error": self.error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


class JobRegistry:
    """
    Process-wide table of asynchronous transcription jobs.

    Each job is written by exactly one orchestrator task; readers get copies
    of the status fields. Transitions only move forward and progress never
    decreases.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, AsyncJob] = {}
        self._lock = threading.Lock()

    def create(self, file_path: str) -> AsyncJob:
        job = AsyncJob(id=str(uuid.uuid4()), file_path=str(file_path))
        with self._lock:
            self._jobs[job.id] = job
        return job

    def get(self, job_id: str) -> Optional[AsyncJob]:
        with self._lock:
            return self._jobs.get(str(job_id))

    def list_ids(self) -> List[str]:
        with self._lock:
            return list(self._jobs.keys())

    def advance(
        self,
        job_id: str,
        status: Optional[JobStatus] = None,
        *,
        progress: Optional[int] = None,
        **fields: Any,
    ) -> AsyncJob:
        with self._lock:
            job = self._jobs.get(str(job_id))
            if job is None:
                raise KeyError(job_id)
            nxt = job.status if status is None else JobStatus(status)
            if nxt not in _ALLOWED_TRANSITIONS[job.status]:
                raise InvalidJobTransition(f"job {job_id}: {job.status.value} -> {nxt.value}")
            for key, value in fields.items():
                if not hasattr(job, key):
                    raise AttributeError(f"unknown job field: {key}")
                setattr(job, key, value)
            if progress is not None:
                job.progress = max(job.progress, min(100, max(0, int(progress))))
            job.status = nxt
            job.updated_at = time.time()
            return job

    def bump_progress(self, job_id: str, step: int, cap: int) -> AsyncJob:
        job = self.get(job_id)
        if job is None:
            raise KeyError(job_id)
        return self.advance(job_id, progress=min(int(cap), job.progress + int(step)))

    def complete(self, job_id: str, result: Dict[str, Any]) -> AsyncJob:
        return self.advance(job_id, JobStatus.COMPLETED, progress=100, result=result)

    def fail(self, job_id: str, message: str) -> Optional[AsyncJob]:
        job = self.get(job_id)
        if job is None or job.status.is_terminal:
            return job
        return self.advance(job_id, JobStatus.ERROR, error=str(message or "unknown error"))
