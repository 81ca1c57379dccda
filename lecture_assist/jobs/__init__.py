# coding=utf-8

from .orchestrator import AsyncJobOrchestrator, JobTimeoutError
from .provider_api import ProviderAPIError, SonioxRestClient
from .registry import AsyncJob, InvalidJobTransition, JobRegistry, JobStatus
from .reshape import reshape_transcript

__all__ = [
    "AsyncJob",
    "AsyncJobOrchestrator",
    "InvalidJobTransition",
    "JobRegistry",
    "JobStatus",
    "JobTimeoutError",
    "ProviderAPIError",
    "SonioxRestClient",
    "reshape_transcript",
]
