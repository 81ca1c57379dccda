import asyncio
import itertools

import pytest
import requests

from lecture_assist.jobs import (
    AsyncJobOrchestrator,
    InvalidJobTransition,
    JobRegistry,
    JobStatus,
    ProviderAPIError,
    SonioxRestClient,
    reshape_transcript,
)


class _FakeClient:
    def __init__(self, statuses=("processing", "processing", "completed"), tokens=None, fail_on=None):
        self.statuses = list(statuses)
        self.tokens = tokens if tokens is not None else [{"text": "はい", "language": "ja", "translation_status": "original"}]
        self.fail_on = fail_on
        self.calls = []

    def _maybe_fail(self, name):
        self.calls.append(name)
        if self.fail_on == name:
            raise ProviderAPIError(f"{name} failed")

    def upload_file(self, file_path):
        self._maybe_fail("upload_file")
        return "file-9"

    def create_transcription(self, file_id):
        self._maybe_fail("create_transcription")
        return "tr-9"

    def get_transcription(self, transcription_id):
        self._maybe_fail("get_transcription")
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return {"status": status}

    def get_transcript(self, transcription_id):
        self._maybe_fail("get_transcript")
        return {"tokens": self.tokens}

    def delete_file(self, file_id):
        self._maybe_fail("delete_file")


class _RecordingRegistry(JobRegistry):
    def __init__(self):
        super().__init__()
        self.history = []

    def advance(self, job_id, status=None, *, progress=None, **fields):
        job = super().advance(job_id, status, progress=progress, **fields)
        self.history.append((job.status, job.progress))
        return job


def _run_job(client, registry=None, **kw):
    registry = registry if registry is not None else _RecordingRegistry()

    async def _run():
        orch = AsyncJobOrchestrator(client, registry, poll_interval_sec=0.0, **kw)
        job_id = orch.submit("/tmp/lecture.webm")
        await orch.wait(job_id)
        return job_id

    job_id = asyncio.run(_run())
    return registry, registry.get(job_id)


def test_registry_only_moves_forward():
    reg = JobRegistry()
    job = reg.create("/tmp/a.webm")
    assert job.status == JobStatus.UPLOADING
    reg.advance(job.id, JobStatus.PROCESSING, progress=30)
    with pytest.raises(InvalidJobTransition):
        reg.advance(job.id, JobStatus.UPLOADING)
    reg.complete(job.id, {"sourceText": ""})
    with pytest.raises(InvalidJobTransition):
        reg.advance(job.id, JobStatus.ERROR)
    assert reg.fail(job.id, "late").status == JobStatus.COMPLETED


def test_registry_progress_never_decreases():
    reg = JobRegistry()
    job = reg.create("/tmp/a.webm")
    reg.advance(job.id, JobStatus.PROCESSING, progress=50)
    reg.advance(job.id, progress=20)
    assert reg.get(job.id).progress == 50
    reg.advance(job.id, progress=500)
    assert reg.get(job.id).progress == 100


def test_registry_bump_progress_respects_cap():
    reg = JobRegistry()
    job = reg.create("/tmp/a.webm")
    reg.advance(job.id, JobStatus.PROCESSING, progress=90)
    for _ in range(5):
        reg.bump_progress(job.id, 5, 95)
    assert reg.get(job.id).progress == 95


def test_registry_rejects_unknown_field():
    reg = JobRegistry()
    job = reg.create("/tmp/a.webm")
    with pytest.raises(AttributeError):
        reg.advance(job.id, bogus=1)


def test_orchestrator_completes_job_with_monotonic_progress():
    registry, job = _run_job(_FakeClient())
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.file_id == "file-9"
    assert job.transcription_id == "tr-9"
    assert job.result["sourceText"] == "はい"

    statuses = [s for s, _ in registry.history]
    progress = [p for _, p in registry.history]
    assert progress == sorted(progress)
    assert statuses[0] == JobStatus.PROCESSING
    assert statuses[-1] == JobStatus.COMPLETED
    assert JobStatus.ERROR not in statuses


def test_orchestrator_deletes_remote_file():
    client = _FakeClient()
    _run_job(client)
    assert client.calls[-1] == "delete_file"


def test_orchestrator_marks_provider_error_status():
    registry, job = _run_job(_FakeClient(statuses=("processing", "error")))
    assert job.status == JobStatus.ERROR
    assert job.error
    assert job.result is None


@pytest.mark.parametrize("stage", ["upload_file", "create_transcription", "get_transcript"])
def test_orchestrator_records_stage_failures(stage):
    registry, job = _run_job(_FakeClient(fail_on=stage))
    assert job.status == JobStatus.ERROR
    assert job.error == f"{stage} failed"


def test_orchestrator_cleanup_failure_keeps_result():
    registry, job = _run_job(_FakeClient(fail_on="delete_file"))
    assert job.status == JobStatus.COMPLETED


def test_orchestrator_times_out_stuck_transcription():
    ticks = itertools.count()
    registry, job = _run_job(
        _FakeClient(statuses=("processing",)),
        max_wait_sec=3.0,
        clock=lambda: float(next(ticks)),
    )
    assert job.status == JobStatus.ERROR
    assert "not finished" in job.error
    assert job.progress <= 95


def test_orchestrator_shutdown_cancels_running_job():
    class _SlowClient(_FakeClient):
        def get_transcription(self, transcription_id):
            return {"status": "processing"}

    async def _run():
        registry = JobRegistry()
        orch = AsyncJobOrchestrator(_SlowClient(), registry, poll_interval_sec=0.01, max_wait_sec=0)
        job_id = orch.submit("/tmp/a.webm")
        await asyncio.sleep(0.05)
        await orch.shutdown()
        return registry.get(job_id)

    job = asyncio.run(_run())
    assert job.status == JobStatus.ERROR
    assert job.error == "cancelled"


def test_reshape_splits_lanes_and_labels_speakers():
    tokens = [
        {"text": "おはよう", "language": "ja", "translation_status": "original", "speaker": "1"},
        {"text": "早上好", "language": "zh", "translation_status": "translation", "speaker": "1"},
        {"text": "はい", "language": "ja", "translation_status": "original", "speaker": "2"},
        {"text": "是", "language": "zh", "translation_status": "translation", "speaker": "2"},
        {"text": "<end>", "is_final": True},
    ]
    out = reshape_transcript(tokens, target_language="zh")
    assert out["sourceText"] == "[Speaker 1] おはよう\n\n[Speaker 2] はい"
    assert out["targetText"] == "[Speaker 1] 早上好\n\n[Speaker 2] 是"
    assert len(out["rawTokens"]) == 5


def test_reshape_language_switch_starts_new_line():
    tokens = [
        {"text": "Hello", "language": "en", "translation_status": "original"},
        {"text": " world", "language": "en", "translation_status": "original"},
        {"text": " こんにちは", "language": "ja", "translation_status": "original"},
    ]
    out = reshape_transcript(tokens)
    assert out["sourceText"] == "Hello world\nこんにちは"
    assert out["targetText"] == ""


def test_reshape_filters_other_translation_languages():
    tokens = [
        {"text": "hi", "language": "en", "translation_status": "translation"},
        {"text": "你好", "language": "zh", "translation_status": "translation"},
    ]
    assert reshape_transcript(tokens, target_language="zh")["targetText"] == "你好"


class _FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text
        self.content = b"x" if payload is not None else b""

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code}")

    def json(self):
        return self._payload


class _FakeSession:
    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def request(self, method, url, **kwargs):
        self.requests.append((method, url, kwargs))
        resp = self.responses.pop(0)
        if isinstance(resp, Exception):
            raise resp
        return resp


def test_rest_client_requires_key():
    with pytest.raises(ValueError):
        SonioxRestClient(api_key="")


def test_rest_client_create_transcription_body_and_auth():
    session = _FakeSession([_FakeResponse(payload={"id": "tr-1"})])
    client = SonioxRestClient(api_key="sk-1", language_hints=["ja"], target_language="zh", session=session)
    assert client.create_transcription("file-1") == "tr-1"
    method, url, kwargs = session.requests[0]
    assert method == "POST"
    assert url == "https://api.soniox.com/v1/transcriptions"
    assert kwargs["headers"]["Authorization"] == "Bearer sk-1"
    assert kwargs["json"]["file_id"] == "file-1"
    assert kwargs["json"]["translation"] == {"type": "one_way", "target_language": "zh"}


def test_rest_client_wraps_http_and_transport_errors():
    session = _FakeSession([_FakeResponse(status_code=500, text="boom"), requests.ConnectionError("down")])
    client = SonioxRestClient(api_key="sk-1", session=session)
    with pytest.raises(ProviderAPIError, match="500"):
        client.get_transcription("tr-1")
    with pytest.raises(ProviderAPIError, match="failed"):
        client.get_transcript("tr-1")
