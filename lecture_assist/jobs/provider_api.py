# coding=utf-8
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import requests

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "https://api.soniox.com"


class ProviderAPIError(RuntimeError):
    pass


class SonioxRestClient:
    """Client for the provider's asynchronous file transcription API."""

    def __init__(
        self,
        api_key: str,
        base_url: str = DEFAULT_API_BASE_URL,
        model: str = "stt-async-preview",
        language_hints: Iterable[str] = ("ja",),
        translate: bool = True,
        target_language: str = "zh",
        timeout: float = 60.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not api_key:
            raise ValueError("provider API key is required for async transcription")
        self.api_key = api_key
        self.base_url = str(base_url or DEFAULT_API_BASE_URL).rstrip("/")
        self.model = model or "stt-async-preview"
        self.language_hints = [str(x) for x in language_hints if str(x).strip()]
        self.translate = bool(translate)
        self.target_language = str(target_language or "")
        self.timeout = timeout
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/v1/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        try:
            resp = self.session.request(method, self._url(path), headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.error("provider.api.transport_failed method=%s path=%s err=%s", method, path, exc)
            raise ProviderAPIError(f"{method} {path} failed: {exc}") from exc
        try:
            resp.raise_for_status()
        except requests.HTTPError as exc:
            logger.error(
                "provider.api.http_failed method=%s path=%s status=%s body=%s",
                method,
                path,
                resp.status_code,
                resp.text[:500],
            )
            raise ProviderAPIError(f"{method} {path} returned {resp.status_code}") from exc
        if resp.status_code == 204 or not resp.content:
            return {}
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderAPIError(f"{method} {path} returned invalid json") from exc
        return data if isinstance(data, dict) else {"data": data}

    def upload_file(self, file_path: str) -> str:
        path = Path(file_path)
        with path.open("rb") as f:
            data = self._request("POST", "files", files={"file": (path.name, f)})
        file_id = data.get("id")
        if not file_id:
            raise ProviderAPIError("file upload response has no id")
        logger.info("provider.api.file_uploaded name=%s file_id=%s", path.name, file_id)
        return str(file_id)

    def create_transcription(self, file_id: str) -> str:
        body: Dict[str, Any] = {
            "model": self.model,
            "file_id": file_id,
            "language_hints": self.language_hints,
        }
        if self.translate and self.target_language:
            body["translation"] = {"type": "one_way", "target_language": self.target_language}
        data = self._request("POST", "transcriptions", json=body)
        transcription_id = data.get("id")
        if not transcription_id:
            raise ProviderAPIError("transcription response has no id")
        return str(transcription_id)

    def get_transcription(self, transcription_id: str) -> Dict[str, Any]:
        return self._request("GET", f"transcriptions/{transcription_id}")

    def get_transcript(self, transcription_id: str) -> Dict[str, Any]:
        return self._request("GET", f"transcriptions/{transcription_id}/transcript")

    def delete_file(self, file_id: str) -> None:
        self._request("DELETE", f"files/{file_id}")
