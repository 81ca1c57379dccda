# coding=utf-8
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunPaths:
    root: Path
    transcript: Path
    audio_dir: Path
    uploads_dir: Path
    export_dir: Path


def _safe_name(text: str) -> str:
    cleaned = "".join(ch if (ch.isalnum() or ch in "-_") else "-" for ch in str(text or "").strip())
    return cleaned.strip("-") or "course-default"


def create_run_dir(root_dir: str, course_name: str = "course-default", now: Optional[float] = None) -> RunPaths:
    """
    Create ``<root>/<YYYYMMDD>_<course>_<epoch_ms>/`` with its audio, uploads
    and export subdirectories. The transcript log itself is created lazily on
    the first append.
    """
    ts = time.time() if now is None else float(now)
    day = datetime.fromtimestamp(ts).strftime("%Y%m%d")
    run_root = Path(root_dir).expanduser() / f"{day}_{_safe_name(course_name)}_{int(ts * 1000)}"
    paths = RunPaths(
        root=run_root,
        transcript=run_root / "transcript.jsonl",
        audio_dir=run_root / "audio",
        uploads_dir=run_root / "uploads",
        export_dir=run_root / "export",
    )
    for d in (paths.audio_dir, paths.uploads_dir, paths.export_dir):
        d.mkdir(parents=True, exist_ok=True)
    logger.info("storage run_dir=%s", paths.root.resolve())
    return paths
