# coding=utf-8
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union

from lecture_assist.streaming.aggregator import Segment

logger = logging.getLogger(__name__)


@dataclass
class PersistenceStats:
    segments_appended: int = 0
    segment_append_failures: int = 0
    audio_chunks_written: int = 0
    audio_write_failures: int = 0
    corrupt_transcript_lines: int = 0

    def snapshot(self) -> Dict[str, int]:
        return {
            "segments_appended": self.segments_appended,
            "segment_append_failures": self.segment_append_failures,
            "audio_chunks_written": self.audio_chunks_written,
            "audio_write_failures": self.audio_write_failures,
            "corrupt_transcript_lines": self.corrupt_transcript_lines,
        }


class TranscriptSink:
    """
    Append-only JSONL log of finalized segments, shared by every session of
    one run. Each segment is written as one complete line under a lock.
    """

    def __init__(self, path: Union[str, Path], stats: Optional[PersistenceStats] = None) -> None:
        self.path = Path(path)
        self.stats = stats if stats is not None else PersistenceStats()
        self._lock = threading.Lock()

    def append(self, segment: Segment) -> bool:
        line = json.dumps(segment.to_record(), ensure_ascii=False) + "\n"
        try:
            with self._lock:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as f:
                    f.write(line)
                    f.flush()
        except OSError as exc:
            self.stats.segment_append_failures += 1
            logger.warning("transcript append failed path=%s id=%s err=%s", self.path, segment.id, exc)
            return False
        self.stats.segments_appended += 1
        return True

    def read_segments(self, final_only: bool = True) -> List[Segment]:
        if not self.path.exists():
            return []
        segments: List[Segment] = []
        with self._lock:
            with self.path.open("r", encoding="utf-8", errors="replace") as f:
                lines = f.readlines()
        for line in lines:
            text = line.strip()
            if not text:
                continue
            try:
                raw = json.loads(text)
            except ValueError:
                self.stats.corrupt_transcript_lines += 1
                continue
            if not isinstance(raw, dict):
                self.stats.corrupt_transcript_lines += 1
                continue
            seg = Segment.from_record(raw)
            if final_only and not seg.final:
                continue
            segments.append(seg)
        return segments
