# coding=utf-8
from __future__ import annotations

from typing import Iterable, List

from lecture_assist.streaming.aggregator import Segment

DEFAULT_CUE_MS = 2000


def format_srt_timestamp(ms: int) -> str:
    # SRT uses comma for ms separator
    ms = max(0, int(ms))
    h = ms // 3600000
    ms %= 3600000
    m = ms // 60000
    ms %= 60000
    s = ms // 1000
    ms = ms % 1000
    return f"{h:02d}:{m:02d}:{s:02d},{ms:03d}"


def render_srt(segments: Iterable[Segment]) -> str:
    """
    Render final segments as SRT cues numbered from 1. The cue body is the
    source line followed by the target line. A segment without an end
    time is shown for ``DEFAULT_CUE_MS``.
    """
    lines: List[str] = []
    idx = 1
    for seg in segments:
        if not seg.final:
            continue
        start_ms = int(seg.t0 or 0)
        end_ms = int(seg.t1 or (start_ms + DEFAULT_CUE_MS))
        lines.append(str(idx))
        lines.append(f"{format_srt_timestamp(start_ms)} --> {format_srt_timestamp(end_ms)}")
        lines.append(seg.source_text.strip())
        lines.append(seg.target_text.strip())
        lines.append("")
        idx += 1
    return "\n".join(lines)


def render_text(segments: Iterable[Segment]) -> str:
    blocks: List[str] = []
    for seg in segments:
        if not seg.final:
            continue
        rows = [x for x in (seg.source_text.strip(), seg.target_text.strip()) if x]
        if rows:
            blocks.append("\n".join(rows))
    return "\n\n".join(blocks) + ("\n" if blocks else "")
