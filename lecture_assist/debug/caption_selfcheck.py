from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

MAX_EXAMPLES = 8


def _lcp_len(a: str, b: str) -> int:
    n = min(len(a), len(b))
    i = 0
    while i < n and a[i] == b[i]:
        i += 1
    return i


def _opt_int(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


@dataclass
class CaptionSelfcheckResult:
    partial_count: int
    final_count: int
    error_count: int
    empty_finals: int
    max_source_chars: int
    max_target_chars: int
    timestamp_regressions: int
    segment_overlaps: int
    hard_rewrites: int
    examples: List[Dict[str, Any]]

    @property
    def clean(self) -> bool:
        return not (self.empty_finals or self.timestamp_regressions or self.segment_overlaps or self.hard_rewrites)


def analyze_caption_events(events: Iterable[Dict[str, Any]]) -> CaptionSelfcheckResult:
    """
    Check a recorded ``/ingest`` event stream for caption stability problems.

    Partials inside one segment should mostly grow: a partial whose source
    text shares little prefix with the previous one counts as a hard
    rewrite. Finals should carry text, keep ``t0 <= t1`` and never start
    before the previous final ended.
    """
    prev_source = ""
    prev_final_t1: Optional[int] = None
    partial_count = 0
    final_count = 0
    error_count = 0
    empty_finals = 0
    max_source = 0
    max_target = 0
    regressions = 0
    overlaps = 0
    rewrites = 0
    examples: List[Dict[str, Any]] = []

    def _example(entry: Dict[str, Any]) -> None:
        if len(examples) < MAX_EXAMPLES:
            examples.append(entry)

    for idx, msg in enumerate(events):
        msg_type = str(msg.get("type", "")).lower()
        if msg_type == "error":
            error_count += 1
            _example({"kind": "error", "index": idx, "error": str(msg.get("error", ""))[:160]})
            continue
        if msg_type not in {"partial", "final"}:
            continue

        source = str(msg.get("sourceText", "") or "")
        target = str(msg.get("targetText", "") or "")
        max_source = max(max_source, len(source))
        max_target = max(max_target, len(target))
        t0 = _opt_int(msg.get("t0"))
        t1 = _opt_int(msg.get("t1"))

        if msg_type == "partial":
            partial_count += 1
            if prev_source:
                lcp = _lcp_len(prev_source, source)
                threshold = max(4, int(len(prev_source) * 0.25))
                if len(prev_source) >= 20 and lcp < threshold:
                    rewrites += 1
                    _example(
                        {
                            "kind": "hard_rewrite",
                            "index": idx,
                            "lcp": lcp,
                            "prev_chars": len(prev_source),
                            "chars": len(source),
                            "text": source[:160],
                        }
                    )
            prev_source = source
            continue

        final_count += 1
        prev_source = ""
        if not source.strip() and not target.strip():
            empty_finals += 1
            _example({"kind": "empty_final", "index": idx, "id": msg.get("id")})
        # t1 == 0 means no final token carried an end timestamp.
        if t0 is not None and t1 and t1 < t0:
            regressions += 1
            _example({"kind": "timestamp_regression", "index": idx, "t0": t0, "t1": t1})
        if t0 is not None and prev_final_t1 is not None and t0 and t0 < prev_final_t1:
            overlaps += 1
            _example({"kind": "segment_overlap", "index": idx, "t0": t0, "prev_t1": prev_final_t1})
        if t1:
            prev_final_t1 = t1

    return CaptionSelfcheckResult(
        partial_count=partial_count,
        final_count=final_count,
        error_count=error_count,
        empty_finals=empty_finals,
        max_source_chars=max_source,
        max_target_chars=max_target,
        timestamp_regressions=regressions,
        segment_overlaps=overlaps,
        hard_rewrites=rewrites,
        examples=examples,
    )


def summarize_result(result: CaptionSelfcheckResult) -> str:
    lines = [
        f"partials={result.partial_count}",
        f"finals={result.final_count}",
        f"errors={result.error_count}",
        f"empty_finals={result.empty_finals}",
        f"max_source_chars={result.max_source_chars}",
        f"max_target_chars={result.max_target_chars}",
        f"timestamp_regressions={result.timestamp_regressions}",
        f"segment_overlaps={result.segment_overlaps}",
        f"hard_rewrites={result.hard_rewrites}",
    ]
    if result.examples:
        lines.append("examples:")
        for ex in result.examples:
            kind = ex.get("kind", "event")
            lines.append(f"  - {kind}: {ex}")
    return "\n".join(lines)
