# coding=utf-8
from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple

END_MARKER = "<end>"
FIN_MARKER = "<fin>"
BOUNDARY_MARKERS = frozenset({END_MARKER, FIN_MARKER})

SOURCE_STATUSES = frozenset({"original", "none"})
TRANSLATION_STATUS = "translation"


def _opt_int(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class Token:
    text: str
    is_final: bool = False
    language: str = ""
    translation_status: str = "none"
    start_ms: Optional[int] = None
    end_ms: Optional[int] = None
    speaker: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Token":
        speaker = raw.get("speaker")
        return cls(
            text=str(raw.get("text", "") or ""),
            is_final=bool(raw.get("is_final", False)),
            language=str(raw.get("language", "") or ""),
            translation_status=str(raw.get("translation_status", "none") or "none"),
            start_ms=_opt_int(raw.get("start_ms")),
            end_ms=_opt_int(raw.get("end_ms")),
            speaker=str(speaker) if speaker not in (None, "") else None,
        )

    @property
    def is_boundary(self) -> bool:
        return self.text in BOUNDARY_MARKERS


def has_boundary(tokens: Iterable[Token]) -> bool:
    return any(tk.is_boundary for tk in tokens)


@dataclass(frozen=True)
class PartialSnapshot:
    source_text: str
    target_text: str
    t0: int
    t1: int

    def to_message(self) -> Dict[str, Any]:
        return {
            "type": "partial",
            "sourceText": self.source_text,
            "targetText": self.target_text,
            "t0": self.t0,
            "t1": self.t1,
        }


@dataclass(frozen=True)
class Segment:
    id: str
    source_text: str
    target_text: str
    t0: int
    t1: int
    final: bool = True

    @property
    def is_empty(self) -> bool:
        return not self.source_text and not self.target_text

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sourceText": self.source_text,
            "targetText": self.target_text,
            "t0": self.t0,
            "t1": self.t1,
            "final": self.final,
        }

    def to_message(self) -> Dict[str, Any]:
        return {"type": "final", **self.to_record()}

    @classmethod
    def from_record(cls, raw: Dict[str, Any]) -> "Segment":
        return cls(
            id=str(raw.get("id", "") or ""),
            source_text=str(raw.get("sourceText", "") or ""),
            target_text=str(raw.get("targetText", "") or ""),
            t0=_opt_int(raw.get("t0")) or 0,
            t1=_opt_int(raw.get("t1")) or 0,
            final=bool(raw.get("final", False)),
        )


def _merge_batch(settled: str, pending: str, parts: List[str], settled_upto: int) -> Tuple[str, str]:
    batch_text = "".join(parts)
    # A batch that starts with the previous pending text re-sends it; anything else is new text.
    if pending and not batch_text.startswith(pending):
        settled += pending
    return settled + "".join(parts[:settled_upto]), "".join(parts[settled_upto:])


class TokenAggregator:
    """
    Dual-buffer caption state for one live session:
    - source buffer: spoken tokens in the source language
    - target buffer: one-way translation tokens in the target language

    Text is appended in arrival order. Each buffer keeps a settled part
    (text up to the last final token seen) and a pending part; a batch that
    re-sends the pending text as a growing prefix replaces it instead of
    duplicating it. Partial updates are only signalled when the recomputed
    buffers differ from the last emitted snapshot.
    """

    def __init__(self, source_language: str = "ja", target_language: str = "zh") -> None:
        self.source_language = str(source_language or "").strip()
        self.target_language = str(target_language or "").strip()
        self._source_settled = ""
        self._source_pending = ""
        self._target_settled = ""
        self._target_pending = ""
        self.segment_start_ms = 0
        self.last_finalized_end_ms = 0
        self._segment_start_set = False
        self._last_emitted: Tuple[str, str] = ("", "")

    @property
    def source_buffer(self) -> str:
        return self._source_settled + self._source_pending

    @property
    def target_buffer(self) -> str:
        return self._target_settled + self._target_pending

    @property
    def is_empty(self) -> bool:
        return not self.source_buffer and not self.target_buffer

    def _is_source(self, tk: Token) -> bool:
        return tk.translation_status in SOURCE_STATUSES and tk.language == self.source_language

    def _is_target(self, tk: Token) -> bool:
        return tk.translation_status == TRANSLATION_STATUS and tk.language == self.target_language

    def apply_tokens(self, tokens: Iterable[Token]) -> bool:
        source_parts: List[str] = []
        target_parts: List[str] = []
        source_settled_upto = 0
        target_settled_upto = 0
        for tk in tokens:
            if tk.is_boundary:
                continue
            if self._is_source(tk):
                source_parts.append(tk.text)
                if not self._segment_start_set and tk.start_ms is not None:
                    self.segment_start_ms = tk.start_ms
                    self._segment_start_set = True
                if tk.is_final:
                    source_settled_upto = len(source_parts)
                    if tk.end_ms is not None:
                        self.last_finalized_end_ms = tk.end_ms
            elif self._is_target(tk):
                target_parts.append(tk.text)
                if tk.is_final:
                    target_settled_upto = len(target_parts)

        # A batch without any token for a buffer leaves its pending text alone.
        if source_parts:
            self._source_settled, self._source_pending = _merge_batch(
                self._source_settled, self._source_pending, source_parts, source_settled_upto
            )
        if target_parts:
            self._target_settled, self._target_pending = _merge_batch(
                self._target_settled, self._target_pending, target_parts, target_settled_upto
            )

        candidate = (self.source_buffer, self.target_buffer)
        if candidate == self._last_emitted:
            return False
        self._last_emitted = candidate
        return True

    def get_partial(self) -> PartialSnapshot:
        return PartialSnapshot(
            source_text=self.source_buffer,
            target_text=self.target_buffer,
            t0=self.segment_start_ms,
            t1=self.last_finalized_end_ms,
        )

    def finalize_segment(self) -> Segment:
        snap = self.get_partial()
        seg = Segment(
            id=str(uuid.uuid4()),
            source_text=snap.source_text,
            target_text=snap.target_text,
            t0=snap.t0,
            t1=snap.t1,
        )
        self.reset()
        return seg

    def reset(self) -> None:
        self._source_settled = ""
        self._source_pending = ""
        self._target_settled = ""
        self._target_pending = ""
        self.segment_start_ms = 0
        self.last_finalized_end_ms = 0
        self._segment_start_set = False
        self._last_emitted = ("", "")

    def snapshot(self) -> Dict[str, object]:
        return {
            "source_chars": len(self.source_buffer),
            "target_chars": len(self.target_buffer),
            "source_pending_chars": len(self._source_pending),
            "target_pending_chars": len(self._target_pending),
            "t0": self.segment_start_ms,
            "t1": self.last_finalized_end_ms,
        }
