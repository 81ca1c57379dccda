# coding=utf-8
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class FinalizeDecision:
    should_finalize: bool
    reason: str
    silence_ms: float
    segment_age_ms: float


class FinalizationPolicy:
    """
    Decide when a live session should ask the provider to finalize the
    current utterance. The decision is only a hint: the segment itself is
    closed when the provider answers with a boundary token.

    State is owned by the tick loop that calls ``evaluate``; audio arrival
    and segment opening times are passed in by the caller.
    """

    def __init__(
        self,
        silence_finalize_ms: float = 2000.0,
        max_segment_ms: float = 0.0,
        tick_ms: float = 500.0,
    ) -> None:
        self.silence_finalize_ms = max(50.0, float(silence_finalize_ms))
        self.max_segment_ms = max(0.0, float(max_segment_ms))
        self.tick_ms = max(10.0, float(tick_ms))
        self.last_fired_at: Optional[float] = None
        self.fired_count = 0

    @property
    def tick_sec(self) -> float:
        return self.tick_ms / 1000.0

    def evaluate(
        self,
        *,
        now: float,
        last_audio_at: float,
        segment_opened_at: Optional[float] = None,
    ) -> FinalizeDecision:
        # Times are monotonic seconds.
        silence_ref = float(last_audio_at)
        if self.last_fired_at is not None:
            silence_ref = max(silence_ref, self.last_fired_at)
        silence_ms = max(0.0, (float(now) - silence_ref) * 1000.0)

        age_ms = 0.0
        if segment_opened_at is not None:
            age_ref = float(segment_opened_at)
            if self.last_fired_at is not None:
                age_ref = max(age_ref, self.last_fired_at)
            age_ms = max(0.0, (float(now) - age_ref) * 1000.0)

        if silence_ms > self.silence_finalize_ms:
            return self._fire(now, "silence", silence_ms, age_ms)

        if self.max_segment_ms > 0 and segment_opened_at is not None and age_ms >= self.max_segment_ms:
            return self._fire(now, "max_segment", silence_ms, age_ms)

        return FinalizeDecision(
            should_finalize=False,
            reason="none",
            silence_ms=silence_ms,
            segment_age_ms=age_ms,
        )

    def _fire(self, now: float, reason: str, silence_ms: float, age_ms: float) -> FinalizeDecision:
        self.last_fired_at = float(now)
        self.fired_count += 1
        return FinalizeDecision(
            should_finalize=True,
            reason=reason,
            silence_ms=silence_ms,
            segment_age_ms=age_ms,
        )
