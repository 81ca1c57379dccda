# coding=utf-8
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from lecture_assist.streaming.aggregator import SOURCE_STATUSES, TRANSLATION_STATUS, Token

SPEAKER_BREAK = "\n\n"


class _Lane:
    def __init__(self) -> None:
        self.parts: List[str] = []
        self.speaker: Optional[str] = None
        self.language: Optional[str] = None

    def add(self, tk: Token) -> None:
        if tk.speaker is not None and tk.speaker != self.speaker:
            if self.parts:
                self.parts.append(SPEAKER_BREAK)
            self.parts.append(f"[Speaker {tk.speaker}] ")
            self.speaker = tk.speaker
            text = tk.text.lstrip()
        elif self.language is not None and tk.language and tk.language != self.language and self.parts:
            # language switch inside one speaker turn starts a new line
            self.parts.append("\n")
            text = tk.text.lstrip()
        else:
            text = tk.text
        if tk.language:
            self.language = tk.language
        self.parts.append(text)

    def text(self) -> str:
        return "".join(self.parts).strip()


def reshape_transcript(raw_tokens: Iterable[Dict[str, Any]], target_language: str = "") -> Dict[str, Any]:
    """
    Fold the flat async transcript into the dual-language text model.

    Original and untagged tokens go to ``sourceText``; translation tokens
    (in ``target_language`` when one is given) go to ``targetText``. A
    speaker change starts a new paragraph labelled with the speaker.
    """
    kept: List[Dict[str, Any]] = [tk for tk in raw_tokens if isinstance(tk, dict)]
    source = _Lane()
    target = _Lane()
    for raw in kept:
        tk = Token.from_dict(raw)
        if tk.is_boundary or not tk.text:
            continue
        if tk.translation_status == TRANSLATION_STATUS:
            if target_language and tk.language and tk.language != target_language:
                continue
            target.add(tk)
        elif tk.translation_status in SOURCE_STATUSES:
            source.add(tk)
    return {
        "sourceText": source.text(),
        "targetText": target.text(),
        "rawTokens": kept,
    }
