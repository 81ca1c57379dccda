#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Dict, List, Tuple


def _parse_transcript_rows(path: Path) -> Tuple[List[Dict[str, Any]], int]:
    rows: List[Dict[str, Any]] = []
    corrupt = 0
    with path.open("r", encoding="utf-8", errors="replace") as f:
        for line in f:
            text = line.strip()
            if not text:
                continue
            try:
                row = json.loads(text)
            except ValueError:
                corrupt += 1
                continue
            if not isinstance(row, dict):
                corrupt += 1
                continue
            rows.append(row)
    return rows, corrupt


def _fmt_ms(ms: int) -> str:
    sec, milli = divmod(max(0, int(ms)), 1000)
    minutes, sec = divmod(sec, 60)
    return f"{minutes:02d}:{sec:02d}.{milli:03d}"


def _summarize(rows: List[Dict[str, Any]], corrupt: int = 0, tail: int = 5) -> str:
    finals = [r for r in rows if bool(r.get("final", False))]
    source_chars = sum(len(str(r.get("sourceText", "") or "")) for r in finals)
    target_chars = sum(len(str(r.get("targetText", "") or "")) for r in finals)
    untranslated = sum(1 for r in finals if r.get("sourceText") and not r.get("targetText"))
    spans = [int(r.get("t1", 0) or 0) for r in finals]
    lines: List[str] = [
        f"segments={len(finals)} non_final={len(rows) - len(finals)} corrupt_lines={corrupt}",
        f"source_chars={source_chars} target_chars={target_chars} untranslated={untranslated}",
        f"last_t1={_fmt_ms(max(spans) if spans else 0)}",
    ]
    for row in finals[-max(0, tail):] if tail > 0 else []:
        lines.append(
            "  - "
            f"[{_fmt_ms(int(row.get('t0', 0) or 0))} -> {_fmt_ms(int(row.get('t1', 0) or 0))}] "
            f"id={str(row.get('id', ''))[:8]} "
            f"src={str(row.get('sourceText', '') or '')[:60]!r} "
            f"tgt={str(row.get('targetText', '') or '')[:60]!r}"
        )
    return "\n".join(lines)


def parse_args() -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Summarize a run's transcript.jsonl.")
    p.add_argument("--transcript", required=True, help="Path to <run_dir>/transcript.jsonl")
    p.add_argument("--tail", type=int, default=5, help="Show the last N segments")
    return p.parse_args()


def main() -> None:
    args = parse_args()
    rows, corrupt = _parse_transcript_rows(Path(args.transcript).expanduser())
    print(_summarize(rows, corrupt=corrupt, tail=int(args.tail)))


if __name__ == "__main__":
    main()
