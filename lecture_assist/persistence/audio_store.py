# coding=utf-8
from __future__ import annotations

import asyncio
import itertools
import logging
import time
from pathlib import Path
from typing import Optional, Set, Union

from .transcript_sink import PersistenceStats

logger = logging.getLogger(__name__)


class AudioChunkStore:
    """
    Best-effort raw capture of client audio chunks, one file per chunk.

    Writes run off the event loop and never raise into the caller; failures
    only show up in ``stats.audio_write_failures`` and the log.
    """

    def __init__(
        self,
        audio_dir: Union[str, Path],
        stats: Optional[PersistenceStats] = None,
        suffix: str = ".webm",
    ) -> None:
        self.audio_dir = Path(audio_dir)
        self.stats = stats if stats is not None else PersistenceStats()
        self.suffix = suffix
        self._seq = itertools.count(1)
        self._pending: Set[asyncio.Task] = set()

    def chunk_path(self, client_id: str) -> Path:
        return self.audio_dir / f"{int(time.time() * 1000)}_{next(self._seq):06d}_{client_id}{self.suffix}"

    def write_sync(self, path: Path, data: bytes) -> bool:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # "xb" refuses to overwrite an existing capture
            with path.open("xb") as f:
                f.write(data)
        except OSError as exc:
            self.stats.audio_write_failures += 1
            logger.warning("audio chunk write failed path=%s err=%s", path, exc)
            return False
        self.stats.audio_chunks_written += 1
        return True

    def submit(self, client_id: str, data: bytes) -> asyncio.Task:
        path = self.chunk_path(client_id)
        task = asyncio.create_task(asyncio.to_thread(self.write_sync, path, bytes(data)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
