# coding=utf-8

from .audio_store import AudioChunkStore
from .run_dir import RunPaths, create_run_dir
from .transcript_sink import PersistenceStats, TranscriptSink

__all__ = [
    "AudioChunkStore",
    "PersistenceStats",
    "RunPaths",
    "TranscriptSink",
    "create_run_dir",
]
