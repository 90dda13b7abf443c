"""Transcription provider modules."""

from ramble_pipeline.asr.registry import get_transcription_engine

__all__ = ["get_transcription_engine"]
