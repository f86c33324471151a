"""
Stream Fan-out Engine

Relays one live RTMP ingest to many destinations (streaming platforms,
local recording, debug loop-back), keeps the running relays in step with a
live-reloadable configuration, and hands finished recordings to
transcription and on-demand clip extraction.

Version: 1.0.0
"""

__version__ = "1.0.0"

from stream_fanout.clips import ClipArtifact, ClipExtractor
from stream_fanout.command_builder import FFmpegCommandBuilder
from stream_fanout.config import ConfigSnapshot, DestinationConfig, FanoutSettings
from stream_fanout.config_provider import FileConfigProvider
from stream_fanout.factory import EgressPipelineFactory, RecordingPipelineFactory
from stream_fanout.pipeline import EgressPipeline, ExitKind, PipelineExit
from stream_fanout.reconciler import Reconciler, ReconciliationPlan, compute_plan
from stream_fanout.registry import SessionRegistry
from stream_fanout.service import FanoutService
from stream_fanout.transcription import TranscriptionRunner

__all__ = [
    "ClipArtifact",
    "ClipExtractor",
    "ConfigSnapshot",
    "DestinationConfig",
    "EgressPipeline",
    "EgressPipelineFactory",
    "ExitKind",
    "FFmpegCommandBuilder",
    "FanoutService",
    "FanoutSettings",
    "FileConfigProvider",
    "PipelineExit",
    "Reconciler",
    "ReconciliationPlan",
    "RecordingPipelineFactory",
    "SessionRegistry",
    "TranscriptionRunner",
    "compute_plan",
]
