"""
Fan-out service wiring.

Builds the engine's components from settings and owns their lifecycle:
config provider, command builder, transcription runner, pipeline factories,
session registry, reconciler and clip extractor.
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from stream_fanout.artifacts import RecordingArtifact, list_recordings, resolve_recording
from stream_fanout.clips import ClipArtifact, ClipExtractor
from stream_fanout.command_builder import FFmpegCommandBuilder
from stream_fanout.config import FanoutSettings
from stream_fanout.config_provider import FileConfigProvider, Subscription
from stream_fanout.exceptions import (
    ClipValidationError,
    RecordingInProgressError,
    TranscriptNotFoundError,
)
from stream_fanout.factory import EgressPipelineFactory, RecordingPipelineFactory
from stream_fanout.reconciler import Reconciler
from stream_fanout.registry import SessionRegistry
from stream_fanout.stats import get_process_stats, get_system_stats
from stream_fanout.transcription import TranscriptionRunner, transcript_paths

logger = logging.getLogger(__name__)


class FanoutService:
    """The fan-out engine assembled from its components."""

    def __init__(
        self,
        settings: FanoutSettings,
        config_provider: Optional[FileConfigProvider] = None,
    ):
        """
        Initialize fan-out service.

        Args:
            settings: Fan-out settings
            config_provider: Configuration provider (file provider from settings if not provided)
        """
        self.settings = settings
        self.config_provider = config_provider or FileConfigProvider(
            settings.config_path, poll_interval=settings.config_poll_interval
        )

        self.command_builder = FFmpegCommandBuilder(settings)
        self.transcriber = TranscriptionRunner(settings, self.config_provider, self.command_builder)
        self.egress_factory = EgressPipelineFactory(settings, self.command_builder)
        self.recording_factory = RecordingPipelineFactory(
            settings, self.transcriber, self.command_builder
        )
        self.registry = SessionRegistry(
            settings, self.config_provider, self.egress_factory, self.recording_factory
        )
        self.reconciler = Reconciler(self.registry)
        self.clip_extractor = ClipExtractor(settings, self.command_builder)

        self._subscription: Optional[Subscription] = None
        self._watching = False

    @property
    def recording_dir(self) -> Path:
        return Path(self.config_provider.get_snapshot().recording.path).expanduser()

    async def start(self, watch: bool = True) -> None:
        """
        Load the configuration and start reacting to its changes.

        Args:
            watch: Poll the configuration file for modifications
        """
        self.config_provider.initialize()
        if self._subscription is None:
            self._subscription = self.reconciler.attach(self.config_provider)
        if watch:
            self.config_provider.start()
            self._watching = True
        logger.info("Fan-out service started")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop watching the configuration and tear down every session."""
        logger.info("Stopping fan-out service...")
        if self._watching:
            await self.config_provider.stop()
            self._watching = False
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

        if timeout is None:
            timeout = self.settings.stop_grace_period + 5.0
        await self.registry.shutdown(timeout)
        await self.transcriber.wait_all(timeout)
        logger.info("Fan-out service stopped")

    def list_streams(self, include_stats: bool = False) -> Dict:
        """Active sessions, optionally with per-process and host resource usage."""
        sessions = self.registry.list_active_sessions()
        result: Dict = {"sessions": sessions}

        if include_stats:
            pids = [pipeline["pid"] for session in sessions for pipeline in session["pipelines"]]
            process_stats = get_process_stats(pids)
            for session in sessions:
                for pipeline in session["pipelines"]:
                    pipeline["stats"] = process_stats.get(pipeline["pid"])
            result["system"] = get_system_stats()

        return result

    def describe_config(self) -> Dict:
        """Current configuration with stream keys reduced to whether one is set."""
        snapshot = self.config_provider.get_snapshot()
        return {
            "platforms": {
                name: {
                    "enabled": destination.enabled,
                    "rtmpUrl": destination.rtmp_url,
                    "hasKey": destination.has_credential,
                    "mode": destination.settings.mode,
                }
                for name, destination in snapshot.platforms.items()
            },
            "recording": snapshot.recording.model_dump(),
            "transcription": snapshot.transcription.model_dump(),
        }

    def list_recordings(self) -> List[RecordingArtifact]:
        return list_recordings(self.recording_dir)

    def read_transcription(self, filename: str) -> str:
        """
        Read the finished transcript of a recording.

        Raises:
            ValueError: Invalid file name
            RecordingNotFoundError: Recording does not exist
            TranscriptNotFoundError: No finished transcript yet
        """
        path = resolve_recording(self.recording_dir, filename)
        final_path, _ = transcript_paths(path)
        if not final_path.is_file():
            raise TranscriptNotFoundError(f"No transcription for {filename}")
        return final_path.read_text(encoding="utf-8", errors="replace")

    async def transcribe_recording(self, filename: str) -> bool:
        """
        Start transcription of an existing recording in the background.

        Returns:
            False if the recording is already being transcribed

        Raises:
            ValueError: Invalid file name
            RecordingNotFoundError: Recording does not exist
            RecordingInProgressError: An encoder is still writing the recording
        """
        path = resolve_recording(self.recording_dir, filename)
        self._ensure_finished(path)
        return self.transcriber.schedule(path) is not None

    async def extract_clip(self, filename: str, timestamp: str) -> ClipArtifact:
        """
        Cut a clip out of a finished recording.

        Raises:
            ClipValidationError: Invalid file name or timestamp
            RecordingNotFoundError: Recording does not exist
            RecordingInProgressError: An encoder is still writing the recording
            ClipExtractionError: The encoder failed
        """
        try:
            path = resolve_recording(self.recording_dir, filename)
        except ValueError as e:
            raise ClipValidationError(str(e)) from e
        self._ensure_finished(path)
        return await self.clip_extractor.extract(filename, timestamp, self.recording_dir)

    def _ensure_finished(self, path: Path) -> None:
        if self.recording_factory.is_recording(path):
            raise RecordingInProgressError(f"Recording still in progress: {path.name}")
