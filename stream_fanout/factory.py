"""
Pipeline factories.

EgressPipelineFactory starts relays to streaming platforms and the debug
loop-back; RecordingPipelineFactory starts local recordings and hands
finished recordings to transcription. Neither raises for a destination that
cannot run: they log and return None.
"""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Set, Union

from stream_fanout.command_builder import FFmpegCommandBuilder, redact_command
from stream_fanout.config import (
    RECORDING,
    DestinationConfig,
    FanoutSettings,
    RecordingConfig,
    TranscodeSettings,
)
from stream_fanout.pipeline import EgressPipeline, ExitCallback, PipelineExit, PipelineMode
from stream_fanout.transcription import TranscriptionRunner

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class EgressPipelineFactory:
    """Builds and starts one relay process per (destination, session)."""

    def __init__(
        self,
        settings: FanoutSettings,
        command_builder: Optional[FFmpegCommandBuilder] = None,
    ):
        """
        Initialize egress factory.

        Args:
            settings: Fan-out settings
            command_builder: Command builder (creates default if not provided)
        """
        self.settings = settings
        self.command_builder = command_builder or FFmpegCommandBuilder(settings)

    async def create(
        self,
        session_key: str,
        input_url: str,
        destination_id: str,
        destination: Optional[DestinationConfig],
        exit_callbacks: Iterable[ExitCallback] = (),
    ) -> Optional[EgressPipeline]:
        """
        Start an egress pipeline.

        Args:
            session_key: Ingest session key
            input_url: Local RTMP URL of the session
            destination_id: Platform name
            destination: Destination configuration
            exit_callbacks: Extra callbacks run when the process exits

        Returns:
            The running pipeline, or None if the destination is disabled,
            has no stream key, or the process could not be spawned
        """
        if destination is None or not destination.enabled:
            logger.debug(f"Skipping {destination_id} for session {session_key}: disabled")
            return None
        if not destination.has_credential:
            logger.info(f"Skipping {destination_id} for session {session_key}: no stream key")
            return None

        stream_key = destination.stream_key.get_secret_value()
        output_url = self.command_builder.resolve_output_url(destination_id, destination)
        settings = destination.settings
        mode = (
            PipelineMode.TRANSCODE
            if isinstance(settings, TranscodeSettings)
            else PipelineMode.PASSTHROUGH
        )

        try:
            cmd = self.command_builder.build_egress_command(input_url, output_url, settings)
            logger.debug(f"Command: {redact_command(cmd, [stream_key])}")

            return await EgressPipeline.spawn(
                cmd,
                destination_id=destination_id,
                session_key=session_key,
                output_target=output_url,
                mode=mode,
                transcode_params=settings if mode is PipelineMode.TRANSCODE else None,
                grace_period=self.settings.stop_grace_period,
                stderr_tail_lines=self.settings.stderr_tail_lines,
                redactions=[stream_key],
                exit_callbacks=exit_callbacks,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start {destination_id} for session {session_key}: {e}")
            return None


class RecordingPipelineFactory:
    """Starts local recordings and triggers transcription when they finish."""

    def __init__(
        self,
        settings: FanoutSettings,
        transcriber: TranscriptionRunner,
        command_builder: Optional[FFmpegCommandBuilder] = None,
    ):
        """
        Initialize recording factory.

        Args:
            settings: Fan-out settings
            transcriber: Transcription runner for finished recordings
            command_builder: Command builder (creates default if not provided)
        """
        self.settings = settings
        self.transcriber = transcriber
        self.command_builder = command_builder or FFmpegCommandBuilder(settings)

        # Files an encoder is still writing
        self._writing: Set[Path] = set()

    def is_recording(self, path: Union[str, Path]) -> bool:
        """Whether an encoder is still writing this file (stop requested or not)."""
        return Path(path).resolve() in self._writing

    @staticmethod
    def build_filename(
        session_key: str,
        container_format: str,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Build a recording filename: ``{key}_{YYYY-MM-DDTHH-MM-SS-mmmZ}.{format}``.

        Args:
            session_key: Ingest session key
            container_format: File extension
            now: Timestamp (defaults to current UTC time)

        Returns:
            Filename without directory
        """
        now = now or datetime.now(timezone.utc)
        timestamp = now.strftime("%Y-%m-%dT%H-%M-%S") + f"-{now.microsecond // 1000:03d}Z"
        safe_key = _UNSAFE_FILENAME_CHARS.sub("_", session_key) or "stream"
        return f"{safe_key}_{timestamp}.{container_format}"

    async def create(
        self,
        session_key: str,
        input_url: str,
        recording: RecordingConfig,
        exit_callbacks: Iterable[ExitCallback] = (),
    ) -> Optional[EgressPipeline]:
        """
        Start a recording pipeline.

        Args:
            session_key: Ingest session key
            input_url: Local RTMP URL of the session
            recording: Recording configuration
            exit_callbacks: Extra callbacks run when the process exits

        Returns:
            The running pipeline, or None if recording is disabled or could not start
        """
        if not recording.enabled:
            return None

        directory = Path(recording.path).expanduser()
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Cannot create recording directory {directory}: {e}")
            return None

        output_path = directory.resolve() / self.build_filename(session_key, recording.format)

        try:
            cmd = self.command_builder.build_recording_command(
                input_url, output_path, recording.format
            )
            logger.info(f"Recording session {session_key} to {output_path}")
            logger.debug(f"Command: {' '.join(cmd)}")

            pipeline = await EgressPipeline.spawn(
                cmd,
                destination_id=RECORDING,
                session_key=session_key,
                output_target=str(output_path),
                mode=PipelineMode.PASSTHROUGH,
                grace_period=self.settings.stop_grace_period,
                stderr_tail_lines=self.settings.stderr_tail_lines,
                exit_callbacks=[self._on_recording_exit, *exit_callbacks],
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start recording for session {session_key}: {e}")
            return None

        self._writing.add(output_path)
        return pipeline

    def _on_recording_exit(self, pipeline: EgressPipeline, exit_info: PipelineExit) -> None:
        """Hand a finished recording to transcription; never for a crashed or killed encoder."""
        self._writing.discard(Path(pipeline.output_target))

        if not exit_info.expected:
            logger.error(
                f"Recording {pipeline.output_target} ended with an encoder error "
                f"(exit code: {exit_info.returncode}), skipping transcription"
            )
            return
        if exit_info.killed:
            logger.error(
                f"Recording {pipeline.output_target} was killed before it finished writing, "
                f"skipping transcription"
            )
            return

        logger.info(f"Recording finished: {pipeline.output_target}")
        self.transcriber.schedule(pipeline.output_target)
