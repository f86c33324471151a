"""
FFmpeg command builder.

Constructs the argument vectors for every child process the engine spawns:
egress relays (passthrough or transcode), local recordings, clip extraction
and the transcription tool.
"""

import logging
from pathlib import Path
from typing import Iterable, List, Union

from stream_fanout.config import (
    DEBUG_LOOPBACK,
    TEST_MODE_SUFFIXES,
    DestinationConfig,
    EgressSettings,
    FanoutSettings,
    TranscodeSettings,
)

logger = logging.getLogger(__name__)

# ffmpeg muxer names per recording container
CONTAINER_MUXERS = {
    "mp4": "mp4",
    "mkv": "matroska",
    "flv": "flv",
}


def redact_command(cmd: Iterable[str], secrets: Iterable[str]) -> str:
    """
    Render a command for logging with every secret replaced by ``***``.

    Args:
        cmd: Command arguments
        secrets: Strings that must never be logged (stream keys)

    Returns:
        Space-separated, redacted command string
    """
    rendered = " ".join(cmd)
    for secret in secrets:
        if secret:
            rendered = rendered.replace(secret, "***")
    return rendered


class FFmpegCommandBuilder:
    """
    Builds child-process commands for the fan-out engine.

    Egress output is always FLV over RTMP; recordings and clips are
    stream copies so they never cost an encode.
    """

    def __init__(self, settings: FanoutSettings):
        """
        Initialize command builder.

        Args:
            settings: Fan-out settings
        """
        self.settings = settings

    def resolve_output_url(self, destination_id: str, destination: DestinationConfig) -> str:
        """
        Resolve where an egress pipeline publishes to.

        The debug loop-back publishes back into the local media server under
        its own key so it can be played out over HTTP.

        Args:
            destination_id: Platform name or reserved destination id
            destination: Destination configuration

        Returns:
            Output RTMP URL (contains the stream key)
        """
        key = destination.stream_key.get_secret_value()

        if destination_id == DEBUG_LOOPBACK:
            return self.settings.ingest_url(f"/{self.settings.ingest_app}/{key}")

        url = f"{destination.rtmp_url.rstrip('/')}/{key}"
        if destination.test_mode and destination_id in TEST_MODE_SUFFIXES:
            url += TEST_MODE_SUFFIXES[destination_id]
        return url

    def build_egress_command(
        self,
        input_url: str,
        output_url: str,
        settings: EgressSettings,
    ) -> List[str]:
        """
        Build an egress relay command.

        Args:
            input_url: Local RTMP URL of the ingest session
            output_url: Destination RTMP URL
            settings: Passthrough or transcode settings

        Returns:
            List of command arguments for subprocess

        Raises:
            ValueError: If input_url or output_url is empty
        """
        if not input_url or not output_url:
            raise ValueError("input_url and output_url cannot be empty")

        cmd = [self.settings.ffmpeg_binary]
        cmd.extend(self._build_global_options())

        # Input (live ingest)
        cmd.extend(["-re", "-i", input_url])

        if isinstance(settings, TranscodeSettings):
            cmd.extend(self._build_video_encoding(settings))
            cmd.extend(self._build_audio_encoding(settings))
        else:
            cmd.extend(["-c:v", "copy", "-c:a", "copy"])

        cmd.extend(self._build_output_options(output_url))
        return cmd

    def build_recording_command(
        self,
        input_url: str,
        output_path: Union[str, Path],
        container_format: str,
    ) -> List[str]:
        """
        Build a recording command (stream copy into a local file).

        Args:
            input_url: Local RTMP URL of the ingest session
            output_path: Recording file path
            container_format: mp4, mkv or flv

        Returns:
            List of command arguments for subprocess

        Raises:
            ValueError: If the container format is not supported
        """
        if container_format not in CONTAINER_MUXERS:
            raise ValueError(f"Unsupported container format: {container_format}")

        cmd = [self.settings.ffmpeg_binary]
        cmd.extend(self._build_global_options())
        cmd.extend(["-i", input_url, "-c", "copy"])

        if container_format == "mp4":
            cmd.extend(["-movflags", "+faststart"])

        cmd.extend(["-f", CONTAINER_MUXERS[container_format], str(output_path)])
        return cmd

    def build_clip_command(
        self,
        source_path: Union[str, Path],
        output_path: Union[str, Path],
        start_seconds: int,
        duration_seconds: int,
    ) -> List[str]:
        """
        Build a clip extraction command.

        ``-ss`` goes before ``-i`` for fast input seeking; with stream copy
        the clip starts on the keyframe at or before the requested offset.

        Args:
            source_path: Recording to cut from
            output_path: Clip file to write (muxer inferred from its extension)
            start_seconds: Start offset in seconds
            duration_seconds: Maximum clip duration in seconds

        Returns:
            List of command arguments for subprocess
        """
        cmd = [self.settings.ffmpeg_binary]
        cmd.extend(self._build_global_options())
        cmd.extend([
            "-y",
            "-ss", str(start_seconds),
            "-i", str(source_path),
            "-t", str(duration_seconds),
            "-c", "copy",
            str(output_path),
        ])
        return cmd

    def build_transcribe_command(
        self,
        media_path: Union[str, Path],
        output_path: Union[str, Path],
        model: str,
        language: str = "en",
    ) -> List[str]:
        """
        Build the transcription tool command.

        Args:
            media_path: Recording to transcribe
            output_path: Text file the tool writes to
            model: Transcription model/quality
            language: Spoken language

        Returns:
            List of command arguments for subprocess
        """
        return [
            self.settings.transcriber_binary,
            "--model", model,
            "--language", language,
            "-t", str(media_path),
            str(output_path),
        ]

    def _build_global_options(self) -> List[str]:
        """Build global FFmpeg options."""
        return [
            "-hide_banner",
            "-nostats",
            "-loglevel",
            self.settings.ffmpeg_log_level,
        ]

    def _build_video_encoding(self, settings: TranscodeSettings) -> List[str]:
        """Build video encoding options."""
        return [
            "-c:v", settings.video_codec,
            "-preset", settings.preset,
            "-b:v", settings.video_bitrate,
            "-maxrate", settings.effective_maxrate,
            "-bufsize", settings.effective_bufsize,
            "-g", str(settings.gop),
            "-keyint_min", str(settings.gop),
            "-r", str(settings.fps),
            "-pix_fmt", "yuv420p",
        ]

    def _build_audio_encoding(self, settings: TranscodeSettings) -> List[str]:
        """Build audio encoding options."""
        return [
            "-c:a", settings.audio_codec,
            "-b:a", settings.audio_bitrate,
            "-ar", "44100",
            "-ac", "2",
        ]

    def _build_output_options(self, output_url: str) -> List[str]:
        """Build output format options."""
        return [
            "-f", "flv",
            "-flvflags", "no_duration_filesize",
            output_url,
        ]
