"""
Clip extraction from finished recordings.

A clip is a fixed window around a timestamp: it starts two minutes before
the requested time (never before zero) and lasts four minutes, truncated by
the end of the recording. Clips are stream copies written to a ``clips``
subdirectory; the same (recording, timestamp) always maps to the same file.
"""

import asyncio
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from stream_fanout.artifacts import resolve_recording
from stream_fanout.command_builder import FFmpegCommandBuilder
from stream_fanout.config import FanoutSettings
from stream_fanout.exceptions import ClipExtractionError, ClipValidationError

logger = logging.getLogger(__name__)

CLIP_LEAD_SECONDS = 120
CLIP_DURATION_SECONDS = 240
CLIPS_DIRNAME = "clips"

_TIMESTAMP = re.compile(r"^(\d{2}):([0-5]\d):([0-5]\d)$")


def parse_timestamp(timestamp: str) -> int:
    """
    Parse a strict ``HH:MM:SS`` timestamp into seconds.

    Raises:
        ClipValidationError: If the timestamp is malformed
    """
    match = _TIMESTAMP.match(timestamp or "")
    if not match:
        raise ClipValidationError(f"Invalid timestamp format, expected HH:MM:SS: {timestamp!r}")
    hours, minutes, seconds = (int(part) for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def clip_window(timestamp_seconds: int) -> Tuple[int, int]:
    """Return (start, duration) in seconds for a clip centred on a timestamp."""
    return max(0, timestamp_seconds - CLIP_LEAD_SECONDS), CLIP_DURATION_SECONDS


def clip_filename(source_name: str, timestamp: str) -> str:
    """``{stem}_clip_{HH-MM-SS}{ext}`` for a recording name and timestamp."""
    source = Path(source_name)
    return f"{source.stem}_clip_{timestamp.replace(':', '-')}{source.suffix}"


@dataclass(frozen=True)
class ClipArtifact:
    """A clip written to disk."""

    path: Path
    source: Path
    start_seconds: int
    duration_seconds: int

    @property
    def filename(self) -> str:
        return self.path.name

    def to_dict(self) -> Dict:
        return {
            "filename": self.filename,
            "source": self.source.name,
            "start_seconds": self.start_seconds,
            "duration_seconds": self.duration_seconds,
        }


class ClipExtractor:
    """Cuts clips out of recordings with a stream-copy ffmpeg run."""

    def __init__(
        self,
        settings: FanoutSettings,
        command_builder: Optional[FFmpegCommandBuilder] = None,
    ):
        self.settings = settings
        self.command_builder = command_builder or FFmpegCommandBuilder(settings)

    async def extract(
        self,
        filename: str,
        timestamp: str,
        recording_dir: Union[str, Path],
    ) -> ClipArtifact:
        """
        Extract a clip around a timestamp and wait for it to finish.

        The clip is written to a hidden temp file and renamed into place only
        after ffmpeg succeeds, so a failed run never leaves a clip behind.

        Args:
            filename: Recording file name (no directory components)
            timestamp: ``HH:MM:SS`` position in the recording
            recording_dir: Directory holding the recording

        Returns:
            The written clip

        Raises:
            ClipValidationError: Malformed timestamp or file name
            RecordingNotFoundError: Recording does not exist
            ClipExtractionError: ffmpeg failed or timed out
        """
        timestamp_seconds = parse_timestamp(timestamp)
        try:
            source = resolve_recording(recording_dir, filename)
        except ValueError as e:
            raise ClipValidationError(str(e)) from e

        start, duration = clip_window(timestamp_seconds)

        clips_dir = source.parent / CLIPS_DIRNAME
        try:
            clips_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ClipExtractionError(f"Cannot create clips directory {clips_dir}: {e}") from e

        output_path = clips_dir / clip_filename(source.name, timestamp)
        temp_path = clips_dir / f".{output_path.name}"

        cmd = self.command_builder.build_clip_command(source, temp_path, start, duration)
        logger.info(f"Extracting clip from {source.name} at {timestamp} (start: {start}s)")
        logger.debug(f"Command: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ClipExtractionError(f"Failed to start ffmpeg: {e}") from e

        try:
            _, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.settings.clip_timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            self._discard(temp_path)
            raise ClipExtractionError(
                f"Clip extraction timed out after {self.settings.clip_timeout}s"
            )

        if process.returncode != 0:
            error_output = (stderr or b"").decode("utf-8", errors="replace")
            self._discard(temp_path)
            logger.error(
                f"Clip extraction failed for {source.name} "
                f"(exit code {process.returncode}): {error_output[-500:]}"
            )
            raise ClipExtractionError(
                f"ffmpeg exited with code {process.returncode}",
                returncode=process.returncode,
                stderr=error_output,
            )

        try:
            os.replace(temp_path, output_path)
        except OSError as e:
            self._discard(temp_path)
            raise ClipExtractionError(f"Failed to publish clip {output_path.name}: {e}") from e

        logger.info(f"Clip created: {output_path}")
        return ClipArtifact(
            path=output_path,
            source=source,
            start_seconds=start,
            duration_seconds=duration,
        )

    @staticmethod
    def _discard(path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove partial clip {path}: {e}")
