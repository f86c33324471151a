"""
Recording artifacts on disk.

Lists finished recordings and resolves client-supplied recording names to
paths inside the recording directory.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from stream_fanout.config import RECORDING_FORMATS
from stream_fanout.exceptions import RecordingNotFoundError
from stream_fanout.transcription import transcript_paths

logger = logging.getLogger(__name__)

# {key}_{YYYY-MM-DDTHH-MM-SS-mmmZ}.{ext}
_RECORDING_NAME = re.compile(
    r"^(?P<key>.+)_(?P<ts>\d{4}-\d{2}-\d{2}T\d{2}-\d{2}-\d{2}-\d{3}Z)$"
)


@dataclass(frozen=True)
class RecordingArtifact:
    """A recording file and the state of its transcript."""

    path: Path
    stream_key_origin: Optional[str]
    created_at: datetime
    size_bytes: int

    @property
    def filename(self) -> str:
        return self.path.name

    @property
    def has_transcript(self) -> bool:
        return transcript_paths(self.path)[0].exists()

    @property
    def is_being_transcribed(self) -> bool:
        return transcript_paths(self.path)[1].exists()

    def to_dict(self) -> Dict:
        return {
            "filename": self.filename,
            "stream_key": self.stream_key_origin,
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
            "has_transcript": self.has_transcript,
            "is_being_transcribed": self.is_being_transcribed,
        }


def parse_stream_key(filename: str) -> Optional[str]:
    """Recover the session key a recording was made from, if the name allows it."""
    match = _RECORDING_NAME.match(Path(filename).stem)
    return match.group("key") if match else None


def describe_recording(path: Path) -> RecordingArtifact:
    stat = path.stat()
    return RecordingArtifact(
        path=path,
        stream_key_origin=parse_stream_key(path.name),
        created_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
        size_bytes=stat.st_size,
    )


def list_recordings(directory: Union[str, Path]) -> List[RecordingArtifact]:
    """
    List recordings in a directory, newest first.

    Hidden files and non-recording extensions are skipped. A missing
    directory yields an empty list.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return []

    artifacts = []
    for path in directory.iterdir():
        if path.name.startswith(".") or not path.is_file():
            continue
        if path.suffix.lstrip(".").lower() not in RECORDING_FORMATS:
            continue
        try:
            artifacts.append(describe_recording(path))
        except OSError as e:
            # Removed between listing and stat
            logger.debug(f"Skipping {path}: {e}")

    artifacts.sort(key=lambda artifact: artifact.created_at, reverse=True)
    return artifacts


def resolve_recording(directory: Union[str, Path], filename: str) -> Path:
    """
    Resolve a recording name to a path inside the recording directory.

    Args:
        directory: Recording directory
        filename: Bare file name supplied by a client

    Returns:
        Absolute path of the recording

    Raises:
        ValueError: If the name is not a bare file name of a recording format
        RecordingNotFoundError: If the recording does not exist
    """
    if not filename or filename in (".", "..") or Path(filename).name != filename or "\\" in filename:
        raise ValueError(f"Invalid recording name: {filename!r}")

    base = Path(directory).resolve()
    path = (base / filename).resolve()
    if path.parent != base:
        raise ValueError(f"Invalid recording name: {filename!r}")
    if path.suffix.lstrip(".").lower() not in RECORDING_FORMATS:
        raise ValueError(
            f"Not a recording: {filename!r} (expected one of: {', '.join(RECORDING_FORMATS)})"
        )

    if not path.is_file():
        raise RecordingNotFoundError(f"Recording not found: {filename}")
    return path
