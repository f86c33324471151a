"""
Fan-out configuration.

Two layers:
- FanoutSettings: process-level settings from environment variables
  (binaries, local RTMP endpoint, polling and shutdown timings).
- ConfigSnapshot: the live-reloadable stream configuration (platforms,
  recording, transcription). Snapshots are frozen; every reload produces a
  new object and the reconciler diffs two of them.
"""

import re
from typing import Any, Dict, Literal, Optional, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

# Reserved destination ids
RECORDING = "recording"
DEBUG_LOOPBACK = "browser_debug"

# Destinations that accept the bandwidth-test query suffix
TEST_MODE_SUFFIXES: Dict[str, str] = {
    "twitch": "?bandwidthtest=true",
}

RECORDING_FORMATS = ("mp4", "mkv", "flv")

_BITRATE_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)([kKmM]?)$")
_BITRATE_MULTIPLIERS = {"": 1, "k": 1_000, "m": 1_000_000}


def parse_bitrate(value: Union[str, int]) -> int:
    """
    Parse an ffmpeg-style bitrate (``4500k``, ``6M``, ``128000``) into bits per second.

    Raises:
        ValueError: If the value is not a positive bitrate
    """
    match = _BITRATE_PATTERN.match(str(value).strip())
    if not match:
        raise ValueError(f"Invalid bitrate '{value}' (expected e.g. 4500k, 6M or 128000)")
    bits = round(float(match.group(1)) * _BITRATE_MULTIPLIERS[match.group(2).lower()])
    if bits <= 0:
        raise ValueError(f"Bitrate must be positive, got '{value}'")
    return bits


def format_bitrate(bits: int) -> str:
    """Render bits per second the way ffmpeg reads it, in k when exact."""
    if bits % 1_000 == 0:
        return f"{bits // 1_000}k"
    return str(bits)


class PassthroughSettings(BaseModel):
    """Relay the ingest as-is (stream copy)."""

    model_config = ConfigDict(frozen=True)

    mode: Literal["passthrough"] = "passthrough"


class TranscodeSettings(BaseModel):
    """Re-encode before relaying."""

    model_config = ConfigDict(frozen=True)

    mode: Literal["transcode"] = "transcode"
    video_codec: str = "libx264"
    video_bitrate: str = "4500k"
    maxrate: Optional[str] = None  # defaults to video_bitrate
    bufsize: Optional[str] = None  # defaults to 2x video_bitrate
    preset: str = "veryfast"
    gop: int = Field(default=60, ge=1)
    fps: int = Field(default=30, ge=1, le=120)
    audio_codec: str = "aac"
    audio_bitrate: str = "160k"

    @field_validator("video_bitrate", "audio_bitrate", "maxrate", "bufsize", mode="before")
    @classmethod
    def _normalize_bitrate(cls, value: Any) -> Any:
        if value is None:
            return None
        return format_bitrate(parse_bitrate(value))

    @property
    def effective_maxrate(self) -> str:
        return self.maxrate or self.video_bitrate

    @property
    def effective_bufsize(self) -> str:
        if self.bufsize:
            return self.bufsize
        return format_bitrate(parse_bitrate(self.video_bitrate) * 2)


EgressSettings = Union[PassthroughSettings, TranscodeSettings]


class DestinationConfig(BaseModel):
    """Configuration for one egress destination (a streaming platform or the debug loop-back)."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    enabled: bool = False
    rtmp_url: str = Field(default="", validation_alias=AliasChoices("rtmp_url", "rtmpUrl"))
    stream_key: SecretStr = Field(
        default=SecretStr(""), validation_alias=AliasChoices("stream_key", "streamKey")
    )
    settings: EgressSettings = Field(default_factory=PassthroughSettings, discriminator="mode")
    test_mode: bool = Field(default=False, validation_alias=AliasChoices("test_mode", "testMode"))

    @model_validator(mode="before")
    @classmethod
    def _normalize_settings(cls, data: Any) -> Any:
        """Accept the free-form settings bag (``{"transcode": true, "bitrate": ...}``)."""
        if not isinstance(data, dict):
            return data
        raw = data.get("settings")
        if raw is None:
            return {**data, "settings": {"mode": "passthrough"}}
        if isinstance(raw, dict) and "mode" not in raw:
            params = dict(raw)
            transcode = bool(params.pop("transcode", False))
            if not transcode:
                return {**data, "settings": {"mode": "passthrough"}}
            # Short keys used by the dashboard
            for short, full in (("bitrate", "video_bitrate"), ("audioBitrate", "audio_bitrate")):
                if short in params and full not in params:
                    params[full] = params.pop(short)
            return {**data, "settings": {"mode": "transcode", **params}}
        return data

    @property
    def has_credential(self) -> bool:
        return bool(self.stream_key.get_secret_value())

    @property
    def is_active(self) -> bool:
        return self.enabled and self.has_credential


class RecordingConfig(BaseModel):
    """Local recording of every ingest session."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    enabled: bool = False
    path: str = Field(default="recordings", validation_alias=AliasChoices("path", "directory"))
    format: Literal["mp4", "mkv", "flv"] = "mp4"

    @property
    def is_active(self) -> bool:
        return self.enabled


class TranscriptionConfig(BaseModel):
    """Settings for the external transcription tool."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    model: str = "base"
    language: str = "en"


def _default_platforms() -> Dict[str, DestinationConfig]:
    return {
        "twitch": DestinationConfig(rtmp_url="rtmp://live.twitch.tv/live"),
        "youtube": DestinationConfig(rtmp_url="rtmp://a.rtmp.youtube.com/live2"),
        "kick": DestinationConfig(
            rtmp_url="rtmps://fa723fc1b171.global-contribute.live-video.net/live"
        ),
    }


class ConfigSnapshot(BaseModel):
    """Immutable view of the stream configuration at one point in time."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    platforms: Dict[str, DestinationConfig] = Field(default_factory=_default_platforms)
    recording: RecordingConfig = Field(default_factory=RecordingConfig)
    transcription: TranscriptionConfig = Field(default_factory=TranscriptionConfig)

    @model_validator(mode="before")
    @classmethod
    def _lift_recording(cls, data: Any) -> Any:
        """Allow ``recording`` to be declared under ``platforms`` as well."""
        if not isinstance(data, dict):
            return data
        platforms = data.get("platforms")
        if isinstance(platforms, dict) and RECORDING in platforms:
            platforms = dict(platforms)
            recording = platforms.pop(RECORDING)
            data = {**data, "platforms": platforms}
            data.setdefault(RECORDING, recording)
        return data

    def destination(self, destination_id: str) -> Optional[DestinationConfig]:
        return self.platforms.get(destination_id)

    def active_destinations(self) -> Dict[str, DestinationConfig]:
        """Platform destinations that are enabled and keyed."""
        return {name: cfg for name, cfg in self.platforms.items() if cfg.is_active}

    @property
    def debug_loopback_key(self) -> Optional[str]:
        debug = self.platforms.get(DEBUG_LOOPBACK)
        if debug is None or not debug.has_credential:
            return None
        return debug.stream_key.get_secret_value()


class FanoutSettings(BaseSettings):
    """Process-level settings from environment variables."""

    # Binaries
    ffmpeg_binary: str = Field(default="ffmpeg", description="Path to FFmpeg binary")
    ffmpeg_log_level: str = Field(
        default="warning",
        description="FFmpeg log level (quiet, panic, fatal, error, warning, info, verbose, debug)",
    )
    transcriber_binary: str = Field(default="quill", description="Transcription CLI")

    # Stream configuration file
    config_path: str = Field(default="config.yaml", description="YAML stream configuration")
    config_poll_interval: float = Field(
        default=2.0,
        description="Seconds between config file modification checks",
        ge=0.1,
        le=300.0,
    )

    # Local RTMP endpoint of the media server
    rtmp_host: str = Field(default="localhost")
    rtmp_port: int = Field(default=1935, ge=1, le=65535)
    ingest_app: str = Field(default="live", description="RTMP application for ingest")

    # Process management
    stop_grace_period: float = Field(
        default=10.0,
        description="Seconds after SIGINT before a child is killed",
        ge=0.0,
        le=300.0,
    )
    stderr_tail_lines: int = Field(default=20, ge=1, le=1000)
    clip_timeout: float = Field(
        default=120.0,
        description="Maximum seconds a clip extraction may run",
        ge=1.0,
        le=3600.0,
    )

    # HTTP gateway
    api_host: str = Field(default="0.0.0.0")
    api_port: int = Field(default=8000, ge=1, le=65535)

    model_config = SettingsConfigDict(
        env_prefix="FANOUT_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def ingest_url(self, path: str) -> str:
        """Local RTMP URL for an ingest path such as ``/live/abc``."""
        if not path.startswith("/"):
            path = f"/{path}"
        return f"rtmp://{self.rtmp_host}:{self.rtmp_port}{path}"


def get_settings() -> FanoutSettings:
    """
    Get fan-out settings from environment variables.

    Returns:
        FanoutSettings: Settings instance
    """
    return FanoutSettings()
