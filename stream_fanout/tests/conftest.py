"""
Pytest configuration and fixtures for fan-out engine tests.

Child processes are replaced by FakeProcess objects; no real ffmpeg or
transcription tool is spawned.
"""

import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import patch

import pytest

from stream_fanout.command_builder import FFmpegCommandBuilder
from stream_fanout.config import FanoutSettings
from stream_fanout.factory import EgressPipelineFactory, RecordingPipelineFactory
from stream_fanout.registry import SessionRegistry
from stream_fanout.tests.fakes import ProcessSpawner, StaticConfigProvider
from stream_fanout.transcription import TranscriptionRunner


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_settings(temp_dir: Path) -> FanoutSettings:
    """Create test settings."""
    return FanoutSettings(
        _env_file=None,
        ffmpeg_binary="ffmpeg",
        ffmpeg_log_level="error",
        transcriber_binary="quill",
        config_path=str(temp_dir / "config.yaml"),
        rtmp_host="localhost",
        rtmp_port=1935,
        ingest_app="live",
        stop_grace_period=5.0,
        stderr_tail_lines=5,
        clip_timeout=30.0,
    )


@pytest.fixture
def spawner() -> Generator[ProcessSpawner, None, None]:
    """Patch child process creation with fake processes."""
    spawner = ProcessSpawner()
    with patch("asyncio.create_subprocess_exec", new=spawner):
        yield spawner


@pytest.fixture
def command_builder(test_settings: FanoutSettings) -> FFmpegCommandBuilder:
    """Create a command builder for testing."""
    return FFmpegCommandBuilder(test_settings)


@pytest.fixture
def config_provider() -> StaticConfigProvider:
    """Config provider with the default snapshot (no active destinations)."""
    return StaticConfigProvider()


@pytest.fixture
def transcriber(test_settings, config_provider, command_builder) -> TranscriptionRunner:
    """Create a transcription runner for testing."""
    return TranscriptionRunner(test_settings, config_provider, command_builder)


@pytest.fixture
def egress_factory(test_settings, command_builder) -> EgressPipelineFactory:
    """Create an egress pipeline factory for testing."""
    return EgressPipelineFactory(test_settings, command_builder)


@pytest.fixture
def recording_factory(test_settings, transcriber, command_builder) -> RecordingPipelineFactory:
    """Create a recording pipeline factory for testing."""
    return RecordingPipelineFactory(test_settings, transcriber, command_builder)


@pytest.fixture
def registry(
    test_settings, config_provider, egress_factory, recording_factory
) -> SessionRegistry:
    """Create a session registry for testing."""
    return SessionRegistry(test_settings, config_provider, egress_factory, recording_factory)
