"""
Pytest configuration and fixtures for ingest gateway tests.
"""

import tempfile
from pathlib import Path
from typing import Generator
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import yaml
from fastapi.testclient import TestClient

from ingest_gateway.main import create_app
from stream_fanout.config import FanoutSettings
from stream_fanout.config_provider import FileConfigProvider
from stream_fanout.service import FanoutService
from stream_fanout.tests.fakes import ProcessSpawner


@pytest.fixture
def mock_service() -> MagicMock:
    """Create a mock fan-out service."""
    service = MagicMock(spec=FanoutService)
    service.start = AsyncMock()
    service.stop = AsyncMock()
    service.registry = MagicMock()
    service.registry.on_ingest_start = AsyncMock(return_value=None)
    service.registry.on_ingest_stop = AsyncMock(return_value=False)
    service.registry.session_keys = MagicMock(return_value=[])
    service.config_provider = MagicMock()
    service.config_provider.reload = AsyncMock()
    service.list_streams = MagicMock(return_value={"sessions": []})
    service.list_recordings = MagicMock(return_value=[])
    service.transcribe_recording = AsyncMock(return_value=True)
    service.extract_clip = AsyncMock()
    service.describe_config = MagicMock(return_value={"platforms": {}})
    service.read_transcription = MagicMock(return_value="")
    return service


@pytest.fixture
def client(mock_service) -> Generator[TestClient, None, None]:
    """Create a test client around the mocked service."""
    with TestClient(create_app(service=mock_service)) as test_client:
        yield test_client


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def spawner() -> Generator[ProcessSpawner, None, None]:
    """Patch child process creation with fake processes."""
    spawner = ProcessSpawner()
    with patch("asyncio.create_subprocess_exec", new=spawner):
        yield spawner


@pytest.fixture
def live_client(temp_dir: Path, spawner: ProcessSpawner) -> Generator[TestClient, None, None]:
    """Test client around a real service with twitch and recording enabled."""
    config_path = temp_dir / "config.yaml"
    with open(config_path, "w") as f:
        yaml.safe_dump(
            {
                "platforms": {
                    "twitch": {"enabled": True, "rtmpUrl": "rtmp://tw/app", "streamKey": "tw-key"},
                },
                "recording": {"enabled": True, "path": str(temp_dir / "recordings")},
            },
            f,
        )
    settings = FanoutSettings(
        _env_file=None,
        config_path=str(config_path),
        stop_grace_period=2.0,
        config_poll_interval=60.0,
    )
    service = FanoutService(settings, FileConfigProvider(str(config_path), environ={}))

    with TestClient(create_app(service=service)) as test_client:
        yield test_client
