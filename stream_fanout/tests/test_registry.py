"""
Tests for the session registry.

Note: These tests use fake processes to avoid spawning actual FFmpeg processes.
"""

import asyncio
import signal
from pathlib import Path

import pytest

from stream_fanout.reconciler import Reconciler
from stream_fanout.registry import SessionRegistry, extract_session_key
from stream_fanout.tests.fakes import keyed, make_snapshot, settle


class TestExtractSessionKey:
    """Test session key extraction."""

    def test_final_segment(self):
        assert extract_session_key("/live/abc") == "abc"

    def test_trailing_slash(self):
        assert extract_session_key("/live/abc/") == "abc"

    def test_empty_path_fallback(self):
        assert extract_session_key("") == "stream"
        assert extract_session_key("/") == "stream"


class TestIngestStart:
    """Test ingest start handling."""

    @pytest.mark.asyncio
    async def test_only_enabled_keyed_destinations(self, spawner, registry, config_provider):
        """Test start spawns twitch only when youtube is disabled and recording off."""
        config_provider.snapshot = make_snapshot(
            twitch=keyed("tw-key"),
            youtube=keyed("yt-key", enabled=False),
            recording={"enabled": False},
        )

        session = await registry.on_ingest_start("/live/abc")

        assert session.session_key == "abc"
        assert session.input_url == "rtmp://localhost:1935/live/abc"
        assert list(session.pipelines) == ["twitch"]
        assert len(spawner.processes) == 1

        await registry.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_recording_started_when_enabled(
        self, spawner, registry, config_provider, temp_dir: Path
    ):
        """Test recording joins the session when enabled."""
        config_provider.snapshot = make_snapshot(
            twitch=keyed(), recording={"enabled": True, "path": str(temp_dir)}
        )

        session = await registry.on_ingest_start("/live/abc")

        assert sorted(session.pipelines) == ["recording", "twitch"]

        await registry.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_duplicate_start_ignored(self, spawner, registry, config_provider):
        """Test a duplicate start never spawns duplicate pipelines."""
        config_provider.snapshot = make_snapshot(twitch=keyed())

        first = await registry.on_ingest_start("/live/abc")
        second = await registry.on_ingest_start("/live/abc")

        assert first is not None
        assert second is None
        assert len(spawner.processes) == 1

        await registry.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_start(self, spawner, registry, config_provider):
        """Test concurrent starts for the same key spawn once."""
        config_provider.snapshot = make_snapshot(twitch=keyed(), youtube=keyed("yt"))

        results = await asyncio.gather(
            registry.on_ingest_start("/live/abc"),
            registry.on_ingest_start("/live/abc"),
        )

        assert sum(result is not None for result in results) == 1
        assert len(spawner.processes) == 2

        await registry.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_debug_loopback_ignored(self, spawner, registry, config_provider):
        """Test the debug destination's own re-ingest does not fan out again."""
        config_provider.snapshot = make_snapshot(
            twitch=keyed(), browser_debug=keyed("debugkey")
        )

        session = await registry.on_ingest_start("/live/abc")
        assert sorted(session.pipelines) == ["browser_debug", "twitch"]
        loopback_output = session.pipelines["browser_debug"].output_target
        assert loopback_output == "rtmp://localhost:1935/live/debugkey"

        assert await registry.on_ingest_start("/live/debugkey") is None
        assert registry.session_keys() == ["abc"]
        assert len(spawner.processes) == 2

        await registry.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_spawn_failure_leaves_destination_absent(
        self, spawner, registry, config_provider
    ):
        """Test a destination that fails to spawn is simply absent."""
        config_provider.snapshot = make_snapshot(
            twitch=keyed("tw-key"), youtube=keyed("yt-key")
        )
        spawner.fail_when = lambda cmd: any("yt-key" in arg for arg in cmd)

        session = await registry.on_ingest_start("/live/abc")

        assert list(session.pipelines) == ["twitch"]

        await registry.shutdown(1.0)


class TestIngestStop:
    """Test ingest stop handling."""

    @pytest.mark.asyncio
    async def test_stop_signals_every_pipeline(self, spawner, registry, config_provider):
        """Test stop interrupts every pipeline and removes the session."""
        config_provider.snapshot = make_snapshot(twitch=keyed(), youtube=keyed("yt"))
        session = await registry.on_ingest_start("/live/abc")
        pipelines = list(session.pipelines.values())

        assert await registry.on_ingest_stop("/live/abc") is True

        assert registry.session_keys() == []
        assert session.pipelines == {}
        for process in spawner.processes:
            assert process.signals == [signal.SIGINT]
        for pipeline in pipelines:
            await pipeline.wait(1.0)

    @pytest.mark.asyncio
    async def test_unknown_stop_ignored(self, spawner, registry):
        """Test stop for an unknown session is a no-op."""
        assert await registry.on_ingest_stop("/live/unknown") is False

    @pytest.mark.asyncio
    async def test_stop_best_effort(self, spawner, registry, config_provider):
        """Test one pipeline failing to stop does not block the others."""
        config_provider.snapshot = make_snapshot(twitch=keyed(), youtube=keyed("yt"))
        session = await registry.on_ingest_start("/live/abc")
        broken = session.pipelines["twitch"]
        healthy = session.pipelines["youtube"]

        def explode():
            raise RuntimeError("cannot signal")

        broken.request_stop = explode

        await registry.on_ingest_stop("/live/abc")

        assert healthy.stop_requested is True
        await healthy.wait(1.0)
        broken.kill()
        await broken.wait(1.0)

    @pytest.mark.asyncio
    async def test_recording_stop_transcribes(
        self, spawner, registry, config_provider, transcriber, temp_dir: Path
    ):
        """Test stopping a recorded stream produces the transcript."""
        config_provider.snapshot = make_snapshot(
            recording={"enabled": True, "path": str(temp_dir), "format": "mp4"}
        )
        session = await registry.on_ingest_start("/live/abc")
        recording = session.pipelines["recording"]

        spawner.process_options = {
            "on_communicate": lambda cmd: Path(cmd[-1]).write_text("transcript"),
        }
        await registry.on_ingest_stop("/live/abc")
        await recording.wait(1.0)
        await transcriber.wait_all()

        expected = Path(recording.output_target).with_suffix(".txt")
        assert expected.read_text() == "transcript"


class TestUnexpectedExit:
    """Test pipelines dying on their own."""

    @pytest.mark.asyncio
    async def test_crashed_pipeline_removed(self, spawner, registry, config_provider):
        """Test a crashed pipeline disappears from the listing."""
        config_provider.snapshot = make_snapshot(twitch=keyed(), youtube=keyed("yt"))
        session = await registry.on_ingest_start("/live/abc")
        twitch = session.pipelines["twitch"]

        twitch.process.exit(1)
        await twitch.wait(1.0)

        listing = registry.list_active_sessions()
        assert listing[0]["destinations"] == ["youtube"]

        await registry.shutdown(1.0)


class TestApplyReconciliation:
    """Test reconciliation against live sessions."""

    @pytest.mark.asyncio
    async def test_enable_youtube_keeps_twitch_process(
        self, spawner, registry: SessionRegistry, config_provider
    ):
        """Test enabling youtube mid-stream never recreates the twitch pipeline."""
        old = make_snapshot(twitch=keyed(), youtube=keyed("yt", enabled=False))
        new = make_snapshot(twitch=keyed(), youtube=keyed("yt", enabled=True))
        config_provider.snapshot = old
        session = await registry.on_ingest_start("/live/abc")
        twitch_before = session.pipelines["twitch"]
        process_before = twitch_before.process

        config_provider.snapshot = new
        plan = await Reconciler(registry).on_config_changed(old, new)

        assert plan.to_start == {"youtube"}
        assert plan.to_stop == set()
        assert sorted(session.pipelines) == ["twitch", "youtube"]
        assert session.pipelines["twitch"] is twitch_before
        assert session.pipelines["twitch"].process is process_before
        assert process_before.signals == []

        await registry.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_restart_replaces_pipeline(self, spawner, registry, config_provider):
        """Test a restarted destination gets a new process and the old one is stopped."""
        old = make_snapshot(twitch=keyed())
        new = make_snapshot(twitch=keyed(settings={"transcode": True, "bitrate": "3000k"}))
        config_provider.snapshot = old
        session = await registry.on_ingest_start("/live/abc")
        before = session.pipelines["twitch"]

        await Reconciler(registry).on_config_changed(old, new)

        after = session.pipelines["twitch"]
        assert after is not before
        assert before.stop_requested is True
        assert after.transcode_params.video_bitrate == "3000k"
        await before.wait(1.0)
        await settle()
        assert session.pipelines["twitch"] is after

        await registry.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_disable_stops_only_that_destination(self, spawner, registry, config_provider):
        """Test disabling one destination leaves the rest running."""
        old = make_snapshot(twitch=keyed(), youtube=keyed("yt"))
        new = make_snapshot(twitch=keyed(), youtube=keyed("yt", enabled=False))
        config_provider.snapshot = old
        session = await registry.on_ingest_start("/live/abc")
        youtube = session.pipelines["youtube"]
        twitch = session.pipelines["twitch"]

        await registry.apply_reconciliation("abc", frozenset({"youtube"}), frozenset(), new)

        assert list(session.pipelines) == ["twitch"]
        assert youtube.stop_requested is True
        assert twitch.stop_requested is False

        await youtube.wait(1.0)
        await registry.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_unknown_session_ignored(self, spawner, registry):
        """Test reconciliation of an unknown session does nothing."""
        await registry.apply_reconciliation("missing", frozenset({"twitch"}), frozenset())

        assert spawner.processes == []

    @pytest.mark.asyncio
    async def test_start_does_not_duplicate_running(self, spawner, registry, config_provider):
        """Test a start for an already running destination is skipped."""
        config_provider.snapshot = make_snapshot(twitch=keyed())
        session = await registry.on_ingest_start("/live/abc")

        await registry.apply_reconciliation("abc", frozenset(), frozenset({"twitch"}))

        assert len(spawner.processes) == 1
        assert len(session.pipelines) == 1

        await registry.shutdown(1.0)

    @pytest.mark.asyncio
    async def test_stop_and_reconcile_serialized(self, spawner, registry, config_provider):
        """Test reconciliation racing a stop never leaks a pipeline."""
        old = make_snapshot(twitch=keyed(), youtube=keyed("yt", enabled=False))
        new = make_snapshot(twitch=keyed(), youtube=keyed("yt"))
        config_provider.snapshot = old
        await registry.on_ingest_start("/live/abc")

        await asyncio.gather(
            registry.apply_reconciliation("abc", frozenset(), frozenset({"youtube"}), new),
            registry.on_ingest_stop("/live/abc"),
        )
        await settle()

        assert registry.session_keys() == []
        for process in spawner.processes:
            assert process.returncode is not None


class TestListing:
    """Test active session listing."""

    @pytest.mark.asyncio
    async def test_list_active_sessions(self, spawner, registry, config_provider):
        """Test listing reports keys, destinations and redacted pipelines."""
        config_provider.snapshot = make_snapshot(twitch=keyed("tw-secret"))
        await registry.on_ingest_start("/live/abc")

        listing = registry.list_active_sessions()

        assert len(listing) == 1
        assert listing[0]["session_key"] == "abc"
        assert listing[0]["destinations"] == ["twitch"]
        assert "tw-secret" not in str(listing)

        await registry.shutdown(1.0)
        assert registry.list_active_sessions() == []
