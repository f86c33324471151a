"""
Session registry.

Authoritative mapping from active ingest sessions to their running egress
pipelines. Ingest start/stop events and reconciliation passes for the same
session are serialized by a per-session lock. Each event publishes its
result as a single swap of the session's pipeline mapping, so readers never
see a half-applied update.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import AbstractSet, Dict, List, Optional

from stream_fanout.config import RECORDING, ConfigSnapshot, FanoutSettings
from stream_fanout.factory import EgressPipelineFactory, RecordingPipelineFactory
from stream_fanout.pipeline import EgressPipeline, PipelineExit

logger = logging.getLogger(__name__)

DEFAULT_SESSION_KEY = "stream"


def extract_session_key(path: str) -> str:
    """
    Extract the session key from an ingest path (its final segment).

    Args:
        path: Ingest path such as ``/live/abc``

    Returns:
        Session key
    """
    parts = path.rstrip("/").split("/")
    return parts[-1] or DEFAULT_SESSION_KEY


@dataclass
class Session:
    """One active ingest and the pipelines fed from it."""

    session_key: str
    input_url: str
    started_at: datetime = field(default_factory=datetime.now)
    pipelines: Dict[str, EgressPipeline] = field(default_factory=dict)
    closed: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def destination_ids(self) -> List[str]:
        return sorted(self.pipelines)

    def to_dict(self) -> Dict:
        pipelines = self.pipelines
        return {
            "session_key": self.session_key,
            "destinations": sorted(pipelines),
            "started_at": self.started_at.isoformat(),
            "pipelines": [pipelines[name].to_dict() for name in sorted(pipelines)],
        }


class SessionRegistry:
    """
    Tracks ingest sessions and the egress pipelines they own.

    Features:
    - Duplicate start events never spawn duplicate pipelines
    - Loop-back guard for the debug destination's own re-ingest
    - Best-effort teardown (one failing pipeline never blocks the others)
    - Reconciliation touches only the destinations it is told to
    """

    def __init__(
        self,
        settings: FanoutSettings,
        config_provider,
        egress_factory: EgressPipelineFactory,
        recording_factory: RecordingPipelineFactory,
    ):
        """
        Initialize session registry.

        Args:
            settings: Fan-out settings
            config_provider: Source of configuration snapshots
            egress_factory: Factory for platform and debug pipelines
            recording_factory: Factory for recording pipelines
        """
        self.settings = settings
        self.config_provider = config_provider
        self.egress_factory = egress_factory
        self.recording_factory = recording_factory

        self._sessions: Dict[str, Session] = {}

    async def on_ingest_start(self, path: str) -> Optional[Session]:
        """
        Handle an ingest-started event.

        Args:
            path: Ingest path (session key is its final segment)

        Returns:
            The new session, or None if the event was ignored
        """
        session_key = extract_session_key(path)
        snapshot = self.config_provider.get_snapshot()

        if snapshot.debug_loopback_key is not None and session_key == snapshot.debug_loopback_key:
            logger.info(f"Ignoring debug loop-back ingest {path}")
            return None

        if session_key in self._sessions:
            logger.warning(f"Stream {session_key} already active, ignoring duplicate start")
            return None

        # Registered before any await so a concurrent duplicate start sees it
        session = Session(session_key=session_key, input_url=self.settings.ingest_url(path))
        self._sessions[session_key] = session

        async with session.lock:
            if session.closed:
                return None

            destinations = set(snapshot.active_destinations())
            if snapshot.recording.is_active:
                destinations.add(RECORDING)

            started = await self._start_destinations(session, destinations, snapshot)
            session.pipelines = {**session.pipelines, **started}

        logger.info(
            f"Started restreaming {session_key} to {len(started)} destination(s): "
            f"{', '.join(sorted(started)) or 'none'}"
        )
        return session

    async def on_ingest_stop(self, path: str) -> bool:
        """
        Handle an ingest-ended event.

        Args:
            path: Ingest path

        Returns:
            True if a session was torn down
        """
        session_key = extract_session_key(path)
        session = self._sessions.pop(session_key, None)
        if session is None:
            logger.info(f"Stop for unknown stream {session_key}, ignoring")
            return False

        async with session.lock:
            session.closed = True
            pipelines = session.pipelines
            for pipeline in pipelines.values():
                self._stop_pipeline(pipeline)
            session.pipelines = {}

        logger.info(f"Stopped {len(pipelines)} pipeline(s) for stream {session_key}")
        return True

    async def apply_reconciliation(
        self,
        session_key: str,
        to_stop: AbstractSet[str],
        to_start: AbstractSet[str],
        snapshot: Optional[ConfigSnapshot] = None,
    ) -> None:
        """
        Stop and start destinations of one session; leave all others untouched.

        Args:
            session_key: Session to update
            to_stop: Destinations to stop
            to_start: Destinations to start
            snapshot: Configuration to start destinations from (defaults to current)
        """
        session = self._sessions.get(session_key)
        if session is None:
            return

        snapshot = snapshot or self.config_provider.get_snapshot()

        async with session.lock:
            if session.closed:
                return

            stopped = []
            for destination_id in to_stop:
                pipeline = session.pipelines.get(destination_id)
                if pipeline is not None:
                    self._stop_pipeline(pipeline)
                    stopped.append(destination_id)

            # Not restarting something that is still running
            pending = {
                destination_id
                for destination_id in to_start
                if destination_id in to_stop or destination_id not in session.pipelines
            }
            started = await self._start_destinations(session, pending, snapshot)

            pipelines = {
                name: pipeline
                for name, pipeline in session.pipelines.items()
                if name not in to_stop
            }
            pipelines.update(started)
            session.pipelines = pipelines

        if stopped or started:
            logger.info(
                f"Reconciled stream {session_key}: stopped={sorted(stopped)} "
                f"started={sorted(started)}"
            )

    def list_active_sessions(self) -> List[Dict]:
        """Read-only snapshot of active sessions and their destinations."""
        return [session.to_dict() for session in list(self._sessions.values())]

    def get_session(self, session_key: str) -> Optional[Session]:
        return self._sessions.get(session_key)

    def session_keys(self) -> List[str]:
        return list(self._sessions)

    async def shutdown(self, timeout: float = 15.0) -> None:
        """Stop every session and wait for the child processes to exit."""
        pipelines: List[EgressPipeline] = []
        for session_key in list(self._sessions):
            session = self._sessions.get(session_key)
            if session is not None:
                pipelines.extend(session.pipelines.values())
            await self.on_ingest_stop(f"/{session_key}")

        if pipelines:
            await asyncio.gather(
                *(pipeline.wait(timeout) for pipeline in pipelines),
                return_exceptions=True,
            )
            for pipeline in pipelines:
                pipeline.kill()

    async def _start_destinations(
        self,
        session: Session,
        destination_ids: AbstractSet[str],
        snapshot: ConfigSnapshot,
    ) -> Dict[str, EgressPipeline]:
        started: Dict[str, EgressPipeline] = {}
        exit_callbacks = [self._make_exit_handler(session)]

        for destination_id in sorted(destination_ids):
            if destination_id == RECORDING:
                pipeline = await self.recording_factory.create(
                    session.session_key,
                    session.input_url,
                    snapshot.recording,
                    exit_callbacks=exit_callbacks,
                )
            else:
                pipeline = await self.egress_factory.create(
                    session.session_key,
                    session.input_url,
                    destination_id,
                    snapshot.destination(destination_id),
                    exit_callbacks=exit_callbacks,
                )
            if pipeline is not None:
                started[destination_id] = pipeline

        # A process that already died during the spawn loop is not published
        return {name: p for name, p in started.items() if p.exit_info is None}

    def _make_exit_handler(self, session: Session):
        def _on_exit(pipeline: EgressPipeline, exit_info: PipelineExit) -> None:
            # Requested stops are removed by the stop path itself
            if pipeline.stop_requested:
                return
            if session.pipelines.get(pipeline.destination_id) is pipeline:
                session.pipelines = {
                    name: other
                    for name, other in session.pipelines.items()
                    if other is not pipeline
                }
                logger.warning(
                    f"{pipeline.label} is no longer running ({exit_info.kind.value}), "
                    f"removed from stream {session.session_key}"
                )

        return _on_exit

    @staticmethod
    def _stop_pipeline(pipeline: EgressPipeline) -> None:
        try:
            pipeline.request_stop()
        except Exception as e:
            logger.error(f"{pipeline.label} failed to stop: {e}", exc_info=True)
