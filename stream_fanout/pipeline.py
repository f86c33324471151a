"""
Egress pipeline supervision.

One EgressPipeline owns one encoder child process. Each pipeline gets a
supervision task that drains stderr, waits for exit, classifies it and runs
the exit callbacks. Stopping is non-blocking: the stop flag is set before
SIGINT is sent, so the exit classification never depends on the exit code
or the encoder's error text.
"""

import asyncio
import inspect
import logging
import signal
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

from stream_fanout.command_builder import redact_command
from stream_fanout.config import TranscodeSettings

logger = logging.getLogger(__name__)


class PipelineMode(str, Enum):
    """How a pipeline treats the ingest media."""

    PASSTHROUGH = "passthrough"
    TRANSCODE = "transcode"


class PipelineState(str, Enum):
    """Pipeline process states."""

    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    COMPLETED = "completed"
    CRASHED = "crashed"


class ExitKind(str, Enum):
    """Why a pipeline process exited."""

    STOPPED = "stopped"  # after request_stop()
    COMPLETED = "completed"  # exit code 0 without a stop request (input ended)
    FAILED = "failed"


@dataclass(frozen=True)
class PipelineExit:
    """Exit report passed to exit callbacks."""

    kind: ExitKind
    returncode: Optional[int]
    stderr_tail: List[str] = field(default_factory=list)
    killed: bool = False  # SIGKILL escalation; output may be truncated

    @property
    def expected(self) -> bool:
        return self.kind is not ExitKind.FAILED


ExitCallback = Callable[["EgressPipeline", PipelineExit], Union[None, Awaitable[None]]]


class EgressPipeline:
    """A running encoder process feeding one destination for one session."""

    def __init__(
        self,
        destination_id: str,
        session_key: str,
        process: asyncio.subprocess.Process,
        output_target: str,
        mode: PipelineMode = PipelineMode.PASSTHROUGH,
        transcode_params: Optional[TranscodeSettings] = None,
        grace_period: float = 10.0,
        stderr_tail_lines: int = 20,
        redactions: Iterable[str] = (),
    ):
        """
        Initialize pipeline wrapper.

        Args:
            destination_id: Platform name or reserved destination id
            session_key: Owning ingest session
            process: The spawned child process
            output_target: Output URL or file path
            mode: Passthrough or transcode
            transcode_params: Encoding parameters (transcode mode only)
            grace_period: Seconds between SIGINT and SIGKILL (0 disables escalation)
            stderr_tail_lines: Number of stderr lines kept for error reports
            redactions: Secrets masked whenever output or stderr is logged
        """
        self.destination_id = destination_id
        self.session_key = session_key
        self.process = process
        self.output_target = output_target
        self.mode = mode
        self.transcode_params = transcode_params if mode is PipelineMode.TRANSCODE else None
        self.grace_period = grace_period
        self.started_at = datetime.now()
        self.state = PipelineState.RUNNING
        self.stop_requested = False
        self.killed = False
        self.exit_info: Optional[PipelineExit] = None

        self._redactions = [secret for secret in redactions if secret]
        self._stderr_tail: deque = deque(maxlen=stderr_tail_lines)
        self._exit_callbacks: List[ExitCallback] = []
        self._supervisor: Optional[asyncio.Task] = None
        self._escalation: Optional[asyncio.Task] = None

    @classmethod
    async def spawn(
        cls,
        cmd: List[str],
        destination_id: str,
        session_key: str,
        output_target: str,
        mode: PipelineMode = PipelineMode.PASSTHROUGH,
        transcode_params: Optional[TranscodeSettings] = None,
        grace_period: float = 10.0,
        stderr_tail_lines: int = 20,
        redactions: Iterable[str] = (),
        exit_callbacks: Iterable[ExitCallback] = (),
    ) -> "EgressPipeline":
        """
        Spawn the child process and start supervising it.

        Raises:
            OSError: If the process cannot be started
        """
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        pipeline = cls(
            destination_id=destination_id,
            session_key=session_key,
            process=process,
            output_target=output_target,
            mode=mode,
            transcode_params=transcode_params,
            grace_period=grace_period,
            stderr_tail_lines=stderr_tail_lines,
            redactions=redactions,
        )
        for callback in exit_callbacks:
            pipeline.add_exit_callback(callback)
        pipeline._supervisor = asyncio.create_task(pipeline._supervise())
        logger.info(
            f"{pipeline.label} started (PID: {process.pid}, mode: {mode.value})"
        )
        return pipeline

    @property
    def label(self) -> str:
        return f"[{self.session_key}/{self.destination_id}]"

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now() - self.started_at).total_seconds()

    @property
    def stderr_tail(self) -> List[str]:
        return [self._redact(line) for line in self._stderr_tail]

    def add_exit_callback(self, callback: ExitCallback) -> None:
        """Register a callback run once, after the process has exited."""
        self._exit_callbacks.append(callback)

    def request_stop(self) -> bool:
        """
        Ask the process to finish (SIGINT) without waiting for it.

        The stop flag is set before the signal is sent. If the process is
        still alive after the grace period it is killed.

        Returns:
            True if a signal was sent
        """
        if self.stop_requested:
            return False
        if not self.is_running:
            logger.debug(f"{self.label} already exited, nothing to stop")
            return False

        self.stop_requested = True
        self.state = PipelineState.STOPPING

        try:
            self.process.send_signal(signal.SIGINT)
        except ProcessLookupError:
            logger.debug(f"{self.label} process {self.pid} already gone")
            return False

        logger.info(f"{self.label} stop requested (PID: {self.pid})")

        if self.grace_period > 0:
            self._escalation = asyncio.create_task(self._kill_after_grace())
        return True

    def kill(self) -> None:
        """Forcefully kill the process (SIGKILL)."""
        if self.is_running:
            logger.warning(f"{self.label} sending SIGKILL to process {self.pid}")
            self.killed = True
            try:
                self.process.kill()
            except ProcessLookupError:
                pass

    async def wait(self, timeout: Optional[float] = None) -> Optional[PipelineExit]:
        """
        Wait until the process has exited and all exit callbacks have run.

        Args:
            timeout: Maximum time to wait in seconds

        Returns:
            Exit report, or None on timeout
        """
        if self._supervisor is None:
            return self.exit_info
        try:
            await asyncio.wait_for(asyncio.shield(self._supervisor), timeout)
        except asyncio.TimeoutError:
            return None
        return self.exit_info

    def to_dict(self) -> Dict:
        """Status information safe to expose (output is redacted)."""
        status = {
            "destination": self.destination_id,
            "pid": self.pid,
            "state": self.state.value,
            "mode": self.mode.value,
            "output": self._redact(self.output_target),
            "started_at": self.started_at.isoformat(),
            "uptime_seconds": self.uptime_seconds,
        }
        if self.transcode_params is not None:
            status["transcode"] = self.transcode_params.model_dump(exclude={"mode"})
        return status

    async def _supervise(self) -> None:
        """Drain stderr, wait for exit, classify it and run the exit callbacks."""
        try:
            _, returncode = await asyncio.gather(self._drain_stderr(), self.process.wait())
        except Exception as e:
            logger.error(f"{self.label} error while supervising process: {e}", exc_info=True)
            returncode = self.process.returncode

        if self._escalation and not self._escalation.done():
            self._escalation.cancel()

        if self.stop_requested:
            kind = ExitKind.STOPPED
            self.state = PipelineState.STOPPED
            logger.info(f"{self.label} stopped (exit code: {returncode})")
        elif returncode == 0:
            kind = ExitKind.COMPLETED
            self.state = PipelineState.COMPLETED
            logger.info(f"{self.label} finished (input ended)")
        else:
            kind = ExitKind.FAILED
            self.state = PipelineState.CRASHED
            tail = "\n".join(self.stderr_tail)
            logger.error(f"{self.label} exited unexpectedly (exit code: {returncode})\n{tail}")

        self.exit_info = PipelineExit(
            kind=kind,
            returncode=returncode,
            stderr_tail=self.stderr_tail,
            killed=self.killed,
        )

        for callback in self._exit_callbacks:
            try:
                result = callback(self, self.exit_info)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"{self.label} exit callback failed: {e}", exc_info=True)

    async def _drain_stderr(self) -> None:
        """Keep the last stderr lines so a crash can be reported."""
        stream = self.process.stderr
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)

    async def _kill_after_grace(self) -> None:
        await asyncio.sleep(self.grace_period)
        if self.is_running:
            logger.warning(
                f"{self.label} did not exit within {self.grace_period}s of SIGINT, killing"
            )
            self.kill()

    def _redact(self, text: str) -> str:
        return redact_command([text], self._redactions)
