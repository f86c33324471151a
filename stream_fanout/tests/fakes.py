"""Fake child processes and config providers shared by the engine tests."""

import asyncio
import signal
from typing import Callable, List, Optional

from stream_fanout.config import ConfigSnapshot


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(
        self,
        cmd: List[str],
        pid: int,
        stderr_lines: List[bytes] = (),
        signal_returncode: int = 255,
        ignore_signals: bool = False,
        communicate_returncode: int = 0,
        communicate_stderr: bytes = b"",
        on_communicate: Optional[Callable[[List[str]], None]] = None,
        communicate_hangs: bool = False,
    ):
        self.cmd = cmd
        self.pid = pid
        self.returncode: Optional[int] = None
        self.signals: List[int] = []
        self.signal_returncode = signal_returncode
        self.ignore_signals = ignore_signals
        self.communicate_returncode = communicate_returncode
        self.communicate_stderr = communicate_stderr
        self.on_communicate = on_communicate
        self.communicate_hangs = communicate_hangs

        self._exited = asyncio.Event()
        self.stderr = asyncio.StreamReader()
        for line in stderr_lines:
            self.stderr.feed_data(line)
        self.stderr.feed_eof()

    def exit(self, returncode: int) -> None:
        if self.returncode is None:
            self.returncode = returncode
            self._exited.set()

    def send_signal(self, sig: int) -> None:
        if self.returncode is not None:
            raise ProcessLookupError()
        self.signals.append(sig)
        if not self.ignore_signals:
            self.exit(self.signal_returncode)

    def kill(self) -> None:
        self.signals.append(signal.SIGKILL)
        self.exit(-signal.SIGKILL)

    async def wait(self) -> int:
        await self._exited.wait()
        return self.returncode

    async def communicate(self, input=None):
        if self.communicate_hangs:
            # Runs until killed
            await self._exited.wait()
            return b"", b""
        if self.on_communicate is not None:
            self.on_communicate(self.cmd)
        self.exit(self.communicate_returncode)
        return b"", self.communicate_stderr


class ProcessSpawner:
    """Replacement for asyncio.create_subprocess_exec that records every spawn."""

    def __init__(self):
        self.processes: List[FakeProcess] = []
        self.next_pid = 1000
        self.fail_when: Optional[Callable[[List[str]], bool]] = None
        self.process_options = {}

    async def __call__(self, *cmd, **kwargs) -> FakeProcess:
        cmd = list(cmd)
        if self.fail_when is not None and self.fail_when(cmd):
            raise FileNotFoundError(2, "No such file or directory", cmd[0])
        self.next_pid += 1
        process = FakeProcess(cmd, self.next_pid, **self.process_options)
        self.processes.append(process)
        return process

    @property
    def commands(self) -> List[List[str]]:
        return [process.cmd for process in self.processes]


class StaticConfigProvider:
    """Config provider serving a fixed, replaceable snapshot."""

    def __init__(self, snapshot: Optional[ConfigSnapshot] = None):
        self.snapshot = snapshot or ConfigSnapshot()
        self.callbacks = []

    def get_snapshot(self) -> ConfigSnapshot:
        return self.snapshot

    def subscribe(self, callback):
        self.callbacks.append(callback)
        return callback


def make_snapshot(recording=None, transcription=None, **platforms) -> ConfigSnapshot:
    """Build a snapshot with only the given platforms."""
    data = {"platforms": platforms}
    if recording is not None:
        data["recording"] = recording
    if transcription is not None:
        data["transcription"] = transcription
    return ConfigSnapshot.model_validate(data)


def keyed(key: str = "live_abc123", enabled: bool = True, **extra) -> dict:
    """Destination entry with a stream key."""
    return {
        "enabled": enabled,
        "rtmp_url": extra.pop("rtmp_url", "rtmp://ingest.example.com/app"),
        "stream_key": key,
        **extra,
    }


async def settle(rounds: int = 5) -> None:
    """Let supervision tasks and callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)

