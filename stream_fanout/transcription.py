"""
Transcription hand-off for finished recordings.

The transcription tool writes to ``<name>.txt.tmp``; only a successful run
is published by renaming it to ``<name>.txt``. A failed run removes the temp
file, so a transcript under its final name is always complete.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional, Set, Tuple, Union

from stream_fanout.command_builder import FFmpegCommandBuilder
from stream_fanout.config import FanoutSettings

logger = logging.getLogger(__name__)

TRANSCRIPTION_MODELS = ("tiny", "base", "small", "medium", "large")
DEFAULT_TRANSCRIPTION_MODEL = "base"

TRANSCRIPT_SUFFIX = ".txt"
TEMP_SUFFIX = ".tmp"


def transcript_paths(media_path: Union[str, Path]) -> Tuple[Path, Path]:
    """
    Derive the transcript paths for a recording.

    Args:
        media_path: Recording file path

    Returns:
        (final transcript path, temp transcript path)
    """
    final_path = Path(media_path).with_suffix(TRANSCRIPT_SUFFIX)
    temp_path = final_path.with_name(final_path.name + TEMP_SUFFIX)
    return final_path, temp_path


def resolve_model(requested: Optional[str]) -> str:
    """Validate the configured model, falling back to the default."""
    if requested in TRANSCRIPTION_MODELS:
        return requested
    logger.warning(
        f"Invalid transcription model '{requested}', using '{DEFAULT_TRANSCRIPTION_MODEL}'. "
        f"Valid models: {', '.join(TRANSCRIPTION_MODELS)}"
    )
    return DEFAULT_TRANSCRIPTION_MODEL


class TranscriptionRunner:
    """Runs the external transcription tool with atomic publication."""

    def __init__(
        self,
        settings: FanoutSettings,
        config_provider,
        command_builder: Optional[FFmpegCommandBuilder] = None,
    ):
        """
        Initialize transcription runner.

        Args:
            settings: Fan-out settings
            config_provider: Source of the current transcription settings
            command_builder: Command builder (creates default if not provided)
        """
        self.settings = settings
        self.config_provider = config_provider
        self.command_builder = command_builder or FFmpegCommandBuilder(settings)

        self._active: Set[Path] = set()
        self._tasks: Set[asyncio.Task] = set()

    def is_transcribing(self, media_path: Union[str, Path]) -> bool:
        return Path(media_path) in self._active

    def schedule(self, media_path: Union[str, Path]) -> Optional[asyncio.Task]:
        """
        Start transcribing in the background.

        Returns:
            The background task, or None if this file is already being transcribed
        """
        path = Path(media_path)
        if not self._claim(path):
            return None

        task = asyncio.create_task(self._run_claimed(path))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def transcribe(self, media_path: Union[str, Path]) -> Optional[Path]:
        """
        Transcribe a recording and wait for the result.

        Returns:
            Final transcript path, or None if transcription failed or was
            already running for this file
        """
        path = Path(media_path)
        if not self._claim(path):
            return None
        return await self._run_claimed(path)

    async def wait_all(self, timeout: Optional[float] = None) -> None:
        """
        Wait for every scheduled transcription to finish.

        Args:
            timeout: Seconds to wait before cancelling the ones still running
                (no limit if not provided)
        """
        tasks = list(self._tasks)
        if not tasks:
            return

        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            logger.warning(
                f"Cancelling {len(pending)} transcription(s) still running after {timeout}s"
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    def _claim(self, path: Path) -> bool:
        if path in self._active:
            logger.warning(f"Transcription already running for {path.name}")
            return False
        self._active.add(path)
        return True

    async def _run_claimed(self, path: Path) -> Optional[Path]:
        try:
            return await self._run(path)
        except Exception as e:
            logger.error(f"Transcription error for {path}: {e}", exc_info=True)
            return None
        finally:
            self._active.discard(path)

    async def _run(self, media_path: Path) -> Optional[Path]:
        final_path, temp_path = transcript_paths(media_path)

        transcription = self.config_provider.get_snapshot().transcription
        model = resolve_model(transcription.model)
        cmd = self.command_builder.build_transcribe_command(
            media_path, temp_path, model, transcription.language
        )

        logger.info(f"Starting transcription: {media_path.name} (model: {model})")
        logger.debug(f"Command: {' '.join(cmd)}")

        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.error(f"Failed to start transcription for {media_path}: {e}")
            self._discard_temp(temp_path)
            return None

        try:
            _, stderr = await process.communicate()
        except asyncio.CancelledError:
            logger.warning(f"Transcription of {media_path.name} cancelled")
            if process.returncode is None:
                process.kill()
                await process.wait()
            self._discard_temp(temp_path)
            raise

        if process.returncode != 0:
            error_output = (stderr or b"").decode("utf-8", errors="replace")
            logger.error(
                f"Transcription failed for {media_path} "
                f"(exit code {process.returncode}): {error_output[-500:]}"
            )
            self._discard_temp(temp_path)
            return None

        if not temp_path.exists():
            logger.error(f"Transcription finished but temp file {temp_path} not found")
            return None

        try:
            os.replace(temp_path, final_path)
        except OSError as e:
            logger.error(f"Failed to rename transcription file {temp_path}: {e}")
            self._discard_temp(temp_path)
            return None

        logger.info(f"Transcription completed and saved to {final_path}")
        return final_path

    @staticmethod
    def _discard_temp(temp_path: Path) -> None:
        try:
            temp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to clean up temp file {temp_path}: {e}")
