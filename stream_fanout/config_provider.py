"""
Configuration provider.

Loads the stream configuration from a YAML file into an immutable
ConfigSnapshot, applies environment overrides, and notifies subscribers with
(old, new) snapshots whenever the configuration is reloaded.
"""

import asyncio
import inspect
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import yaml
from pydantic import ValidationError

from stream_fanout.config import ConfigSnapshot
from stream_fanout.exceptions import ConfigLoadError

logger = logging.getLogger(__name__)

ConfigCallback = Callable[[ConfigSnapshot, ConfigSnapshot], Union[None, Awaitable[Any]]]

# Platforms whose credentials and URLs may come from the environment
ENV_OVERRIDE_PLATFORMS = ("twitch", "youtube", "kick")


def apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str]) -> Dict[str, Any]:
    """
    Overlay ``<PLATFORM>_STREAM_KEY`` and ``<PLATFORM>_RTMP_URL`` variables.

    A stream key from the environment also enables the platform.

    Args:
        data: Raw configuration mapping (not modified)
        environ: Environment variables

    Returns:
        New configuration mapping
    """
    platforms = dict(data.get("platforms") or {})

    for name in ENV_OVERRIDE_PLATFORMS:
        stream_key = environ.get(f"{name.upper()}_STREAM_KEY")
        rtmp_url = environ.get(f"{name.upper()}_RTMP_URL")
        if not stream_key and not rtmp_url:
            continue

        platform = dict(platforms.get(name) or {})
        if stream_key:
            for alias in ("streamKey", "stream_key"):
                platform.pop(alias, None)
            platform["stream_key"] = stream_key
            platform["enabled"] = True
        if rtmp_url:
            for alias in ("rtmpUrl", "rtmp_url"):
                platform.pop(alias, None)
            platform["rtmp_url"] = rtmp_url
        platforms[name] = platform

    if not platforms:
        return dict(data)
    return {**data, "platforms": platforms}


class Subscription:
    """Handle returned by ``subscribe``; ``cancel()`` stops notifications."""

    def __init__(self, provider: "FileConfigProvider", callback: ConfigCallback):
        self._provider = provider
        self.callback = callback
        self.active = True

    def cancel(self) -> None:
        if self.active:
            self.active = False
            self._provider._unsubscribe(self)


class FileConfigProvider:
    """
    YAML-file backed configuration provider.

    Features:
    - Frozen snapshots (readers never see a partially loaded config)
    - Environment overrides for platform credentials and URLs
    - Manual reload plus a modification-time polling loop
    - A failed load keeps the previous snapshot
    """

    def __init__(
        self,
        path: Union[str, Path],
        poll_interval: float = 2.0,
        environ: Optional[Mapping[str, str]] = None,
    ):
        """
        Initialize configuration provider.

        Args:
            path: YAML configuration file
            poll_interval: Seconds between modification checks in ``watch()``
            environ: Environment used for overrides (defaults to ``os.environ``)
        """
        self.path = Path(path)
        self.poll_interval = poll_interval
        self.environ = os.environ if environ is None else environ

        self._snapshot = ConfigSnapshot()
        self._subscriptions: List[Subscription] = []
        self._reload_lock = asyncio.Lock()
        self._last_mtime: Optional[float] = None
        self._watch_task: Optional[asyncio.Task] = None

    def get_snapshot(self) -> ConfigSnapshot:
        return self._snapshot

    def load(self) -> ConfigSnapshot:
        """
        Read and validate the configuration file.

        A missing file yields the default configuration (plus environment
        overrides). The current snapshot is not replaced.

        Raises:
            ConfigLoadError: If the file cannot be read, parsed or validated
        """
        data: Dict[str, Any] = {}
        if self.path.exists():
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    loaded = yaml.safe_load(f)
            except (OSError, yaml.YAMLError) as e:
                raise ConfigLoadError(f"Cannot read {self.path}: {e}") from e

            if loaded is not None and not isinstance(loaded, dict):
                raise ConfigLoadError(f"{self.path} must contain a mapping at the top level")
            data = loaded or {}
        else:
            logger.warning(f"Config file {self.path} not found, using defaults")

        try:
            return ConfigSnapshot.model_validate(apply_env_overrides(data, self.environ))
        except ValidationError as e:
            raise ConfigLoadError(f"Invalid configuration in {self.path}: {e}") from e

    def initialize(self) -> ConfigSnapshot:
        """Load the initial snapshot without notifying subscribers."""
        self._snapshot = self.load()
        self._last_mtime = self._current_mtime()
        enabled = sorted(self._snapshot.active_destinations())
        logger.info(
            f"Loaded configuration from {self.path} "
            f"(active destinations: {', '.join(enabled) or 'none'}, "
            f"recording: {'on' if self._snapshot.recording.enabled else 'off'})"
        )
        return self._snapshot

    def subscribe(self, callback: ConfigCallback) -> Subscription:
        """
        Register a callback invoked with (old, new) after every reload.

        Returns:
            Subscription handle
        """
        subscription = Subscription(self, callback)
        self._subscriptions.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    async def reload(self) -> ConfigSnapshot:
        """
        Reload the configuration and notify subscribers.

        Subscribers are notified even when nothing changed; they treat an
        empty diff as a no-op.

        Returns:
            The new snapshot

        Raises:
            ConfigLoadError: If loading fails (the previous snapshot is kept)
        """
        async with self._reload_lock:
            self._last_mtime = self._current_mtime()
            try:
                new = self.load()
            except ConfigLoadError as e:
                logger.error(f"Config reload failed, keeping previous configuration: {e}")
                raise

            old = self._snapshot
            self._snapshot = new
            logger.info(f"Configuration reloaded from {self.path}")
            await self._notify(old, new)
            return new

    async def watch(self) -> None:
        """Poll the file's modification time and reload on change."""
        logger.info(f"Watching {self.path} for changes (interval: {self.poll_interval}s)")

        while True:
            try:
                await asyncio.sleep(self.poll_interval)
                mtime = self._current_mtime()
                if mtime != self._last_mtime:
                    logger.info(f"Detected change in {self.path}")
                    await self.reload()
            except asyncio.CancelledError:
                logger.info("Config watcher cancelled")
                break
            except ConfigLoadError:
                # Already logged by reload(); retried on the next modification
                continue
            except Exception as e:
                logger.error(f"Error in config watcher: {e}", exc_info=True)

    def start(self) -> None:
        """Start the background watcher task."""
        if self._watch_task is None or self._watch_task.done():
            self._watch_task = asyncio.create_task(self.watch())

    async def stop(self) -> None:
        """Stop the background watcher task."""
        if self._watch_task is not None:
            self._watch_task.cancel()
            try:
                await self._watch_task
            except asyncio.CancelledError:
                pass
            self._watch_task = None

    async def _notify(self, old: ConfigSnapshot, new: ConfigSnapshot) -> None:
        for subscription in list(self._subscriptions):
            if not subscription.active:
                continue
            try:
                result = subscription.callback(old, new)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Config subscriber failed: {e}", exc_info=True)

    def _current_mtime(self) -> Optional[float]:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None
