"""
Configuration reconciliation.

Diffs two immutable configuration snapshots into the minimal set of
destinations to stop and start, then applies that plan to every live
session. A destination whose configuration did not change is never touched.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import FrozenSet

from stream_fanout.config import RECORDING, ConfigSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationPlan:
    """Destinations to stop and (re)start. A restart appears in both sets."""

    to_stop: FrozenSet[str] = frozenset()
    to_start: FrozenSet[str] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not self.to_stop and not self.to_start

    @property
    def restarts(self) -> FrozenSet[str]:
        return self.to_stop & self.to_start


def _classify(
    destination_id: str,
    was_active: bool,
    is_active: bool,
    changed: bool,
    to_stop: set,
    to_start: set,
) -> None:
    if was_active and not is_active:
        to_stop.add(destination_id)
    elif is_active and not was_active:
        to_start.add(destination_id)
    elif was_active and is_active and changed:
        to_stop.add(destination_id)
        to_start.add(destination_id)


def compute_plan(old: ConfigSnapshot, new: ConfigSnapshot) -> ReconciliationPlan:
    """
    Compute which destinations must be stopped and/or started.

    Args:
        old: Previously applied snapshot
        new: Newly loaded snapshot

    Returns:
        ReconciliationPlan (identical for every session)
    """
    to_stop: set = set()
    to_start: set = set()

    for destination_id in sorted(set(old.platforms) | set(new.platforms)):
        before = old.platforms.get(destination_id)
        after = new.platforms.get(destination_id)
        was_active = before is not None and before.is_active
        is_active = after is not None and after.is_active
        _classify(destination_id, was_active, is_active, before != after, to_stop, to_start)

    # Directory or format changes restart the recording into the new location
    _classify(
        RECORDING,
        old.recording.is_active,
        new.recording.is_active,
        old.recording != new.recording,
        to_stop,
        to_start,
    )

    return ReconciliationPlan(to_stop=frozenset(to_stop), to_start=frozenset(to_start))


class Reconciler:
    """Applies configuration changes to every live session."""

    def __init__(self, registry):
        """
        Initialize reconciler.

        Args:
            registry: SessionRegistry holding the live sessions
        """
        self.registry = registry

    def attach(self, config_provider):
        """
        Subscribe to configuration changes.

        Returns:
            Subscription handle (call ``cancel()`` to detach)
        """
        return config_provider.subscribe(self.on_config_changed)

    async def on_config_changed(self, old: ConfigSnapshot, new: ConfigSnapshot) -> ReconciliationPlan:
        """
        Reconcile all live sessions against a new snapshot.

        Args:
            old: Previous snapshot
            new: New snapshot

        Returns:
            The plan that was applied
        """
        plan = compute_plan(old, new)
        if plan.is_empty:
            logger.info("Configuration reloaded, no destination changes")
            return plan

        logger.info(
            f"Configuration changed: stop={sorted(plan.to_stop)} start={sorted(plan.to_start)}"
        )

        session_keys = self.registry.session_keys()
        if not session_keys:
            return plan

        results = await asyncio.gather(
            *(
                self.registry.apply_reconciliation(key, plan.to_stop, plan.to_start, new)
                for key in session_keys
            ),
            return_exceptions=True,
        )
        for key, result in zip(session_keys, results):
            if isinstance(result, Exception):
                logger.error(f"Reconciliation failed for session {key}: {result}", exc_info=result)

        return plan
