"""
Deletion Coordinator - finalizer state machine for SopsSecrets.

The finalizer is added before any Secret is generated and removed only
once every generated Secret is gone, so a SopsSecret never disappears from
the control plane while its Secrets are left behind. Disabling finalizers
(globally or per object) is the one way to abandon them on purpose.
"""

import logging
import threading
from enum import Enum
from typing import Optional

from config import env_flag
from models import DELETION_FINALIZER, SourceObject

logger = logging.getLogger(__name__)


class FinalizerState(Enum):
    """Lifecycle of a SopsSecret with respect to the finalizer."""

    NO_FINALIZER = "no-finalizer"
    FINALIZER_PRESENT = "finalizer-present"
    DELETING = "deleting"
    REMOVED = "removed"


class FinalizerTransition(Enum):
    """Write the coordinator wants before fan-out may proceed."""

    NONE = "none"
    ADD_FINALIZER = "add-finalizer"
    REMOVE_FINALIZER = "remove-finalizer"
    CLEANUP = "cleanup"


def finalizer_state(source: SourceObject) -> FinalizerState:
    if source.is_deleting:
        if source.has_finalizer(DELETION_FINALIZER):
            return FinalizerState.DELETING
        return FinalizerState.REMOVED
    if source.has_finalizer(DELETION_FINALIZER):
        return FinalizerState.FINALIZER_PRESENT
    return FinalizerState.NO_FINALIZER


def next_transition(
    source: SourceObject, finalizers_enabled: bool
) -> FinalizerTransition:
    """Decide the finalizer write for this cycle, if any."""
    state = finalizer_state(source)
    if not finalizers_enabled and source.has_finalizer(DELETION_FINALIZER):
        return FinalizerTransition.REMOVE_FINALIZER
    if state is FinalizerState.NO_FINALIZER and finalizers_enabled:
        return FinalizerTransition.ADD_FINALIZER
    if state is FinalizerState.DELETING:
        return FinalizerTransition.CLEANUP
    return FinalizerTransition.NONE


class FinalizerPolicy:
    """
    Resolves whether finalizers are managed for a given SopsSecret.

    The global override is read-mostly: it is loaded once and refreshed
    explicitly, outside the reconcile path. Each reconciliation resolves
    the effective value under the lock and passes it down as a plain bool.
    """

    ENV_VAR = "DISABLE_FINALIZERS"

    def __init__(self, disabled: Optional[bool] = None):
        self._lock = threading.Lock()
        self._disabled = False
        if disabled is None:
            self.refresh()
        else:
            self._disabled = disabled

    @property
    def globally_disabled(self) -> bool:
        with self._lock:
            return self._disabled

    def refresh(self) -> bool:
        """Re-read the environment override. Unparsable values mean enabled."""
        disabled = env_flag(self.ENV_VAR, False)
        with self._lock:
            if disabled != self._disabled:
                logger.info(f"Finalizer management globally disabled: {disabled}")
            self._disabled = disabled
        return disabled

    def finalizers_enabled(self, source: SourceObject) -> bool:
        with self._lock:
            return not (self._disabled or source.skip_finalizers)


class DeletionCoordinator:
    """Persists finalizer transitions through the control plane."""

    def __init__(self, control_plane):
        self.control_plane = control_plane

    async def add_finalizer(self, source: SourceObject) -> SourceObject:
        source.add_finalizer(DELETION_FINALIZER)
        updated = await self.control_plane.update_source(source)
        logger.info(f"Added finalizer to {source.key}")
        return updated

    async def release(self, source: SourceObject, reason: str) -> SourceObject:
        """Remove the finalizer, letting the control plane erase the object."""
        source.remove_finalizer(DELETION_FINALIZER)
        updated = await self.control_plane.update_source(source)
        logger.info(f"Removed finalizer from {source.key}: {reason}")
        return updated
