"""
SopsSecret Reconciler - drives one SopsSecret to convergence per call.

Each call re-reads the SopsSecret and every Secret it touches; nothing is
cached between cycles. Errors propagate to the caller, which owns retry
and backoff.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from decrypt import Decryptor
from fanout import NamespaceFanout, NamespaceResult
from finalizers import (
    DeletionCoordinator,
    FinalizerPolicy,
    FinalizerTransition,
    next_transition,
)
from models import ObjectKey, SourceObject
from ownership import OwnerRef

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """Result from a single reconcile() call."""

    success: bool = False
    message: str = ""
    requeue: bool = False
    namespaces: List[NamespaceResult] = field(default_factory=list)
    garbage_collected: int = 0


class Reconciler:
    """
    Reconciles SopsSecrets into generated Secrets.

    Order within a cycle: garbage-collect Secrets outside the target set,
    settle the finalizer, then fan out to every target namespace.
    """

    def __init__(
        self,
        control_plane,
        decryptor: Decryptor,
        finalizer_policy: Optional[FinalizerPolicy] = None,
    ):
        self.control_plane = control_plane
        self.finalizer_policy = finalizer_policy or FinalizerPolicy()
        self.fanout = NamespaceFanout(control_plane, decryptor)
        self.coordinator = DeletionCoordinator(control_plane)

    async def reconcile(self, key: ObjectKey) -> ReconcileResult:
        """
        Reconcile the SopsSecret identified by ``key``.

        Returns:
            ReconcileResult; ``requeue`` asks for another cycle right away.

        Raises:
            ReconcileError: The first failure; later namespaces are not
                attempted and are picked up on the retry.
        """
        source = await self.control_plane.get_source(key)
        if source is None:
            logger.debug(f"SopsSecret {key} not found, nothing to do")
            return ReconcileResult(success=True, message="not found")

        # Unset and empty both mean the SopsSecret's own namespace
        if not source.template.namespaces:
            source.template.namespaces = [source.namespace]

        finalizers_enabled = self.finalizer_policy.finalizers_enabled(source)

        # Abandoning on purpose: no child is deleted once finalizers are off
        collected = 0
        if finalizers_enabled or not source.is_deleting:
            collected = await self._collect_garbage(source)

        transition = next_transition(source, finalizers_enabled)
        if transition is FinalizerTransition.ADD_FINALIZER:
            await self.coordinator.add_finalizer(source)
            return ReconcileResult(
                success=True,
                message="finalizer added",
                requeue=True,
                garbage_collected=collected,
            )
        if transition is FinalizerTransition.REMOVE_FINALIZER:
            await self.coordinator.release(source, "finalizers disabled")
            return ReconcileResult(
                success=True,
                message="finalizer removed",
                garbage_collected=collected,
            )

        result = ReconcileResult(success=True, garbage_collected=collected)
        for namespace in source.template.namespaces:
            destination = ObjectKey(source.target_name, namespace)
            namespace_result = await self.fanout.reconcile_namespace(
                source, destination, finalizers_enabled
            )
            result.namespaces.append(namespace_result)
            if namespace_result.requeue:
                result.requeue = True

        if transition is FinalizerTransition.CLEANUP:
            await self.coordinator.release(source, "generated Secrets cleaned up")
            result.message = "deleted"
        else:
            result.message = "reconciled"

        return result

    async def _collect_garbage(self, source: SourceObject) -> int:
        """
        Delete owned Secrets that are no longer wanted.

        A Secret is stale when its namespace left the target list, or when
        the template was renamed and it still carries the old name.
        """
        owner = OwnerRef.for_source(source)
        targets = set(source.template.namespaces)
        collected = 0

        for secret in await self.control_plane.list_secrets(owner.selector()):
            if not owner.owns(secret.labels):
                continue
            if secret.namespace in targets and secret.name == source.target_name:
                continue
            if await self.control_plane.delete_secret(secret.key):
                logger.info(f"Garbage collected Secret {secret.key} of {source.key}")
                collected += 1
        return collected
