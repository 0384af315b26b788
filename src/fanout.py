"""
Namespace Fan-out - reconciles one SopsSecret into one target namespace.

This is the only code path that creates or updates generated Secrets.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from decrypt import YAML_FORMAT, Decryptor, decode_plaintext
from drift import compute_checksums, desired_annotations, desired_labels, is_converged
from errors import DecryptError, MalformedCiphertextError
from models import GeneratedObject, ObjectKey, SourceObject
from ownership import OwnerRef

logger = logging.getLogger(__name__)


class NamespaceAction(Enum):
    """What happened to the Secret in one target namespace."""

    SKIPPED_FOREIGN = "skipped-foreign"
    UNCHANGED = "unchanged"
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    ABSENT = "absent"
    ABANDONED = "abandoned"


@dataclass
class NamespaceResult:
    """Outcome of reconciling a single target namespace."""

    destination: ObjectKey
    action: NamespaceAction
    requeue: bool = False


class NamespaceFanout:
    """Converges the generated Secret at one destination."""

    def __init__(self, control_plane, decryptor: Decryptor):
        self.control_plane = control_plane
        self.decryptor = decryptor

    async def reconcile_namespace(
        self,
        source: SourceObject,
        destination: ObjectKey,
        finalizers_enabled: bool,
    ) -> NamespaceResult:
        """
        Reconcile the Secret at ``destination`` for ``source``.

        A Secret that exists without this source's ownership label is never
        touched. While the source is being deleted the owned Secret is
        removed instead; clearing the finalizer is left to the caller once
        every namespace has been cleaned up.

        Raises:
            ReconcileError: On decrypt, decode or control plane failures.
        """
        owner = OwnerRef.for_source(source)
        existing = await self.control_plane.get_secret(destination)

        if existing is not None and not owner.owns(existing.labels):
            logger.info(
                f"Secret {destination} is not owned by {source.key}, leaving it alone"
            )
            return NamespaceResult(destination, NamespaceAction.SKIPPED_FOREIGN)

        if source.is_deleting:
            return await self._cleanup(source, destination, existing, finalizers_enabled)

        return await self._converge(source, destination, existing, owner)

    async def _cleanup(
        self,
        source: SourceObject,
        destination: ObjectKey,
        existing: Optional[GeneratedObject],
        finalizers_enabled: bool,
    ) -> NamespaceResult:
        if not source.has_finalizer():
            return NamespaceResult(destination, NamespaceAction.ABSENT)
        if existing is None:
            return NamespaceResult(destination, NamespaceAction.ABSENT)
        if not finalizers_enabled:
            return NamespaceResult(destination, NamespaceAction.ABANDONED)

        deleted = await self.control_plane.delete_secret(destination)
        if deleted:
            logger.info(f"Deleted Secret {destination} owned by {source.key}")
            return NamespaceResult(destination, NamespaceAction.DELETED)
        return NamespaceResult(destination, NamespaceAction.ABSENT)

    async def _converge(
        self,
        source: SourceObject,
        destination: ObjectKey,
        existing: Optional[GeneratedObject],
        owner: OwnerRef,
    ) -> NamespaceResult:
        current_data = existing.data if existing is not None else None
        checksums = compute_checksums(current_data, source.data)
        labels = desired_labels(source.template.labels, owner)
        annotations = desired_annotations(source.template.annotations, checksums)

        if is_converged(existing, checksums, labels, annotations):
            logger.debug(f"Secret {destination} matches {source.key}, skipping")
            return NamespaceResult(destination, NamespaceAction.UNCHANGED)

        data = await self._decrypt(source)

        # Keys managed by someone else keep their live value
        if existing is not None:
            for key in source.ignored_keys:
                if key in existing.data:
                    data[key] = existing.data[key]

        # Checksum what is actually written so the next cycle sees no drift
        checksums = compute_checksums(data, source.data)
        annotations = desired_annotations(source.template.annotations, checksums)

        generated = GeneratedObject(
            name=destination.name,
            namespace=destination.namespace,
            type=source.type,
            data=data,
            labels=labels,
            annotations=annotations,
        )
        outcome = await self.control_plane.upsert_secret(generated, existing)
        logger.info(f"Secret {destination} {outcome} from {source.key}")
        action = NamespaceAction.CREATED if outcome == "created" else NamespaceAction.UPDATED
        return NamespaceResult(destination, action)

    async def _decrypt(self, source: SourceObject) -> Dict[str, bytes]:
        try:
            plaintext = await self.decryptor.decrypt(
                source.data.encode("utf-8"), YAML_FORMAT
            )
        except DecryptError as e:
            logger.error(f"Failed to decrypt data of {source.key}: {e.message}")
            raise

        try:
            strings = decode_plaintext(plaintext)
        except MalformedCiphertextError as e:
            logger.error(f"Decrypted data of {source.key} is malformed: {e.message}")
            raise
        return {key: value.encode("utf-8") for key, value in strings.items()}
