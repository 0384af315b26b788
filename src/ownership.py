"""
Ownership Resolver - label-encoded back reference from Secret to SopsSecret.

Generated Secrets carry ``secrets.dhouti.dev/owned-by-controller`` with the
value ``{name}.{namespace}`` of the owning SopsSecret. A label is used
instead of an ownerReference so that removing the CRD does not garbage
collect every generated Secret along with it.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from models import OWNERSHIP_LABEL, ObjectKey, SourceObject

logger = logging.getLogger(__name__)

SEPARATOR = "."


@dataclass(frozen=True)
class OwnerRef:
    """Identity of the SopsSecret owning a generated Secret."""

    name: str
    namespace: str

    @classmethod
    def for_source(cls, source: SourceObject) -> "OwnerRef":
        return cls(source.name, source.namespace)

    def encode(self) -> str:
        return f"{self.name}{SEPARATOR}{self.namespace}"

    @classmethod
    def decode(cls, value: Optional[str]) -> Optional["OwnerRef"]:
        """
        Decode a label value, or None if it is malformed.

        Namespaces never contain the separator, so the last one splits the
        value; names such as ``db.creds`` keep their dots.
        """
        if not value:
            return None
        name, sep, namespace = value.rpartition(SEPARATOR)
        if not sep or not name or not namespace:
            return None
        return cls(name, namespace)

    def to_key(self) -> ObjectKey:
        return ObjectKey(self.name, self.namespace)

    def labels(self) -> Dict[str, str]:
        return {OWNERSHIP_LABEL: self.encode()}

    def selector(self) -> str:
        """Label selector matching every Secret owned by this source."""
        return f"{OWNERSHIP_LABEL}={self.encode()}"

    def owns(self, labels: Optional[Dict[str, str]]) -> bool:
        """True if the labels carry exactly this owner's encoded value."""
        return (labels or {}).get(OWNERSHIP_LABEL) == self.encode()


def has_ownership_label(labels: Optional[Dict[str, str]]) -> bool:
    return OWNERSHIP_LABEL in (labels or {})


def requests_for_labels(labels: Optional[Dict[str, str]]) -> List[ObjectKey]:
    """
    Map a Secret's labels to the SopsSecret that should be reconciled.

    Secrets without the ownership label, or with a malformed value, never
    trigger a reconciliation.
    """
    if not has_ownership_label(labels):
        return []
    value = labels[OWNERSHIP_LABEL]
    owner = OwnerRef.decode(value)
    if owner is None:
        logger.debug(f"Ignoring malformed ownership label value {value!r}")
        return []
    return [owner.to_key()]
