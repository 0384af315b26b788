"""
Drift Detector - content fingerprints for steady-state skip decisions.

Two checksums are stored on every generated Secret: one over its data and
one over the SopsSecret ciphertext. Either one changing, or the desired
labels or annotations changing, forces a rewrite.
"""

import base64
import hashlib
import json
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from models import (
    SECRET_CHECKSUM_ANNOTATION,
    SOPS_CHECKSUM_ANNOTATION,
    GeneratedObject,
)
from ownership import OwnerRef


@dataclass(frozen=True)
class Checksums:
    """Fingerprints of a generated Secret's data and its ciphertext."""

    secret: str
    sops: str


def hash_item(data: bytes) -> str:
    """Hex SHA-1 of the given bytes. Used for change detection only."""
    return hashlib.sha1(data, usedforsecurity=False).hexdigest()


def serialize_data(data: Optional[Mapping[str, bytes]]) -> bytes:
    """
    Canonical serialization of Secret data.

    Keys are sorted and values base64 encoded. A missing data map and an
    empty one serialize identically so an empty Secret stays converged.
    """
    encoded = {
        key: base64.b64encode(value).decode("ascii")
        for key, value in (data or {}).items()
    }
    return json.dumps(encoded, sort_keys=True, separators=(",", ":")).encode("utf-8")


def compute_checksums(
    secret_data: Optional[Mapping[str, bytes]], ciphertext: str
) -> Checksums:
    return Checksums(
        secret=hash_item(serialize_data(secret_data)),
        sops=hash_item(ciphertext.encode("utf-8")),
    )


def desired_labels(template_labels: Mapping[str, str], owner: OwnerRef) -> Dict[str, str]:
    labels = dict(template_labels or {})
    labels.update(owner.labels())
    return labels


def desired_annotations(
    template_annotations: Mapping[str, str], checksums: Checksums
) -> Dict[str, str]:
    annotations = dict(template_annotations or {})
    annotations[SECRET_CHECKSUM_ANNOTATION] = checksums.secret
    annotations[SOPS_CHECKSUM_ANNOTATION] = checksums.sops
    return annotations


def is_converged(
    existing: Optional[GeneratedObject],
    checksums: Checksums,
    labels: Mapping[str, str],
    annotations: Mapping[str, str],
) -> bool:
    """True when the live Secret already matches what would be written."""
    if existing is None:
        return False

    current_annotations = dict(existing.annotations or {})
    stored_secret = current_annotations.get(SECRET_CHECKSUM_ANNOTATION)
    stored_sops = current_annotations.get(SOPS_CHECKSUM_ANNOTATION)
    if stored_secret is None or stored_sops is None:
        return False
    if stored_secret != checksums.secret or stored_sops != checksums.sops:
        return False

    return dict(existing.labels or {}) == dict(labels) and current_annotations == dict(
        annotations
    )
