"""
Resource models for SopsSecrets and the Secrets generated from them.

The Kubernetes API hands back plain dicts for custom objects; these
dataclasses give the reconciler a typed view while keeping the raw body
around so fields the operator does not manage survive an update.
"""

import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from errors import InvalidSourceError
from validation import validate_source

GROUP = "secrets.dhouti.dev"
VERSION = "v1beta1"
KIND = "SopsSecret"
PLURAL = "sopssecrets"
API_VERSION = f"{GROUP}/{VERSION}"

SECRET_CHECKSUM_ANNOTATION = "secrets.dhouti.dev/secretChecksum"
SOPS_CHECKSUM_ANNOTATION = "secrets.dhouti.dev/sopsChecksum"
OWNERSHIP_LABEL = "secrets.dhouti.dev/owned-by-controller"
DELETION_FINALIZER = "secrets.dhouti.dev/garbageCollection"

DEFAULT_SECRET_TYPE = "Opaque"


@dataclass(frozen=True)
class ObjectKey:
    """Namespaced identity of an object in the cluster."""

    name: str
    namespace: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass
class SecretTemplate:
    """Metadata template applied to every generated Secret."""

    name: str = ""
    namespaces: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "SecretTemplate":
        data = data or {}
        return cls(
            name=data.get("name") or "",
            namespaces=list(data.get("namespaces") or []),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
        )


@dataclass
class SourceObject:
    """A SopsSecret as read from the control plane."""

    name: str
    namespace: str
    template: SecretTemplate = field(default_factory=SecretTemplate)
    ignored_keys: List[str] = field(default_factory=list)
    skip_finalizers: bool = False
    data: str = ""
    type: str = DEFAULT_SECRET_TYPE
    deletion_timestamp: Optional[str] = None
    finalizers: List[str] = field(default_factory=list)
    resource_version: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, body: Dict[str, Any]) -> "SourceObject":
        """
        Build a SourceObject from a custom object body.

        Raises:
            InvalidSourceError: If the body does not match the SopsSecret schema.
        """
        is_valid, error = validate_source(body)
        if not is_valid:
            metadata = body.get("metadata") or {}
            raise InvalidSourceError(
                f"invalid {KIND} {metadata.get('namespace')}/{metadata.get('name')}: "
                f"{error}"
            )

        metadata = body["metadata"]
        spec = body.get("spec") or {}
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", ""),
            template=SecretTemplate.from_dict(spec.get("template")),
            ignored_keys=list(spec.get("ignoredKeys") or []),
            skip_finalizers=bool(spec.get("skipFinalizers", False)),
            data=body.get("data") or "",
            type=body.get("type") or DEFAULT_SECRET_TYPE,
            deletion_timestamp=metadata.get("deletionTimestamp"),
            finalizers=list(metadata.get("finalizers") or []),
            resource_version=metadata.get("resourceVersion"),
            raw=copy.deepcopy(body),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Render the body for a replace call, carrying finalizers and version."""
        body = copy.deepcopy(self.raw)
        body.setdefault("apiVersion", API_VERSION)
        body.setdefault("kind", KIND)
        metadata = body.setdefault("metadata", {})
        metadata["name"] = self.name
        metadata["namespace"] = self.namespace
        metadata["finalizers"] = list(self.finalizers)
        if self.resource_version is not None:
            metadata["resourceVersion"] = self.resource_version
        return body

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.name, self.namespace)

    @property
    def is_deleting(self) -> bool:
        return bool(self.deletion_timestamp)

    @property
    def target_name(self) -> str:
        """Name of the generated Secrets, the template name if set."""
        return self.template.name or self.name

    def has_finalizer(self, finalizer: str = DELETION_FINALIZER) -> bool:
        return finalizer in self.finalizers

    def add_finalizer(self, finalizer: str = DELETION_FINALIZER) -> None:
        if finalizer not in self.finalizers:
            self.finalizers.append(finalizer)

    def remove_finalizer(self, finalizer: str = DELETION_FINALIZER) -> None:
        self.finalizers = [f for f in self.finalizers if f != finalizer]


@dataclass
class GeneratedObject:
    """A plaintext Secret produced from a SourceObject."""

    name: str
    namespace: str
    type: str = DEFAULT_SECRET_TYPE
    data: Dict[str, bytes] = field(default_factory=dict, repr=False)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    resource_version: Optional[str] = None

    @property
    def key(self) -> ObjectKey:
        return ObjectKey(self.name, self.namespace)
