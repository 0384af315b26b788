"""Pytest configuration and fixtures."""

import copy
from typing import Dict, List, Optional, Set

import pytest

import config
from decrypt import Decryptor
from errors import ConflictError, DecryptError, PersistError
from models import (
    API_VERSION,
    DELETION_FINALIZER,
    KIND,
    GeneratedObject,
    ObjectKey,
    SourceObject,
)


class FakeControlPlane:
    """In-memory stand-in for ControlPlane with optimistic concurrency."""

    def __init__(self):
        self.sources: Dict[ObjectKey, dict] = {}
        self.secrets: Dict[ObjectKey, GeneratedObject] = {}
        self.fail_deletes: Set[ObjectKey] = set()
        self.fail_source_update = False
        self.writes: List[tuple] = []
        self._version = 0

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)

    # Seeding helpers

    def add_source(self, body: dict) -> ObjectKey:
        body = copy.deepcopy(body)
        metadata = body["metadata"]
        metadata["resourceVersion"] = self._next_version()
        key = ObjectKey(metadata["name"], metadata["namespace"])
        self.sources[key] = body
        return key

    def mark_deleted(self, key: ObjectKey) -> None:
        """Simulate a delete request: set the timestamp, or erase when no finalizers."""
        body = self.sources[key]
        if not body["metadata"].get("finalizers"):
            del self.sources[key]
            return
        body["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
        body["metadata"]["resourceVersion"] = self._next_version()

    def add_secret(self, obj: GeneratedObject) -> None:
        obj = copy.deepcopy(obj)
        obj.resource_version = self._next_version()
        self.secrets[obj.key] = obj

    # ControlPlane interface

    async def get_source(self, key: ObjectKey) -> Optional[SourceObject]:
        body = self.sources.get(key)
        if body is None:
            return None
        return SourceObject.from_dict(copy.deepcopy(body))

    async def update_source(self, source: SourceObject) -> SourceObject:
        if self.fail_source_update:
            raise PersistError(f"failed to update SopsSecret {source.key}: 500")
        current = self.sources.get(source.key)
        if current is None or current["metadata"]["resourceVersion"] != source.resource_version:
            raise ConflictError(f"conflict while trying to update SopsSecret {source.key}")

        body = source.to_dict()
        self.writes.append(("update_source", source.key))
        if body["metadata"].get("deletionTimestamp") and not body["metadata"]["finalizers"]:
            del self.sources[source.key]
            return source

        body["metadata"]["resourceVersion"] = self._next_version()
        self.sources[source.key] = body
        source.resource_version = body["metadata"]["resourceVersion"]
        return source

    async def get_secret(self, key: ObjectKey) -> Optional[GeneratedObject]:
        return copy.deepcopy(self.secrets.get(key))

    async def list_secrets(self, label_selector: str) -> List[GeneratedObject]:
        label, _, value = label_selector.partition("=")
        return [
            copy.deepcopy(secret)
            for secret in self.secrets.values()
            if secret.labels.get(label) == value
        ]

    async def upsert_secret(
        self, obj: GeneratedObject, existing: Optional[GeneratedObject]
    ) -> str:
        obj = copy.deepcopy(obj)
        if existing is None:
            if obj.key in self.secrets:
                raise ConflictError(f"conflict while trying to create Secret {obj.key}")
            obj.resource_version = self._next_version()
            self.secrets[obj.key] = obj
            self.writes.append(("create_secret", obj.key))
            return "created"

        current = self.secrets.get(obj.key)
        if current is None or current.resource_version != existing.resource_version:
            raise ConflictError(f"conflict while trying to update Secret {obj.key}")
        obj.resource_version = self._next_version()
        self.secrets[obj.key] = obj
        self.writes.append(("replace_secret", obj.key))
        return "updated"

    async def delete_secret(self, key: ObjectKey) -> bool:
        if key in self.fail_deletes:
            raise PersistError(f"failed to delete Secret {key}: 500 Internal Server Error")
        if key not in self.secrets:
            return False
        del self.secrets[key]
        self.writes.append(("delete_secret", key))
        return True

    def secret_writes(self) -> List[tuple]:
        return [w for w in self.writes if w[0] != "update_source"]


class FakeDecryptor(Decryptor):
    """Decryptor returning the ciphertext (or a mapped plaintext) as-is."""

    def __init__(self, plaintexts: Optional[Dict[str, bytes]] = None):
        self.plaintexts = plaintexts or {}
        self.calls = 0
        self.error: Optional[Exception] = None

    async def decrypt(self, ciphertext: bytes, fmt: str) -> bytes:
        self.calls += 1
        if self.error is not None:
            raise self.error
        text = ciphertext.decode("utf-8")
        if text in self.plaintexts:
            return self.plaintexts[text]
        if text.startswith("ENC["):
            raise DecryptError("failed to decrypt file: no key could decrypt the data")
        return ciphertext


def make_source_body(
    name: str = "app",
    namespace: str = "ns1",
    data: str = "password: hunter2\n",
    template: Optional[dict] = None,
    ignored_keys: Optional[List[str]] = None,
    skip_finalizers: bool = False,
    finalizers: Optional[List[str]] = None,
    secret_type: Optional[str] = None,
) -> dict:
    """Build a SopsSecret custom object body."""
    body = {
        "apiVersion": API_VERSION,
        "kind": KIND,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "finalizers": list(finalizers or []),
        },
        "spec": {
            "template": template or {},
            "ignoredKeys": list(ignored_keys or []),
            "skipFinalizers": skip_finalizers,
        },
        "data": data,
    }
    if secret_type:
        body["type"] = secret_type
    return body


@pytest.fixture(autouse=True)
def clean_config(monkeypatch):
    """Isolate tests from the operator's environment and config singleton."""
    for var in ("DISABLE_FINALIZERS", "PASSPHRASE", "WATCH_NAMESPACE"):
        monkeypatch.delenv(var, raising=False)
    config.reset_config()
    yield
    config.reset_config()


@pytest.fixture
def control_plane():
    """Create an in-memory control plane."""
    return FakeControlPlane()


@pytest.fixture
def decryptor():
    """Create a pass-through decryptor."""
    return FakeDecryptor()


@pytest.fixture
def sample_source_body():
    """SopsSecret ``app`` in ``ns1`` with the finalizer already present."""
    return make_source_body(finalizers=[DELETION_FINALIZER])
