"""
Control Plane Client - typed access to the Kubernetes API.

Wraps the blocking ``kubernetes`` client so reconcilers can await every
call. Not-found reads return None and not-found deletes return False;
every other API failure is translated into the reconcile error taxonomy.
"""

import asyncio
import base64
import logging
from typing import Any, List, Optional

from kubernetes import client, config
from kubernetes.client import ApiException

from errors import ConflictError, ControlPlaneError, PersistError
from models import (
    DEFAULT_SECRET_TYPE,
    GROUP,
    PLURAL,
    VERSION,
    GeneratedObject,
    ObjectKey,
    SourceObject,
)

logger = logging.getLogger(__name__)


def load_kube_config() -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded Kubernetes configuration from kubeconfig")


def secret_from_api(secret: client.V1Secret) -> GeneratedObject:
    """Convert a V1Secret into a GeneratedObject with raw byte values."""
    metadata = secret.metadata
    data = {
        key: base64.b64decode(value) if value else b""
        for key, value in (secret.data or {}).items()
    }
    return GeneratedObject(
        name=metadata.name,
        namespace=metadata.namespace,
        type=secret.type or DEFAULT_SECRET_TYPE,
        data=data,
        labels=dict(metadata.labels or {}),
        annotations=dict(metadata.annotations or {}),
        resource_version=metadata.resource_version,
    )


def secret_to_api(obj: GeneratedObject) -> client.V1Secret:
    return client.V1Secret(
        api_version="v1",
        kind="Secret",
        metadata=client.V1ObjectMeta(
            name=obj.name,
            namespace=obj.namespace,
            labels=dict(obj.labels),
            annotations=dict(obj.annotations),
            resource_version=obj.resource_version,
        ),
        type=obj.type,
        data={
            key: base64.b64encode(value).decode("ascii")
            for key, value in obj.data.items()
        },
    )


def _write_error(e: ApiException, action: str, target: Any) -> PersistError:
    if e.status == 409:
        return ConflictError(f"conflict while trying to {action} {target}: {e.reason}")
    return PersistError(f"failed to {action} {target}: {e.status} {e.reason}")


class ControlPlane:
    """Reads and writes SopsSecrets and Secrets through the Kubernetes API."""

    def __init__(
        self,
        core_api: Optional[client.CoreV1Api] = None,
        custom_api: Optional[client.CustomObjectsApi] = None,
    ):
        self.core_api = core_api
        self.custom_api = custom_api

    def connect(self) -> None:
        """Load cluster credentials and build the API clients."""
        if self.core_api is None or self.custom_api is None:
            load_kube_config()
        if self.core_api is None:
            self.core_api = client.CoreV1Api()
        if self.custom_api is None:
            self.custom_api = client.CustomObjectsApi()

    def _ensure_connected(self) -> None:
        if self.core_api is None or self.custom_api is None:
            raise RuntimeError(
                "Control plane not connected. Call connect() before performing operations."
            )

    async def _call(self, fn, *args, **kwargs):
        return await asyncio.to_thread(fn, *args, **kwargs)

    # ==================== SopsSecret Methods ====================

    async def get_source(self, key: ObjectKey) -> Optional[SourceObject]:
        """Fetch a SopsSecret; None if it does not exist."""
        self._ensure_connected()
        try:
            body = await self._call(
                self.custom_api.get_namespaced_custom_object,
                group=GROUP,
                version=VERSION,
                namespace=key.namespace,
                plural=PLURAL,
                name=key.name,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise ControlPlaneError(
                f"failed to get SopsSecret {key}: {e.status} {e.reason}"
            ) from e
        return SourceObject.from_dict(body)

    async def update_source(self, source: SourceObject) -> SourceObject:
        """
        Replace a SopsSecret, conditional on its resourceVersion.

        The in-memory object picks up the new resourceVersion so later
        writes in the same cycle are not rejected as stale.
        """
        self._ensure_connected()
        try:
            body = await self._call(
                self.custom_api.replace_namespaced_custom_object,
                group=GROUP,
                version=VERSION,
                namespace=source.namespace,
                plural=PLURAL,
                name=source.name,
                body=source.to_dict(),
            )
        except ApiException as e:
            raise _write_error(e, "update SopsSecret", source.key) from e
        metadata = (body or {}).get("metadata") or {}
        source.resource_version = metadata.get("resourceVersion", source.resource_version)
        return source

    # ==================== Secret Methods ====================

    async def get_secret(self, key: ObjectKey) -> Optional[GeneratedObject]:
        """Fetch a Secret; None if it does not exist."""
        self._ensure_connected()
        try:
            secret = await self._call(
                self.core_api.read_namespaced_secret,
                name=key.name,
                namespace=key.namespace,
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise ControlPlaneError(
                f"failed to get Secret {key}: {e.status} {e.reason}"
            ) from e
        return secret_from_api(secret)

    async def list_secrets(self, label_selector: str) -> List[GeneratedObject]:
        """List Secrets matching a label selector across all namespaces."""
        self._ensure_connected()
        try:
            secret_list = await self._call(
                self.core_api.list_secret_for_all_namespaces,
                label_selector=label_selector,
            )
        except ApiException as e:
            raise ControlPlaneError(
                f"failed to list Secrets ({label_selector}): {e.status} {e.reason}"
            ) from e
        return [secret_from_api(item) for item in secret_list.items or []]

    async def create_secret(self, obj: GeneratedObject) -> GeneratedObject:
        self._ensure_connected()
        body = secret_to_api(obj)
        body.metadata.resource_version = None
        try:
            created = await self._call(
                self.core_api.create_namespaced_secret,
                namespace=obj.namespace,
                body=body,
            )
        except ApiException as e:
            raise _write_error(e, "create Secret", obj.key) from e
        return secret_from_api(created)

    async def replace_secret(self, obj: GeneratedObject) -> GeneratedObject:
        """Replace a Secret, conditional on obj.resource_version."""
        self._ensure_connected()
        try:
            replaced = await self._call(
                self.core_api.replace_namespaced_secret,
                name=obj.name,
                namespace=obj.namespace,
                body=secret_to_api(obj),
            )
        except ApiException as e:
            if e.status == 404:
                raise ConflictError(f"Secret {obj.key} disappeared before update") from e
            raise _write_error(e, "update Secret", obj.key) from e
        return secret_from_api(replaced)

    async def upsert_secret(
        self, obj: GeneratedObject, existing: Optional[GeneratedObject]
    ) -> str:
        """
        Create the Secret if absent, else update it in place.

        Returns:
            "created" or "updated".
        """
        if existing is None:
            await self.create_secret(obj)
            return "created"
        obj.resource_version = existing.resource_version
        await self.replace_secret(obj)
        return "updated"

    async def delete_secret(self, key: ObjectKey) -> bool:
        """Delete a Secret. Returns False if it was already gone."""
        self._ensure_connected()
        try:
            await self._call(
                self.core_api.delete_namespaced_secret,
                name=key.name,
                namespace=key.namespace,
            )
        except ApiException as e:
            if e.status == 404:
                return False
            raise _write_error(e, "delete Secret", key) from e
        return True
