"""
Watch Handlers - feed kopf watch events into the controller work queue.

kopf owns watching, re-listing and peering. The handlers only translate
events into SopsSecret keys; all decisions happen in the reconciler.
"""

import logging
from typing import Any, Dict, List, Optional

import kopf

from controller import Controller
from models import GROUP, OWNERSHIP_LABEL, PLURAL, VERSION, ObjectKey
from ownership import requests_for_labels

logger = logging.getLogger(__name__)


def source_event_key(
    event: Dict[str, Any], name: Optional[str], namespace: Optional[str]
) -> Optional[ObjectKey]:
    """
    Key to reconcile for a SopsSecret event, or None.

    Deletion events are dropped: the finalizer guarantees the deletion
    timestamp shows up as a modification first, and a fully removed
    object has nothing left to reconcile.
    """
    if event.get("type") == "DELETED":
        return None
    if not name or not namespace:
        return None
    return ObjectKey(name, namespace)


def enqueue_source_event(
    controller: Controller,
    event: Dict[str, Any],
    name: Optional[str],
    namespace: Optional[str],
) -> Optional[ObjectKey]:
    key = source_event_key(event, name, namespace)
    if key is not None:
        controller.enqueue(key)
    return key


def enqueue_owner(controller: Controller, labels: Optional[Dict[str, str]]) -> List[ObjectKey]:
    """Enqueue the SopsSecret owning a changed Secret, if any."""
    keys = requests_for_labels(labels)
    for key in keys:
        controller.enqueue(key)
    return keys


def register_handlers(controller: Controller) -> kopf.OperatorRegistry:
    """Build a kopf registry whose handlers enqueue into ``controller``."""
    registry = kopf.OperatorRegistry()

    @kopf.on.event(GROUP, VERSION, PLURAL, registry=registry)
    async def on_sops_secret_event(event, name, namespace, **_):
        enqueue_source_event(controller, event, name, namespace)

    @kopf.on.event(
        "v1",
        "secrets",
        labels={OWNERSHIP_LABEL: kopf.PRESENT},
        registry=registry,
    )
    async def on_secret_event(labels, **_):
        enqueue_owner(controller, labels)

    logger.info(f"Registered watch handlers for {PLURAL}.{GROUP} and owned Secrets")
    return registry
