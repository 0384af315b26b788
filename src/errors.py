"""
Reconcile errors.

Every error raised out of a reconciliation is retryable: the controller
logs it and schedules the key again with backoff. Not-found conditions are
absorbed by the control plane client and never surface here.
"""


class ReconcileError(Exception):
    """Base class for errors that abort a reconciliation cycle."""

    retryable = True

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidSourceError(ReconcileError):
    """The SopsSecret document does not match the expected schema."""


class ControlPlaneError(ReconcileError):
    """A read against the Kubernetes API failed."""


class PersistError(ControlPlaneError):
    """A create, update or delete failed for a reason other than not-found."""


class ConflictError(PersistError):
    """A conditional write was rejected because the object changed underneath."""


class DecryptError(ReconcileError):
    """The decrypt capability failed on the ciphertext."""


class MalformedCiphertextError(ReconcileError):
    """Decryption succeeded but the plaintext is not a flat string mapping."""
