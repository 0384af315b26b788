"""
Decrypt Capability - turns SopsSecret ciphertext into plaintext.

The reconciler depends only on the ``Decryptor`` interface; ``SopsDecryptor``
shells out to the ``sops`` binary, which picks up whatever key material
(gpg, age, cloud KMS) the operator's environment provides.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict

import yaml

from errors import DecryptError, MalformedCiphertextError

logger = logging.getLogger(__name__)

YAML_FORMAT = "yaml"


class Decryptor(ABC):
    """Single-operation capability: ciphertext + format -> plaintext."""

    @abstractmethod
    async def decrypt(self, ciphertext: bytes, fmt: str) -> bytes:
        """
        Decrypt a document.

        Raises:
            DecryptError: If the ciphertext cannot be decrypted.
        """
        pass


class SopsDecryptor(Decryptor):
    """Decrypts by piping the document through ``sops --decrypt``."""

    def __init__(self, sops_binary: str = "sops"):
        self.sops_binary = sops_binary

    async def decrypt(self, ciphertext: bytes, fmt: str) -> bytes:
        args = [
            "--decrypt",
            "--input-type",
            fmt,
            "--output-type",
            fmt,
            "/dev/stdin",
        ]
        try:
            process = await asyncio.create_subprocess_exec(
                self.sops_binary,
                *args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise DecryptError(f"failed to run {self.sops_binary}: {e}") from e

        try:
            stdout, stderr = await process.communicate(input=ciphertext)
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        if process.returncode != 0:
            raise DecryptError(
                f"failed to decrypt file: {stderr.decode('utf-8', errors='replace').strip()}"
            )
        return stdout


def decode_plaintext(plaintext: bytes) -> Dict[str, str]:
    """
    Parse decrypted YAML into a flat string mapping.

    Scalars are kept exactly as written (no int, bool or date coercion, so
    ``0123`` stays ``"0123"``); nested mappings or lists are rejected.

    Raises:
        MalformedCiphertextError: If the plaintext is not a flat mapping.
    """
    try:
        document = yaml.load(plaintext, Loader=yaml.BaseLoader)
    except yaml.YAMLError as e:
        raise MalformedCiphertextError(f"failed to unmarshal decrypted data: {e}") from e

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise MalformedCiphertextError(
            f"decrypted data must be a mapping, got {type(document).__name__}"
        )

    result: Dict[str, str] = {}
    for key, value in document.items():
        if isinstance(value, (dict, list)):
            raise MalformedCiphertextError(f"decrypted key {key!r} is not a scalar")
        result[key] = value
    return result
