#!/usr/bin/env python3
"""
sopsctl - work with SopsSecret manifests on disk.

convert turns a plain Secret manifest into a SopsSecret with sops-encrypted
data; edit decrypts a SopsSecret in place through the sops editor.
"""

import base64
import os
import subprocess
import tempfile
from typing import Any, Dict, List, Tuple

import click
import yaml
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError
from ruamel.yaml.scalarstring import LiteralScalarString
from tabulate import tabulate

from models import API_VERSION, KIND
from validation import is_sops_secret
from version import version_info

SOPS_BINARY = os.getenv("SOPS_BINARY", "sops")


def secret_to_plaintext(secret: Dict[str, Any]) -> Dict[str, str]:
    """Merge a Secret's base64 ``data`` and plain ``stringData`` into one mapping."""
    plaintext: Dict[str, str] = {}
    for key, value in (secret.get("data") or {}).items():
        plaintext[key] = base64.b64decode(value or "").decode("utf-8")
    for key, value in (secret.get("stringData") or {}).items():
        plaintext[key] = value
    return plaintext


def build_sops_secret(secret: Dict[str, Any], encrypted: str) -> Dict[str, Any]:
    """Wrap sops output in a SopsSecret carrying the Secret's metadata."""
    source_meta = secret.get("metadata") or {}
    metadata = {
        key: source_meta[key]
        for key in ("name", "namespace", "labels", "annotations")
        if source_meta.get(key)
    }
    template: Dict[str, Any] = {}
    if source_meta.get("labels"):
        template["labels"] = source_meta["labels"]
    if source_meta.get("annotations"):
        template["annotations"] = source_meta["annotations"]

    document: Dict[str, Any] = {
        "apiVersion": API_VERSION,
        "kind": KIND,
        "metadata": metadata,
        "spec": {"template": template},
    }
    if secret.get("type"):
        document["type"] = secret["type"]
    document["data"] = encrypted
    return document


def run_sops_encrypt(plaintext: Dict[str, str], sops_args: Tuple[str, ...]) -> str:
    """Encrypt a mapping with sops and return the encrypted YAML document."""
    handle, path = tempfile.mkstemp(suffix=".yml")
    try:
        with os.fdopen(handle, "w") as f:
            yaml.safe_dump(plaintext, f, default_flow_style=False)
        command = [SOPS_BINARY, "--encrypt", "--output-type", "yaml", *sops_args, path]
        completed = subprocess.run(command, capture_output=True, text=True)
        if completed.returncode != 0:
            raise click.ClickException(f"sops failed: {completed.stderr.strip()}")
        return completed.stdout
    finally:
        os.unlink(path)


def find_sops_secrets(documents: List[Any]) -> Dict[int, Dict[str, Any]]:
    """Index of SopsSecret documents by their position in the file."""
    return {
        index: document
        for index, document in enumerate(documents)
        if is_sops_secret(document)
    }


def round_trip_yaml() -> YAML:
    """YAML handler that keeps comments, key order and block scalars."""
    rt = YAML()
    rt.preserve_quotes = True
    return rt


def choose_document(found: Dict[int, Dict[str, Any]]) -> int:
    if len(found) == 1:
        return next(iter(found))

    rows = [
        [index, doc["metadata"].get("name"), doc["metadata"].get("namespace", "")]
        for index, doc in found.items()
    ]
    click.echo(f"Found {len(found)} SopsSecret objects:")
    click.echo(tabulate(rows, headers=["INDEX", "NAME", "NAMESPACE"], tablefmt="simple"))
    choice = click.prompt(
        "Enter the index of the SopsSecret you'd like to edit",
        type=click.Choice([str(i) for i in found]),
    )
    return int(choice)


@click.group()
def cli():
    """sopsctl - manage SopsSecret manifests"""
    pass


@cli.command(context_settings={"ignore_unknown_options": True})
@click.argument("filename", type=click.Path(exists=True, dir_okay=False))
@click.argument("sops_args", nargs=-1, type=click.UNPROCESSED)
def convert(filename, sops_args):
    """Convert a Secret manifest to a SopsSecret.

    Extra arguments are passed to ``sops --encrypt``, for example
    ``--pgp <fingerprint>`` or ``--age <recipient>``.
    """
    with open(filename, "r") as f:
        secret = yaml.safe_load(f)

    if not isinstance(secret, dict) or secret.get("kind") != "Secret":
        raise click.ClickException("file is not a Secret")

    encrypted = run_sops_encrypt(secret_to_plaintext(secret), sops_args)
    document = build_sops_secret(secret, encrypted)
    click.echo(yaml.safe_dump(document, default_flow_style=False, sort_keys=False), nl=False)


@cli.command()
@click.argument("filename", type=click.Path(exists=True, dir_okay=False))
def edit(filename):
    """Decrypt a SopsSecret in FILENAME, edit it and re-encrypt it in place."""
    rt = round_trip_yaml()
    try:
        with open(filename, "r") as f:
            documents = list(rt.load_all(f))
    except YAMLError as e:
        raise click.ClickException(f"failed to parse {filename}: {e}")

    found = find_sops_secrets(documents)
    if not found:
        raise click.ClickException("no SopsSecret objects found")

    target_index = choose_document(found)
    target = found[target_index]

    handle, path = tempfile.mkstemp(suffix=".yml")
    try:
        with os.fdopen(handle, "w") as f:
            f.write(str(target.get("data", "")))

        # sops needs the terminal for the editor
        completed = subprocess.run([SOPS_BINARY, path])
        if completed.returncode != 0:
            raise click.ClickException(f"sops exited with status {completed.returncode}")

        with open(path, "r") as f:
            target["data"] = LiteralScalarString(f.read())
    finally:
        os.unlink(path)

    mode = os.stat(filename).st_mode
    with open(filename, "w") as f:
        rt.dump_all([document for document in documents if document is not None], f)
    os.chmod(filename, mode)
    click.echo(f"Updated SopsSecret {target['metadata']['name']} in {filename}")


@cli.command()
def version():
    """Print version information."""
    info = version_info()
    click.echo(f"Version: {info['version']}")
    click.echo(f"Python Version: {info['python_version']}")
    click.echo(f"OS/Arch: {info['platform']}")
    click.echo(f"Git Commit: {info['git_commit']}")
    click.echo(f"BuildDate: {info['build_date']}")


if __name__ == "__main__":
    cli()
