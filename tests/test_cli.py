"""Unit tests for cli.py - sopsctl commands."""

import base64
import os
import stat

import pytest
import yaml
from click.testing import CliRunner
from unittest.mock import MagicMock, patch

from cli import build_sops_secret, cli, find_sops_secrets, secret_to_plaintext
from conftest import make_source_body
from models import API_VERSION, KIND

ENCRYPTED = "password: ENC[AES256_GCM,data:abc]\nsops:\n    version: 3.8.1\n"


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def secret_manifest():
    return {
        "apiVersion": "v1",
        "kind": "Secret",
        "metadata": {"name": "db", "namespace": "prod", "labels": {"app": "db"}},
        "type": "kubernetes.io/basic-auth",
        "data": {"password": base64.b64encode(b"hunter2").decode()},
        "stringData": {"username": "admin"},
    }


class TestHelpers:
    """Tests for the pure helpers."""

    def test_secret_to_plaintext(self, secret_manifest):
        assert secret_to_plaintext(secret_manifest) == {
            "password": "hunter2",
            "username": "admin",
        }

    def test_string_data_wins(self):
        secret = {
            "data": {"k": base64.b64encode(b"old").decode()},
            "stringData": {"k": "new"},
        }
        assert secret_to_plaintext(secret) == {"k": "new"}

    def test_build_sops_secret(self, secret_manifest):
        document = build_sops_secret(secret_manifest, ENCRYPTED)
        assert document["apiVersion"] == API_VERSION
        assert document["kind"] == KIND
        assert document["metadata"] == {
            "name": "db",
            "namespace": "prod",
            "labels": {"app": "db"},
        }
        assert document["spec"] == {"template": {"labels": {"app": "db"}}}
        assert document["type"] == "kubernetes.io/basic-auth"
        assert document["data"] == ENCRYPTED

    def test_find_sops_secrets(self):
        documents = [{"kind": "ConfigMap"}, make_source_body(), None, make_source_body(name="b")]
        assert list(find_sops_secrets(documents)) == [1, 3]


class TestConvert:
    """Tests for the convert command."""

    def test_convert(self, runner, tmp_path, secret_manifest):
        path = tmp_path / "secret.yaml"
        path.write_text(yaml.safe_dump(secret_manifest))
        seen = {}

        def fake_run(command, **kwargs):
            with open(command[-1]) as f:
                seen["plaintext"] = yaml.safe_load(f)
            seen["command"] = command
            return MagicMock(returncode=0, stdout=ENCRYPTED, stderr="")

        with patch("cli.subprocess.run", side_effect=fake_run):
            result = runner.invoke(cli, ["convert", str(path), "--age", "age1xyz"])

        assert result.exit_code == 0, result.output
        assert seen["plaintext"] == {"password": "hunter2", "username": "admin"}
        assert seen["command"][:4] == ["sops", "--encrypt", "--output-type", "yaml"]
        assert seen["command"][4:6] == ["--age", "age1xyz"]
        assert not os.path.exists(seen["command"][-1])

        document = yaml.safe_load(result.output)
        assert document["kind"] == KIND
        assert document["data"] == ENCRYPTED

    def test_convert_rejects_non_secret(self, runner, tmp_path):
        path = tmp_path / "cm.yaml"
        path.write_text(yaml.safe_dump({"kind": "ConfigMap", "metadata": {"name": "x"}}))
        result = runner.invoke(cli, ["convert", str(path)])
        assert result.exit_code != 0
        assert "not a Secret" in result.output

    def test_convert_sops_failure(self, runner, tmp_path, secret_manifest):
        path = tmp_path / "secret.yaml"
        path.write_text(yaml.safe_dump(secret_manifest))
        with patch(
            "cli.subprocess.run",
            return_value=MagicMock(returncode=1, stdout="", stderr="no recipients"),
        ):
            result = runner.invoke(cli, ["convert", str(path)])
        assert result.exit_code != 0
        assert "no recipients" in result.output


class TestEdit:
    """Tests for the edit command."""

    @staticmethod
    def fake_editor(new_content):
        def run(command, **kwargs):
            with open(command[-1], "w") as f:
                f.write(new_content)
            return MagicMock(returncode=0)

        return run

    def test_edit_single(self, runner, tmp_path):
        path = tmp_path / "secrets.yaml"
        documents = [{"kind": "ConfigMap", "metadata": {"name": "cm"}}, make_source_body()]
        path.write_text(yaml.safe_dump_all(documents))
        os.chmod(path, 0o600)

        with patch("cli.subprocess.run", side_effect=self.fake_editor("edited: yes\n")):
            result = runner.invoke(cli, ["edit", str(path)])

        assert result.exit_code == 0, result.output
        updated = list(yaml.safe_load_all(path.read_text()))
        assert updated[0] == {"kind": "ConfigMap", "metadata": {"name": "cm"}}
        assert updated[1]["data"] == "edited: yes\n"
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_edit_prompts_for_choice(self, runner, tmp_path):
        path = tmp_path / "secrets.yaml"
        documents = [make_source_body(name="first"), make_source_body(name="second")]
        path.write_text(yaml.safe_dump_all(documents))

        with patch("cli.subprocess.run", side_effect=self.fake_editor("changed: 1\n")):
            result = runner.invoke(cli, ["edit", str(path)], input="1\n")

        assert result.exit_code == 0, result.output
        assert "INDEX" in result.output
        updated = list(yaml.safe_load_all(path.read_text()))
        assert updated[0]["data"] == documents[0]["data"]
        assert updated[1]["data"] == "changed: 1\n"

    def test_edit_keeps_comments_and_block_data(self, runner, tmp_path):
        path = tmp_path / "secrets.yaml"
        path.write_text(
            "# payments database credentials\n"
            f"apiVersion: {API_VERSION}\n"
            f"kind: {KIND}\n"
            "metadata:\n"
            "  name: db.creds  # rotated quarterly\n"
            "  namespace: prod\n"
            "spec:\n"
            "  template: {}\n"
            "data: |\n"
            "  password: ENC[AES256_GCM,data:old]\n"
        )

        with patch(
            "cli.subprocess.run",
            side_effect=self.fake_editor("password: ENC[AES256_GCM,data:new]\n"),
        ):
            result = runner.invoke(cli, ["edit", str(path)])

        assert result.exit_code == 0, result.output
        text = path.read_text()
        assert text.startswith("# payments database credentials\n")
        assert "name: db.creds  # rotated quarterly" in text
        assert "data: |\n  password: ENC[AES256_GCM,data:new]\n" in text
        assert yaml.safe_load(text)["data"] == "password: ENC[AES256_GCM,data:new]\n"

    def test_edit_rejects_invalid_yaml(self, runner, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("kind: [unclosed\n")
        result = runner.invoke(cli, ["edit", str(path)])
        assert result.exit_code != 0
        assert "failed to parse" in result.output

    def test_edit_without_sops_secrets(self, runner, tmp_path):
        path = tmp_path / "plain.yaml"
        path.write_text(yaml.safe_dump({"kind": "Secret", "metadata": {"name": "x"}}))
        result = runner.invoke(cli, ["edit", str(path)])
        assert result.exit_code != 0
        assert "no SopsSecret objects found" in result.output

    def test_edit_sops_failure_leaves_file(self, runner, tmp_path):
        path = tmp_path / "secrets.yaml"
        original = yaml.safe_dump_all([make_source_body()])
        path.write_text(original)

        with patch("cli.subprocess.run", return_value=MagicMock(returncode=2)):
            result = runner.invoke(cli, ["edit", str(path)])

        assert result.exit_code != 0
        assert path.read_text() == original


class TestVersion:
    """Tests for the version command."""

    def test_version(self, runner, monkeypatch):
        monkeypatch.setenv("GIT_COMMIT", "abc1234")
        result = runner.invoke(cli, ["version"])
        assert result.exit_code == 0
        assert "Version:" in result.output
        assert "Git Commit: abc1234" in result.output
