"""Tests for the shadowcrypt CLI."""

from __future__ import annotations

import json
import os
from pathlib import Path

import pytest
from click.testing import CliRunner

from shadowcrypt.cli import main


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def _invoke(runner: CliRunner, home: Path, *args: str):
    return runner.invoke(main, [*args, "--home", str(home)])


def _generate(runner: CliRunner, home: Path, *extra: str):
    return _invoke(runner, home, "keys", "generate", "--password", "pw", *extra)


def _proof(output: str) -> dict[str, str]:
    fields = {}
    for line in output.splitlines():
        key, sep, value = line.partition(": ")
        if sep:
            fields[key] = value
    return fields


class TestKeysCommands:
    """keys generate / status / unlock / export / import."""

    def test_help(self, runner: CliRunner) -> None:
        result = runner.invoke(main, ["--help"])
        assert result.exit_code == 0
        for group in ("keys", "registry", "content", "audit"):
            assert group in result.output

    def test_generate_and_status(self, runner: CliRunner, home: Path) -> None:
        result = _generate(runner, home)
        assert result.exit_code == 0, result.output
        assert "Keypair stored" in result.output
        assert (home / "keys" / "encryption_key.json").exists()

        status = _invoke(runner, home, "keys", "status")
        assert status.exit_code == 0
        assert "locked" in status.output

    def test_generate_refuses_overwrite(self, runner: CliRunner, home: Path) -> None:
        _generate(runner, home)
        result = _generate(runner, home)
        assert result.exit_code == 1
        assert "already stored" in result.output

    def test_generate_bad_seed(self, runner: CliRunner, home: Path) -> None:
        result = _generate(runner, home, "--seed", "abcd")
        assert result.exit_code == 1
        assert "InvalidSeedLength" in result.output

    def test_unlock(self, runner: CliRunner, home: Path) -> None:
        _generate(runner, home)
        ok = _invoke(runner, home, "keys", "unlock", "--password", "pw")
        assert ok.exit_code == 0
        bad = _invoke(runner, home, "keys", "unlock", "--password", "nope")
        assert bad.exit_code == 1
        assert "Invalid password" in bad.output

    def test_export_import(self, runner: CliRunner, home: Path, tmp_path: Path) -> None:
        _generate(runner, home)
        backup = tmp_path / "backup.json"
        result = _invoke(runner, home, "keys", "export", "--password", "pw", "-o", str(backup))
        assert result.exit_code == 0, result.output
        original = json.loads((home / "keys" / "encryption_key.json").read_text())["public_key"]

        other_home = tmp_path / "other"
        (other_home / "config").mkdir(parents=True)
        (other_home / "config" / "config.yaml").write_text(
            (home / "config" / "config.yaml").read_text()
        )
        result = _invoke(runner, other_home, "keys", "import", str(backup), "--password", "pw")
        assert result.exit_code == 0, result.output
        restored = json.loads((other_home / "keys" / "encryption_key.json").read_text())
        assert restored["public_key"] == original

    def test_clear(self, runner: CliRunner, home: Path) -> None:
        _generate(runner, home)
        result = _invoke(runner, home, "keys", "clear", "--yes")
        assert result.exit_code == 0
        assert not (home / "keys" / "encryption_key.json").exists()


class TestRegistryCommands:
    """registry register / rotate / revoke / active / history."""

    def test_register_with_proof_then_revoke(self, runner: CliRunner, home: Path) -> None:
        seed = os.urandom(32).hex()
        _generate(runner, home)
        proof = _proof(_invoke(runner, home, "keys", "prove", "--seed", seed).output)

        result = _invoke(
            runner, home, "registry", "register",
            proof["address"], proof["public_key"], "--signature", proof["signature"],
        )
        assert result.exit_code == 0, result.output

        active = _invoke(runner, home, "registry", "active", proof["address"])
        assert active.output.strip() == proof["public_key"]

        revoked = _invoke(runner, home, "registry", "revoke", proof["address"], "--reason", "test")
        assert revoked.exit_code == 0, revoked.output

        history = _invoke(runner, home, "registry", "history", proof["address"])
        assert "created" in history.output
        assert "revoked" in history.output

        audit = _invoke(runner, home, "audit")
        assert "KEY_REGISTER" in audit.output
        assert "KEY_REVOKE" in audit.output

    def test_register_without_proof_rejected(self, runner: CliRunner, home: Path) -> None:
        result = _invoke(runner, home, "registry", "register", "alice", "11" * 32)
        assert result.exit_code == 1
        assert "SignatureInvalid" in result.output

    def test_rotate_without_active_key(self, runner: CliRunner, home: Path) -> None:
        result = _invoke(
            runner, home, "registry", "rotate", "alice", "11" * 32, "--signature", "00" * 64
        )
        assert result.exit_code == 1


class TestContentCommands:
    """content seal / open."""

    def test_seal_and_open(self, runner: CliRunner, home: Path, tmp_path: Path) -> None:
        _generate(runner, home)
        source = tmp_path / "note.txt"
        source.write_text("for my eyes only")

        sealed = _invoke(runner, home, "content", "seal", str(source))
        assert sealed.exit_code == 0, sealed.output
        ref_file = tmp_path / "ref.json"
        ref_file.write_text(sealed.output)
        assert "for my eyes only" not in sealed.output

        opened = _invoke(runner, home, "content", "open", str(ref_file), "--password", "pw")
        assert opened.exit_code == 0, opened.output
        assert opened.output.strip() == "for my eyes only"

    def test_open_with_wrong_password(self, runner: CliRunner, home: Path, tmp_path: Path) -> None:
        _generate(runner, home)
        source = tmp_path / "note.txt"
        source.write_text("secret")
        ref_file = tmp_path / "ref.json"
        ref_file.write_text(_invoke(runner, home, "content", "seal", str(source)).output)

        opened = _invoke(runner, home, "content", "open", str(ref_file), "--password", "bad")
        assert opened.exit_code == 1
        assert "Invalid password" in opened.output

    def test_seal_without_key(self, runner: CliRunner, home: Path, tmp_path: Path) -> None:
        source = tmp_path / "note.txt"
        source.write_text("x")
        result = _invoke(runner, home, "content", "seal", str(source))
        assert result.exit_code == 1
