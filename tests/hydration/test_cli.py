"""Command-line entry points driven through Typer's test runner."""

from __future__ import annotations

import json

import pytest
from hydration_helpers import build_zip, sha256_hex, write_manifest
from typer.testing import CliRunner

from ToolVault.Hydration import __version__
from ToolVault.Hydration.cli import app

runner = CliRunner()


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "toolvault.yaml"
    path.write_text(f"logging:\n  log_dir: {tmp_path / 'logs'}\n", encoding="utf-8")
    return path


def test_version():
    result = runner.invoke(app, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.stdout


class TestValidateManifest:
    def test_valid(self, tmp_path):
        manifest = write_manifest(tmp_path / "m.json", [{"id": "a", "version": "1", "archive_path": "a.zip"}])
        result = runner.invoke(app, ["validate-manifest", str(manifest)])
        assert result.exit_code == 0
        assert "1 tool(s)" in result.stdout

    def test_schema_errors_listed(self, tmp_path):
        manifest = write_manifest(tmp_path / "m.json", [{"id": "a", "version": "1", "archive_path": "a.zip"}])
        result = runner.invoke(app, ["validate-manifest", str(manifest), "--kind", "stack"])
        assert result.exit_code == 1
        assert "tool_path_missing:0" in result.stdout

    def test_unreadable(self, tmp_path):
        result = runner.invoke(app, ["validate-manifest", str(tmp_path / "missing.json")])
        assert result.exit_code == 2


class TestVerify:
    def test_prints_digest(self, tmp_path):
        target = tmp_path / "a.zip"
        target.write_bytes(b"payload")
        result = runner.invoke(app, ["verify", str(target)])
        assert result.exit_code == 0
        assert result.stdout.startswith(sha256_hex(b"payload"))

    def test_mismatch_exits_nonzero(self, tmp_path):
        target = tmp_path / "a.zip"
        target.write_bytes(b"payload")
        result = runner.invoke(app, ["verify", str(target), "--sha256", "0" * 64])
        assert result.exit_code == 1
        assert "sha256_mismatch" in result.stdout


class TestPolicy:
    def test_reports_config_policy(self, tmp_path):
        config = tmp_path / "toolvault.yaml"
        config.write_text("policy:\n  allowed_hosts: [mirror.example.org]\n  allowed_ports: [443]\n", encoding="utf-8")
        result = runner.invoke(app, ["--config", str(config), "policy", "--url", "https://evil.example.com/a.zip"])
        assert result.exit_code == 0
        payload = json.loads(result.stdout)
        assert payload["allowed"] is False
        assert payload["error_code"] == "E_HOST_DENY"
        assert payload["allowed_hosts"] == ["mirror.example.org"]

    def test_environment_offline(self, monkeypatch):
        monkeypatch.setenv("TOOLVAULT_OFFLINE_MODE", "1")
        payload = json.loads(runner.invoke(app, ["policy"]).stdout)
        assert payload["offline_mode"] is True
        assert payload["allowed"] is False

    def test_bad_config_exits_two(self, tmp_path):
        config = tmp_path / "bad.yaml"
        config.write_text("policy: [", encoding="utf-8")
        assert runner.invoke(app, ["--config", str(config), "policy"]).exit_code == 2


class TestHydrate:
    def test_installs_from_local_mirror(self, tmp_path, config_file, isolated_logger):
        mirror = tmp_path / "mirror"
        archive = build_zip(mirror / "godot.zip", {"bin/godot": b"run"})
        manifest = write_manifest(
            mirror / "manifest.json",
            [{"id": "godot", "version": "4.3", "archive_path": "godot.zip", "sha256": sha256_hex(archive.read_bytes())}],
        )
        result = runner.invoke(
            app,
            [
                "--config",
                str(config_file),
                "hydrate",
                "godot@4.3",
                "--manifest",
                str(manifest),
                "--staging-dir",
                str(tmp_path / "staging"),
                "--library-dir",
                str(tmp_path / "library"),
                "--json",
            ],
        )
        assert result.exit_code == 0, result.output
        report = json.loads(result.stdout)
        assert report["success"] is True
        assert report["installed_count"] == 1
        assert (tmp_path / "library" / "godot" / "4.3" / "bin" / "godot").read_bytes() == b"run"
        assert list((tmp_path / "logs").glob("toolvault-*.jsonl"))

    def test_offline_run_fails_every_tool(self, tmp_path, config_file, monkeypatch, isolated_logger):
        monkeypatch.setenv("TOOLVAULT_OFFLINE_MODE", "true")
        result = runner.invoke(
            app,
            [
                "--config",
                str(config_file),
                "hydrate",
                "godot@4.3",
                "blender@4.1",
                "--manifest",
                "https://mirror.example.org/manifest.json",
                "--library-dir",
                str(tmp_path / "library"),
                "--json",
            ],
        )
        assert result.exit_code == 1
        report = json.loads(result.stdout)
        assert report["failed_tools"] == ["godot@4.3", "blender@4.1"]
        assert all(item["reason"].startswith("network_blocked:") for item in report["outcomes"])

    def test_malformed_tool_argument(self, config_file):
        result = runner.invoke(app, ["--config", str(config_file), "hydrate", "godot"])
        assert result.exit_code == 2
