"""CLI tests using Typer's runner with an in-memory storage gateway."""

from __future__ import annotations

import logging
from pathlib import Path

import pytest
import typer
from typer.testing import CliRunner

from ArchiveSync import cli
from ArchiveSync.errors import ResourceBusyError
from ArchiveSync.executors import TargetHost
from ArchiveSync.hooks import ArchiveSyncPlugin

runner = CliRunner()


class _StubStrategy:
    def __init__(self) -> None:
        self.calls = []
        self.fail_with = None
        self.settings = None

    def check(self, targets) -> None:
        self.calls.append(("check", list(targets)))

    def create_release(self, context, targets, release_path, current_path=None) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append(("create_release", list(targets), release_path, current_path))

    def cleanup(self, targets) -> None:
        self.calls.append(("cleanup", list(targets)))


@pytest.fixture(autouse=True)
def _reset_logging():
    yield
    logger = logging.getLogger("ArchiveSync")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def stub(monkeypatch, gateway) -> _StubStrategy:
    strategy = _StubStrategy()

    def plugin_factory(settings):
        strategy.settings = settings
        return ArchiveSyncPlugin(settings, gateway, strategy=strategy)

    monkeypatch.setattr(cli, "ArchiveSyncPlugin", plugin_factory)
    return strategy


@pytest.fixture
def config(tmp_path: Path) -> Path:
    path = tmp_path / "deploy.yaml"
    path.write_text(
        "repo_url: s3://my-bucket/releases\n"
        f"local_download_dir: {tmp_path / 'archives'}\n"
        f"local_cache_dir: {tmp_path / 'cache'}\n",
        encoding="utf-8",
    )
    return path


def test_revision(stub, config: Path) -> None:
    result = runner.invoke(cli.app, ["revision", "--config", str(config)])
    assert result.exit_code == 0, result.output
    assert "releases/app-2.tar.gz" in result.output

    result = runner.invoke(cli.app, ["revision", "-c", str(config), "--branch", "app-1.tar.gz"])
    assert result.exit_code == 0, result.output
    assert "releases/app-1.tar.gz" in result.output


def test_deploy_passes_targets_and_paths(stub, config: Path) -> None:
    result = runner.invoke(
        cli.app,
        [
            "deploy",
            "-c",
            str(config),
            "--release-path",
            "/srv/app/releases/1",
            "--current-path",
            "/srv/app/current",
            "--host",
            "deploy@web1:2222",
            "--host",
            "web2",
            "--ssh-key",
            "/home/deploy/.ssh/id_ed25519",
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Released releases/app-2.tar.gz into /srv/app/releases/1" in result.output
    _, targets, release_path, current_path = stub.calls[0]
    assert [str(target) for target in targets] == ["deploy@web1", "web2"]
    assert targets[0].port == 2222
    assert targets[1].keys == ("/home/deploy/.ssh/id_ed25519",)
    assert (release_path, current_path) == ("/srv/app/releases/1", "/srv/app/current")


def test_busy_lock_exits_with_tempfail(stub, config: Path) -> None:
    stub.fail_with = ResourceBusyError("/tmp/deploy.production.lock")
    result = runner.invoke(
        cli.app, ["deploy", "-c", str(config), "--release-path", "/srv/app/releases/1"]
    )
    assert result.exit_code == cli.EXIT_BUSY
    assert "Could not get /tmp/deploy.production.lock" in result.output


def test_missing_archive_exits_with_error(stub, config: Path) -> None:
    result = runner.invoke(
        cli.app,
        ["deploy", "-c", str(config), "--branch", "app-9.tar.gz", "--release-path", "/r"],
    )
    assert result.exit_code == 1
    assert "Error:" in result.output
    assert stub.calls == []


def test_missing_config_file(stub, tmp_path: Path) -> None:
    result = runner.invoke(cli.app, ["revision", "-c", str(tmp_path / "nope.yaml")])
    assert result.exit_code == 1
    assert "not found" in result.output


def test_check_defaults_to_localhost(stub, config: Path) -> None:
    result = runner.invoke(cli.app, ["check", "-c", str(config)])
    assert result.exit_code == 0, result.output
    assert "ok" in result.output
    assert stub.calls == [("check", [TargetHost.localhost()])]


def test_cleanup(stub, config: Path) -> None:
    result = runner.invoke(cli.app, ["cleanup", "-c", str(config), "--host", "web1"])
    assert result.exit_code == 0, result.output
    assert stub.calls == [("cleanup", [TargetHost("web1")])]


@pytest.mark.parametrize(
    ("host", "expected"),
    [
        ("web1", TargetHost("web1")),
        ("deploy@web1", TargetHost("web1", user="deploy")),
        ("deploy@web1:2200", TargetHost("web1", user="deploy", port=2200)),
        ("web1:22", TargetHost("web1", port=22)),
    ],
)
def test_parse_host(host: str, expected: TargetHost) -> None:
    assert cli.parse_host(host) == expected


@pytest.mark.parametrize("host", ["web1:ssh", "deploy@", ""])
def test_parse_host_rejects_garbage(host: str) -> None:
    with pytest.raises(typer.BadParameter):
        cli.parse_host(host)


def test_flags_beat_environment(stub, config: Path, monkeypatch) -> None:
    monkeypatch.setenv("ARCHIVESYNC_STAGE", "staging")
    monkeypatch.setenv("ARCHIVESYNC_BRANCH", "app-1.tar.gz")

    result = runner.invoke(
        cli.app, ["revision", "-c", str(config), "--stage", "production", "--branch", "latest"]
    )
    assert result.exit_code == 0, result.output
    assert stub.settings.stage == "production"
    assert "releases/app-2.tar.gz" in result.output

    result = runner.invoke(cli.app, ["revision", "-c", str(config)])
    assert result.exit_code == 0, result.output
    assert stub.settings.stage == "staging"
    assert "releases/app-1.tar.gz" in result.output
