import logging
import types

import pytest
from typer.testing import CliRunner

from devhost.bootstrap.services import probes
from devhost.cli import app as app_mod
from devhost.execution.shell import CommandError, CommandResult

runner = CliRunner()


class FakeHost:
    def __init__(self, *, root=True, fail_on=()):
        self.commands = []
        self.files = {}
        self.closed = False
        self.fail_on = list(fail_on)
        self.answers = {
            "id -u": "0\n" if root else "1000\n",
            "cat /etc/os-release": "ID=ubuntu\nVERSION_CODENAME=jammy\n",
            "pidof systemd": "1\n",
            "command -v sudo": "/usr/bin/sudo\n",
            "hostname -I": "198.51.100.4\n",
            "getent passwd alice | cut -d: -f6": "/home/alice\n",
        }

    def run(self, cmd, *, check=False, mutating=True, timeout=None):
        self.commands.append(cmd)
        if cmd in self.answers:
            res = CommandResult(0, stdout=self.answers[cmd])
        elif any(f in cmd for f in self.fail_on):
            res = CommandResult(7)
        elif cmd.startswith("pgrep") or "ss -ltn" in cmd:
            res = CommandResult(1)
        else:
            res = CommandResult(0)
        if check and not res.ok:
            raise CommandError(cmd, res)
        return res

    def put_text(self, content, path, *, mode=0o644, owner=None):
        self.files[path] = content

    def close(self):
        self.closed = True


@pytest.fixture
def host(monkeypatch, tmp_path):
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("SUDO_USER", "alice")
    monkeypatch.delenv("DEVHOST_SECRETS_FILE", raising=False)
    monkeypatch.setattr(probes.requests, "get", lambda url, **kw: types.SimpleNamespace(status_code=401))

    holder = {"host": FakeHost()}
    monkeypatch.setattr(app_mod, "build_shell", lambda target, ctx: holder["host"])
    yield holder

    # drop handlers bound to the runner's streams and tmp_path
    logger = logging.getLogger("devhost")
    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def test_detect_prints_run_context(host):
    result = runner.invoke(app_mod.app, ["detect", "--variant", "gpu-pod"])
    assert result.exit_code == 0, result.output
    assert "init strategy  : systemd" in result.output
    assert "address        : 198.51.100.4 (ipv4)" in result.output
    assert "user           : alice (/home/alice)" in result.output
    assert host["host"].closed


def test_setup_regular_prints_credentials(host, tmp_path):
    result = runner.invoke(app_mod.app, ["setup", "--variant", "regular"])
    assert result.exit_code == 0, result.output
    assert "URL              : https://198.51.100.4" in result.output
    assert "Basic auth user  : vscode-admin" in result.output
    assert "Setup complete" in result.output
    # JSON event log next to the text log
    logs = list((tmp_path / ".devhost" / "logs").glob("*.jsonl"))
    assert len(logs) == 1


def test_service_failure_exits_zero_unless_strict(host, tmp_path):
    cfg = tmp_path / "devhost.yaml"
    cfg.write_text("editor:\n  max_probe_attempts: 1\n")

    host["host"] = FakeHost(fail_on=["healthz"])
    relaxed = runner.invoke(app_mod.app, ["setup", "--variant", "regular", "--config", str(cfg)])
    assert relaxed.exit_code == 0, relaxed.output
    assert "Some services are not ready: code-server" in relaxed.output

    host["host"] = FakeHost(fail_on=["healthz"])
    strict = runner.invoke(app_mod.app, ["setup", "--variant", "regular", "--config", str(cfg), "--strict"])
    assert strict.exit_code == 1


def test_fatal_setup_error_exits_one(host):
    host["host"] = FakeHost(root=False)
    result = runner.invoke(app_mod.app, ["setup"])
    assert result.exit_code == 1
    assert "Setup failed: Please run as root" in result.output


def test_unknown_variant_is_usage_error(host):
    result = runner.invoke(app_mod.app, ["setup", "--variant", "windows"])
    assert result.exit_code == 2


def test_status_reports_each_service(host):
    result = runner.invoke(app_mod.app, ["status", "--variant", "regular"])
    assert result.exit_code == 0, result.output
    for name in ("docker", "code-server", "nginx"):
        assert name in result.output
    assert not any(c.startswith("systemctl") for c in host["host"].commands)


def test_account_creation_failure_is_reported_not_raised(host, monkeypatch):
    monkeypatch.delenv("SUDO_USER")
    host["host"] = FakeHost(fail_on=["useradd"])
    result = runner.invoke(app_mod.app, ["setup", "--variant", "plain"])
    assert result.exit_code == 1
    assert "Setup failed: Could not create user deploy" in result.output
    assert isinstance(result.exception, SystemExit)
