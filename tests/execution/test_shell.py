import types

import pytest

from devhost.config.models import TargetSpec
from devhost.errors import PrerequisiteError
from devhost.execution import shell as shell_mod
from devhost.execution.shell import (
    CommandError,
    CommandResult,
    LocalShell,
    SshShell,
    posix_dirname,
    shq,
)
from devhost.utils.execution import ExecutionContext

# ----------------- Fakes for Paramiko -----------------

class _FakeChannel:
    def __init__(self, rc=0): self._rc = rc
    def recv_exit_status(self): return self._rc

class _Buf:
    def __init__(self, s="", rc=0):
        self._s = s
        self.channel = _FakeChannel(rc)
    def read(self): return self._s.encode()

class _Stdin:
    def __init__(self, log): self.log = log
    def write(self, data): self.log.append(("stdin", data))
    def flush(self): pass

class _FakeFile:
    def __init__(self, log, path):
        self.log = log
        self.path = path
        self._buf = []
    def write(self, data): self._buf.append(data)
    def __enter__(self): return self
    def __exit__(self, *exc):
        self.log.append(("sftp_write", self.path, "".join(self._buf)))

class FakeSFTP:
    def __init__(self, log): self.log = log
    def file(self, path, mode): return _FakeFile(self.log, path)
    def close(self): self.log.append(("sftp_close",))

class FakeSSHClient:
    def __init__(self, log, responses=None):
        self.log = log
        self.responses = responses or {}
    def exec_command(self, cmd, timeout=None):
        self.log.append(("exec", cmd))
        out, err, rc = self.responses.get(cmd, ("", "", 0))
        return _Stdin(self.log), _Buf(out, rc), _Buf(err, rc)
    def open_sftp(self): return FakeSFTP(self.log)
    def close(self): self.log.append(("close",))

# ----------------- Tests -----------------

def test_shq_quotes_single_quotes():
    assert shq("it's") == "'it'\"'\"'s'"


def test_posix_dirname():
    assert posix_dirname("/etc/nginx/.htpasswd") == "/etc/nginx"
    assert posix_dirname("/hosts") == "/"


def test_ssh_shell_as_root_runs_login_bash():
    ops = []
    sh = SshShell(FakeSSHClient(ops, {"bash -lc 'uname -r'": ("6.1.0\n", "", 0)}))
    res = sh.run("uname -r", mutating=False)
    assert res.ok and res.stdout == "6.1.0\n"
    assert ops == [("exec", "bash -lc 'uname -r'")]


def test_ssh_shell_elevates_non_root_with_sudo_password():
    ops = []
    sh = SshShell(FakeSSHClient(ops), username="ubuntu", become_password="pw")
    sh.run("apt-get update")
    assert ops[0] == ("exec", "sudo -S -p '' bash -lc 'apt-get update'")
    assert ("stdin", "pw\n") in ops


def test_check_raises_command_error():
    ops = []
    client = FakeSSHClient(ops, {"bash -lc 'false'": ("", "boom\n", 1)})
    with pytest.raises(CommandError, match="boom"):
        SshShell(client).run("false", check=True)


def test_dry_run_skips_mutating_but_not_read_only():
    ops = []
    sh = SshShell(FakeSSHClient(ops), ctx=ExecutionContext(dry_run=True))
    assert sh.run("apt-get install -y nginx").ok
    sh.run("pidof systemd", mutating=False)
    sh.put_text("x", "/etc/x.conf")
    assert ops == [("exec", "bash -lc 'pidof systemd'")]


def test_put_text_uploads_then_installs():
    ops = []
    sh = SshShell(FakeSSHClient(ops))
    sh.put_text("server {}\n", "/etc/nginx/sites-available/vscode", mode=0o640, owner="root:www-data")

    write = [o for o in ops if o[0] == "sftp_write"][0]
    assert write[1].startswith("/tmp/.devhost_tmp_")
    assert write[2] == "server {}\n"

    install = [o[1] for o in ops if o[0] == "exec"][0]
    assert "mkdir -p" in install
    assert f"install -m 640 {write[1]}" in install
    assert "chown root:www-data" in install
    assert f"rm -f {write[1]}" in install


def test_local_shell_runs_bash(monkeypatch):
    calls = []

    def fake_run(argv, **kw):
        calls.append(argv)
        return types.SimpleNamespace(returncode=3, stdout="out", stderr="err")

    monkeypatch.setattr(shell_mod.subprocess, "run", fake_run)
    res = LocalShell().run("echo hi", mutating=False)
    assert calls == [["bash", "-lc", "echo hi"]]
    assert (res.rc, res.stdout, res.stderr) == (3, "out", "err")


def test_local_shell_timeout_is_rc_124(monkeypatch):
    def fake_run(argv, **kw):
        raise shell_mod.subprocess.TimeoutExpired(argv, kw.get("timeout"))

    monkeypatch.setattr(shell_mod.subprocess, "run", fake_run)
    res = LocalShell(timeout=5).run("sleep 60", mutating=False)
    assert res.rc == 124
    assert "timed out" in res.stderr


def test_open_ssh_retries_then_gives_up(monkeypatch):
    attempts = []

    class FlakyClient:
        def set_missing_host_key_policy(self, policy): pass
        def connect(self, **kw):
            attempts.append(kw["hostname"])
            raise OSError("connection refused")

    monkeypatch.setattr(shell_mod.paramiko, "SSHClient", FlakyClient)
    target = TargetSpec(address="10.0.0.9", connect_attempts=3, connect_delay_seconds=1)
    sleeps = []

    with pytest.raises(PrerequisiteError, match="after 3 attempts"):
        shell_mod.open_ssh(target, sleep=sleeps.append)

    assert attempts == ["10.0.0.9"] * 3
    assert sleeps == [1, 1]


def test_build_shell_is_local_without_address():
    sh = shell_mod.build_shell(TargetSpec(), ExecutionContext())
    assert isinstance(sh, LocalShell)


def test_command_result_ok():
    assert CommandResult(0).ok
    assert not CommandResult(2).ok
