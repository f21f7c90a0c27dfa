# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/devhost/execution/shell.py

from __future__ import annotations

import itertools
import logging
import os
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

import paramiko

from devhost.config.models import TargetSpec
from devhost.utils.execution import ExecutionContext
from devhost.utils.retry import retry, RetryError
from devhost.errors import PrerequisiteError

log = logging.getLogger("devhost")

_counter = itertools.count(1)


def shq(s: str) -> str:
    """
    Quote for bash -lc.
    """
    return "'" + s.replace("'", "'\"'\"'") + "'"


@dataclass
class CommandResult:
    rc: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.rc == 0


class CommandError(RuntimeError):
    def __init__(self, cmd: str, result: CommandResult):
        self.cmd = cmd
        self.result = result
        detail = (result.stderr or result.stdout).strip().splitlines()[-1:] or [""]
        super().__init__(f"command failed (rc={result.rc}): {cmd}: {detail[0]}")


class Shell(Protocol):
    """Runs commands as root on the target host."""

    def run(
        self,
        cmd: str,
        *,
        check: bool = False,
        mutating: bool = True,
        timeout: Optional[float] = None,
    ) -> CommandResult: ...

    def put_text(
        self,
        content: str,
        path: str,
        *,
        mode: int = 0o644,
        owner: Optional[str] = None,
    ) -> None: ...

    def close(self) -> None: ...


class _BaseShell:
    """
    Shared command bookkeeping: dry-run handling, logging, check=True.
    Subclasses implement ``_exec`` and ``_upload``.
    """

    label = "shell"

    def __init__(self, ctx: ExecutionContext | None = None, timeout: float = 1800):
        self.ctx = ctx or ExecutionContext()
        self.timeout = timeout

    def _exec(self, cmd: str, timeout: float) -> CommandResult:
        raise NotImplementedError

    def _upload(self, content: str, tmp_path: str) -> None:
        raise NotImplementedError

    def run(
        self,
        cmd: str,
        *,
        check: bool = False,
        mutating: bool = True,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        log.debug("[%s] $ %s", self.label, cmd)

        if mutating and self.ctx.dry_run:
            log.debug("[%s] dry-run: skipped execution", self.label)
            return CommandResult(rc=0)

        start = time.time()
        result = self._exec(cmd, timeout or self.timeout)
        duration = time.time() - start

        if result.stdout:
            log.debug("[%s][stdout]\n%s", self.label, result.stdout.rstrip())
        if result.stderr:
            log.debug("[%s][stderr]\n%s", self.label, result.stderr.rstrip())
        log.debug("[%s][exit %d] (%.2fs)", self.label, result.rc, duration)

        if check and not result.ok:
            raise CommandError(cmd, result)
        return result

    def put_text(
        self,
        content: str,
        path: str,
        *,
        mode: int = 0o644,
        owner: Optional[str] = None,
    ) -> None:
        """
        Upload content to a temp path then install it at the destination so
        root-owned targets keep their ownership and mode.
        """
        log.debug("[%s] placing %s (mode=%s owner=%s)", self.label, path, oct(mode), owner)
        if self.ctx.dry_run:
            return

        tmp = f"/tmp/.devhost_tmp_{os.getpid()}_{next(_counter)}"
        self._upload(content, tmp)

        parent = posix_dirname(path)
        cmd = f"mkdir -p {shq(parent)} && install -m {oct(mode)[2:]} {tmp} {shq(path)}"
        if owner:
            cmd += f" && chown {owner} {shq(path)}"
        cmd += f" ; rc=$? ; rm -f {tmp} ; exit $rc"
        self.run(cmd, check=True)

    def close(self) -> None:
        pass


def posix_dirname(path: str) -> str:
    head = path.rsplit("/", 1)[0]
    return head or "/"


class LocalShell(_BaseShell):
    """Runs on this machine; the process is expected to be root already."""

    label = "local"

    def _exec(self, cmd: str, timeout: float) -> CommandResult:
        try:
            cp = subprocess.run(
                ["bash", "-lc", cmd],
                capture_output=True,
                text=True,
                timeout=timeout,
                stdin=subprocess.DEVNULL,
            )
        except subprocess.TimeoutExpired as e:
            return CommandResult(rc=124, stdout=_text(e.stdout), stderr=f"timed out after {timeout}s")
        return CommandResult(rc=cp.returncode, stdout=cp.stdout, stderr=cp.stderr)

    def _upload(self, content: str, tmp_path: str) -> None:
        with tempfile.NamedTemporaryFile("w", delete=False, dir="/tmp", encoding="utf-8") as f:
            f.write(content)
        os.replace(f.name, tmp_path)


def _text(v) -> str:
    if v is None:
        return ""
    if isinstance(v, bytes):
        return v.decode("utf-8", errors="replace")
    return v


class SshShell(_BaseShell):
    """
    Runs over paramiko. Non-root logins are elevated with ``sudo -S``.
    """

    label = "ssh"

    def __init__(
        self,
        client: paramiko.SSHClient,
        *,
        username: str = "root",
        become_password: Optional[str] = None,
        ctx: ExecutionContext | None = None,
        timeout: float = 1800,
    ):
        super().__init__(ctx, timeout)
        self.client = client
        self.username = username
        self.become_password = become_password

    def _exec(self, cmd: str, timeout: float) -> CommandResult:
        sudo = self.username != "root"
        if sudo:
            final = f"sudo -S -p '' bash -lc {shq(cmd)}"
        else:
            final = f"bash -lc {shq(cmd)}"

        stdin, stdout, stderr = self.client.exec_command(final, timeout=timeout)
        if sudo and self.become_password:
            stdin.write(self.become_password + "\n")
        stdin.flush()
        out = stdout.read().decode("utf-8", errors="replace")
        err = stderr.read().decode("utf-8", errors="replace")
        rc = stdout.channel.recv_exit_status()
        return CommandResult(rc=rc, stdout=out, stderr=err)

    def _upload(self, content: str, tmp_path: str) -> None:
        sftp = self.client.open_sftp()
        try:
            with sftp.file(tmp_path, "w") as f:
                f.write(content)
        finally:
            sftp.close()

    def close(self) -> None:
        self.client.close()


def _load_pkey(path: Path):
    for key_cls in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
        try:
            return key_cls.from_private_key_file(str(path))
        except paramiko.SSHException:
            continue
    raise PrerequisiteError(f"Unsupported private key format for {path}")


def open_ssh(target: TargetSpec, *, sleep=time.sleep) -> paramiko.SSHClient:
    """
    Connect to the target, retrying while a freshly booted host comes up.
    """
    pkey = _load_pkey(target.pkey_path) if target.pkey_path else None

    def _on_retry(attempt: int, exc: Exception) -> None:
        log.info(
            "[%s] SSH not ready (attempt %d/%d, %s: %s), retrying in %ds...",
            target.address, attempt, target.connect_attempts,
            type(exc).__name__, exc, target.connect_delay_seconds,
        )

    @retry(
        retries=target.connect_attempts,
        delay=target.connect_delay_seconds,
        retry_on=(paramiko.SSHException, OSError),
        on_retry=_on_retry,
        sleep=sleep,
    )
    def _connect() -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        client.connect(
            hostname=target.address,
            port=target.port,
            username=target.username,
            password=target.password if not pkey else None,
            pkey=pkey,
            timeout=30,
            allow_agent=pkey is None,
            look_for_keys=pkey is None,
        )
        return client

    try:
        return _connect()
    except RetryError as e:
        raise PrerequisiteError(
            f"Failed to SSH into {target.address} as '{target.username}' "
            f"after {target.connect_attempts} attempts: {e.__cause__}"
        ) from e


def build_shell(target: TargetSpec, ctx: ExecutionContext) -> Shell:
    if not target.address:
        return LocalShell(ctx, timeout=target.command_timeout_seconds)
    client = open_ssh(target)
    return SshShell(
        client,
        username=target.username,
        become_password=target.password,
        ctx=ctx,
        timeout=target.command_timeout_seconds,
    )
