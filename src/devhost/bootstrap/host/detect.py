# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/devhost/bootstrap/host/detect.py

from __future__ import annotations

import ipaddress
import logging
import re
from typing import Callable, Dict, List, Optional

from devhost.config.models import SetupConfig
from devhost.errors import AddressDetectionError, OsDetectionError, PrerequisiteError
from devhost.execution.shell import CommandError, Shell

from .models import AddressFamily, InitStrategy, RunContext, UserSwitch

log = logging.getLogger("devhost")

_INET6 = re.compile(r"inet6\s+([0-9a-fA-F:]+)(?:/\d+)?(.*)$")


def require_root(shell: Shell) -> None:
    res = shell.run("id -u", mutating=False)
    if res.stdout.strip() != "0":
        raise PrerequisiteError("Please run as root")


def parse_os_release(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        out[key] = value.strip().strip('"').strip("'")
    return out


def detect_os(shell: Shell) -> tuple[str, str]:
    """Return (ID, VERSION_CODENAME) from /etc/os-release."""
    res = shell.run("cat /etc/os-release", mutating=False)
    if not res.ok:
        raise OsDetectionError("Cannot detect OS: /etc/os-release is not readable")
    data = parse_os_release(res.stdout)
    os_id = data.get("ID")
    if not os_id:
        raise OsDetectionError("Cannot detect OS: no ID in /etc/os-release")

    codename = data.get("VERSION_CODENAME") or data.get("UBUNTU_CODENAME") or ""
    if not codename:
        lsb = shell.run("lsb_release -cs", mutating=False)
        codename = lsb.stdout.strip() if lsb.ok else ""
    return os_id, codename


def detect_init_strategy(shell: Shell) -> InitStrategy:
    """
    SYSTEMD when a systemd process is present, NO_SYSTEMD otherwise
    (containers, GPU pods). Read-only.
    """
    res = shell.run("pidof systemd", mutating=False)
    return InitStrategy.SYSTEMD if res.ok else InitStrategy.NO_SYSTEMD


def detect_user_switch(shell: Shell) -> UserSwitch:
    res = shell.run("command -v sudo", mutating=False)
    return UserSwitch.SUDO if res.ok and res.stdout.strip() else UserSwitch.SU


def detect_ipv4(shell: Shell) -> str:
    res = shell.run("hostname -I", mutating=False)
    for token in res.stdout.split():
        try:
            if ipaddress.ip_address(token).version == 4:
                return token
        except ValueError:
            continue
    raise AddressDetectionError("Could not detect an IPv4 address (hostname -I returned nothing)")


def _inet6_entries(output: str) -> List[tuple[str, str]]:
    """(address, rest-of-line) pairs from ``ip -6 addr show`` output."""
    entries = []
    for raw in output.splitlines():
        m = _INET6.search(raw.strip())
        if m:
            entries.append((m.group(1).lower(), m.group(2)))
    return entries


def _usable_ipv6(addr: str) -> bool:
    return not (addr == "::1" or addr.startswith("fe80") or addr.startswith("::"))


def detect_ipv6(
    shell: Shell,
    *,
    configured: Optional[str] = None,
    prompt: Optional[Callable[[], str]] = None,
) -> str:
    """
    Fallback chain:
      1. first inet6 with scope global
      2. any inet6 that is not loopback, link-local or unspecified-prefixed
      3. the same, restricted to eth0
      4. the configured address, then an interactive prompt
    """
    entries = _inet6_entries(shell.run("ip -6 addr show", mutating=False).stdout)

    for addr, rest in entries:
        if "scope global" in rest and addr != "::1":
            return addr

    for addr, _ in entries:
        if _usable_ipv6(addr):
            return addr

    eth0 = _inet6_entries(shell.run("ip -6 addr show eth0", mutating=False).stdout)
    for addr, _ in eth0:
        if not addr.startswith("fe80") and addr != "::1":
            return addr

    candidate = configured
    if not candidate and prompt is not None:
        log.warning("Could not auto-detect IPv6 address")
        candidate = prompt().strip()

    if candidate:
        try:
            ipaddress.IPv6Address(candidate)
        except ValueError as e:
            raise AddressDetectionError(f"Not an IPv6 address: {candidate}") from e
        return candidate

    raise AddressDetectionError("Could not auto-detect IPv6 address")


def resolve_user(shell: Shell, cfg: SetupConfig, sudo_user: Optional[str]) -> tuple[str, str]:
    """
    Development user and home: explicit config, then the invoking sudo user,
    then a created fallback account.
    """
    name = cfg.user.name or sudo_user
    if not name or name == "root":
        name = cfg.user.fallback_name
        try:
            shell.run(f"id -u {name} >/dev/null 2>&1 || useradd -m -s /bin/bash {name}", check=True)
        except CommandError as e:
            raise PrerequisiteError(f"Could not create user {name}: {e}") from e

    res = shell.run(f"getent passwd {name} | cut -d: -f6", mutating=False)
    home = res.stdout.strip() or f"/home/{name}"
    return name, home


def detect_host(
    shell: Shell,
    cfg: SetupConfig,
    *,
    sudo_user: Optional[str] = None,
    prompt: Optional[Callable[[], str]] = None,
) -> RunContext:
    """
    Single capability-detection step. Fatal problems raise SetupError
    subclasses; nothing here is re-detected later in the run.
    """
    require_root(shell)
    os_id, codename = detect_os(shell)
    init = detect_init_strategy(shell)
    switch = detect_user_switch(shell)

    if cfg.variant == "ipv6":
        address = detect_ipv6(shell, configured=cfg.server_address, prompt=prompt)
        family = AddressFamily.IPV6
    else:
        address = cfg.server_address or detect_ipv4(shell)
        family = AddressFamily.IPV6 if ":" in address else AddressFamily.IPV4

    user, home = resolve_user(shell, cfg, sudo_user)

    ctx = RunContext(
        variant=cfg.variant,
        os_id=os_id,
        os_codename=codename,
        init_strategy=init,
        user_switch=switch,
        address=address,
        address_family=family,
        user=user,
        user_home=home,
    )
    log.info(
        "Detected os=%s init=%s address=%s user=%s",
        os_id, init.value, address, user,
    )
    return ctx
