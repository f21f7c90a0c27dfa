# src/devhost/bootstrap/services/probes.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

import requests
import urllib3

from devhost.execution.shell import Shell, shq

log = logging.getLogger("devhost")


class ReadinessProbe(Protocol):
    def check(self) -> bool: ...

    def describe(self) -> str: ...


def pgrep_pattern(pattern: str) -> str:
    """
    Bracket the first character so the pattern does not match the
    ``bash -lc`` command line that carries it.
    """
    if not pattern:
        return pattern
    return f"[{pattern[0]}]{pattern[1:]}"


@dataclass
class CommandProbe:
    """Ready when the command exits 0 on the host."""
    shell: Shell
    command: str
    timeout: float = 30

    def check(self) -> bool:
        return self.shell.run(self.command, mutating=False, timeout=self.timeout).ok

    def describe(self) -> str:
        return self.command


@dataclass
class ProcessProbe:
    """Ready when a process whose command line matches ``pattern`` exists."""
    shell: Shell
    pattern: str

    def check(self) -> bool:
        cmd = f"pgrep -f {shq(pgrep_pattern(self.pattern))} > /dev/null"
        return self.shell.run(cmd, mutating=False).ok

    def describe(self) -> str:
        return f"process matching '{self.pattern}'"


@dataclass
class HttpProbe:
    """
    Ready when the URL answers with a status below ``max_status``.
    401 from basic auth and 302 to a login page both count as serving.
    """
    url: str
    timeout: float = 5.0
    verify: bool = False
    max_status: int = 500

    def check(self) -> bool:
        if not self.verify:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)
        try:
            resp = requests.get(self.url, timeout=self.timeout, verify=self.verify, allow_redirects=False)
        except requests.RequestException as e:
            log.debug("probe %s: %s", self.url, e)
            return False
        return resp.status_code < self.max_status

    def describe(self) -> str:
        return f"GET {self.url}"
