# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/devhost/bootstrap/services/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Union

from devhost.bootstrap.host.models import InitStrategy

from .probes import ReadinessProbe


class ServiceState(str, Enum):
    NOT_STARTED = "NOT_STARTED"
    STARTING = "STARTING"
    READY = "READY"
    START_FAILED = "START_FAILED"
    TIMED_OUT = "TIMED_OUT"
    INITIALIZED = "INITIALIZED"

    @property
    def succeeded(self) -> bool:
        return self in (ServiceState.READY, ServiceState.INITIALIZED)


class ProbeResult(str, Enum):
    READY = "READY"
    TIMED_OUT = "TIMED_OUT"


@dataclass(frozen=True)
class Readiness:
    result: ProbeResult
    attempts: int

    @property
    def ready(self) -> bool:
        return self.result is ProbeResult.READY


# ---------------------------------------------------------------------
# Start strategies
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class SystemdUnit:
    unit: str
    daemon_reload: bool = False   # unit file was placed by this run
    restart: bool = False         # pick up rewritten config on every run


@dataclass(frozen=True)
class ForegroundDaemonize:
    """A command that forks into the background by itself (redis --daemonize yes)."""
    command: str


@dataclass(frozen=True)
class BackgroundNohup:
    """A foreground process detached with nohup, output appended to ``log_path``."""
    command: str
    log_path: str
    user: Optional[str] = None

    def inner_command(self) -> str:
        return f"nohup {self.command} > {self.log_path} 2>&1 < /dev/null &"


StartStrategy = Union[SystemdUnit, ForegroundDaemonize, BackgroundNohup]
ManualStrategy = Union[ForegroundDaemonize, BackgroundNohup]


@dataclass(frozen=True)
class InitAction:
    """
    One-time setup guarded by a marker that lives on the host.
    ``marker`` returns True once the action has taken effect.
    """
    description: str
    marker_name: str
    marker: Callable[[], bool]
    action: Callable[[], None]


@dataclass
class ServiceSpec:
    name: str
    systemd: SystemdUnit
    manual: ManualStrategy
    probe: ReadinessProbe
    # pgrep -f pattern identifying the running daemon
    process_pattern: str
    init_action: Optional[InitAction] = None
    max_probe_attempts: int = 30
    probe_interval_seconds: float = 1.0
    # alternate start tried exactly once after a timeout
    fallback_command: Optional[str] = None
    fallback_settle_seconds: float = 3.0
    log_paths: List[str] = field(default_factory=list)
    port: Optional[int] = None
    # idempotent commands run before every start (directories, ownership)
    prepare: List[str] = field(default_factory=list)
    # no-systemd only: persisted "start if not running" script
    guard_script: Optional[str] = None
    guard_owner: Optional[str] = None
    # no-systemd only: run the guard from the user's login shell
    login_hook: bool = False

    def start_strategy(self, init: InitStrategy) -> StartStrategy:
        return self.systemd if init is InitStrategy.SYSTEMD else self.manual


@dataclass
class ServiceOutcome:
    name: str
    state: ServiceState = ServiceState.NOT_STARTED
    attempts: int = 0
    error: Optional[str] = None
    fallback_used: bool = False
    init_ran: bool = False

    @property
    def ok(self) -> bool:
        return self.state.succeeded and self.error is None


@dataclass
class BootstrapReport:
    outcomes: List[ServiceOutcome] = field(default_factory=list)

    def add(self, outcome: ServiceOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def succeeded(self) -> List[ServiceOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[ServiceOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def get(self, name: str) -> Optional[ServiceOutcome]:
        for o in self.outcomes:
            if o.name == name:
                return o
        return None

    def summary(self) -> str:
        return f"OK={len(self.succeeded)} FAILED={len(self.failed)}"
