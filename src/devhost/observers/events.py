# src/devhost/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single setup invocation
    variant: str      # regular/ipv6/gpu-pod/plain
    host: Optional[str]  # target address, None for the local machine

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(variant: str, host: Optional[str], run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "variant": variant,
        "host": host,
    }


# ---------------------------------------------------------------------
# Setup phase lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class SetupStarted(BaseEvent):
    steps: List[str]

@dataclass(frozen=True)
class HostDetected(BaseEvent):
    os_id: str
    init_strategy: str
    address: str
    user: str

@dataclass(frozen=True)
class StepStarted(BaseEvent):
    name: str
    index: int
    total: int

@dataclass(frozen=True)
class StepSucceeded(BaseEvent):
    name: str

@dataclass(frozen=True)
class PackagesInstalled(BaseEvent):
    packages: List[str]

@dataclass(frozen=True)
class ArtifactPlaced(BaseEvent):
    path: str

@dataclass(frozen=True)
class SetupFailed(BaseEvent):
    step: str
    error: str

@dataclass(frozen=True)
class SetupSummary(BaseEvent):
    status: str          # "OK", "DEGRADED" (some services failed) or "FAILED"
    error: Optional[str] = None


# ---------------------------------------------------------------------
# Service lifecycle (bootstrapper)
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ServiceStarting(BaseEvent):
    name: str
    strategy: str

@dataclass(frozen=True)
class ServiceAlreadyRunning(BaseEvent):
    name: str

@dataclass(frozen=True)
class ServiceStartFailed(BaseEvent):
    name: str
    error: str

@dataclass(frozen=True)
class ProbeAttempt(BaseEvent):
    name: str
    attempt: int
    max_attempts: int
    ok: bool

@dataclass(frozen=True)
class ServiceReady(BaseEvent):
    name: str
    attempts: int

@dataclass(frozen=True)
class ServiceTimedOut(BaseEvent):
    name: str
    attempts: int
    diagnosis: Optional[str] = None

@dataclass(frozen=True)
class FallbackAttempted(BaseEvent):
    name: str
    ok: bool

@dataclass(frozen=True)
class InitActionRan(BaseEvent):
    name: str

@dataclass(frozen=True)
class InitActionSkipped(BaseEvent):
    name: str
    marker: str

@dataclass(frozen=True)
class BootstrapSummary(BaseEvent):
    ok: int
    failed: int
    failed_services: List[str]
