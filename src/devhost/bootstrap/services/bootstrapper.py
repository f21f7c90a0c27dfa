# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/devhost/bootstrap/services/bootstrapper.py

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Optional

from devhost.bootstrap.host.models import InitStrategy, RunContext
from devhost.errors import InitActionFailed, ReadinessTimeout, StartFailed
from devhost.execution.shell import CommandError, Shell, shq
from devhost.observers.dispatcher import EventBus
from devhost.observers.events import (
    new_ctx,
    BootstrapSummary,
    FallbackAttempted,
    InitActionRan,
    InitActionSkipped,
    ProbeAttempt,
    ServiceAlreadyRunning,
    ServiceReady,
    ServiceStartFailed,
    ServiceStarting,
    ServiceTimedOut,
)

from .models import (
    BackgroundNohup,
    BootstrapReport,
    ForegroundDaemonize,
    ProbeResult,
    Readiness,
    ServiceOutcome,
    ServiceSpec,
    ServiceState,
    SystemdUnit,
)
from .probes import pgrep_pattern

log = logging.getLogger("devhost")

LOGIN_HOOK_MARKER = "# devhost: auto-start"

_FAIL_FAST_ERRORS: Dict[ServiceState, type] = {
    ServiceState.START_FAILED: StartFailed,
    ServiceState.TIMED_OUT: ReadinessTimeout,
}


class ServiceBootstrapper:
    """
    Brings declared services from "not running" to "verified ready", one at a
    time, in the order given:

      start -> wait_until_ready -> (one fallback start on timeout)
            -> run_init_action_once

    A service that cannot be made ready is recorded and the next service is
    still attempted, unless ``fail_fast`` is set. The init strategy comes from
    the RunContext and is the same for every service in the run.
    """

    def __init__(
        self,
        shell: Shell,
        run_ctx: RunContext,
        *,
        bus: Optional[EventBus] = None,
        event_ctx: Optional[Dict] = None,
        dry_run: bool = False,
        fail_fast: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.shell = shell
        self.run_ctx = run_ctx
        self.bus = bus or EventBus()
        self.event_ctx = event_ctx or new_ctx(run_ctx.variant, None)
        self.dry_run = dry_run
        self.fail_fast = fail_fast
        self.sleep = sleep

    @property
    def strategy(self) -> InitStrategy:
        return self.run_ctx.init_strategy

    # ------------------ start ------------------

    def is_running(self, spec: ServiceSpec) -> bool:
        cmd = f"pgrep -f {shq(pgrep_pattern(spec.process_pattern))} > /dev/null"
        return self.shell.run(cmd, mutating=False).ok

    def _launch_command(self, spec: ServiceSpec) -> str:
        manual = spec.manual
        if isinstance(manual, ForegroundDaemonize):
            return manual.command
        inner = manual.inner_command()
        if manual.user and manual.user != "root":
            return self.run_ctx.as_user(inner, user=manual.user)
        return inner

    def _guard_body(self, spec: ServiceSpec) -> str:
        manual = spec.manual
        if isinstance(manual, BackgroundNohup):
            launch = manual.inner_command()
            # root-owned guards still have to drop to the service account
            if manual.user and manual.user != "root" and manual.user != spec.guard_owner:
                launch = self.run_ctx.as_user(launch, user=manual.user)
        else:
            launch = manual.command
        return (
            "#!/bin/bash\n"
            f"if ! pgrep -f {shq(pgrep_pattern(spec.process_pattern))} > /dev/null; then\n"
            f"    {launch}\n"
            "fi\n"
        )

    def _install_guard(self, spec: ServiceSpec) -> None:
        if not spec.guard_script:
            return
        owner = f"{spec.guard_owner}:{spec.guard_owner}" if spec.guard_owner else None
        self.shell.put_text(self._guard_body(spec), spec.guard_script, mode=0o755, owner=owner)

        if spec.login_hook:
            bashrc = f"{self.run_ctx.user_home}/.bashrc"
            hook = f"[ -x {spec.guard_script} ] && {spec.guard_script}"
            cmd = (
                f"touch {bashrc} && "
                f"(grep -qF {shq(spec.guard_script)} {bashrc} || "
                f"printf '\\n%s\\n%s\\n' {shq(LOGIN_HOOK_MARKER)} {shq(hook)} >> {bashrc})"
            )
            self.shell.run(cmd, check=True)

    def start(self, spec: ServiceSpec) -> None:
        """
        Start via systemd or a detached process, depending on the run's init
        strategy. Safe to call on a running service. Raises StartFailed.
        """
        strategy = spec.start_strategy(self.strategy)
        self.bus.emit(ServiceStarting(name=spec.name, strategy=type(strategy).__name__, **self.event_ctx))

        for cmd in spec.prepare:
            res = self.shell.run(cmd)
            if not res.ok:
                raise StartFailed(spec.name, f"prepare step failed: {cmd}")

        if isinstance(strategy, SystemdUnit):
            steps = []
            if strategy.daemon_reload:
                steps.append("systemctl daemon-reload")
            steps.append(f"systemctl enable {strategy.unit}")
            steps.append(f"systemctl {'restart' if strategy.restart else 'start'} {strategy.unit}")
            for cmd in steps:
                res = self.shell.run(cmd)
                if not res.ok:
                    raise StartFailed(spec.name, f"{cmd} exited {res.rc}: {res.stderr.strip()}")
            return

        try:
            self._install_guard(spec)
        except CommandError as e:
            raise StartFailed(spec.name, f"could not install start guard: {e}") from e

        if self.is_running(spec):
            log.info("[%s] already running, not launching again", spec.name)
            self.bus.emit(ServiceAlreadyRunning(name=spec.name, **self.event_ctx))
            return

        cmd = self._launch_command(spec)
        res = self.shell.run(cmd)
        if not res.ok:
            raise StartFailed(spec.name, f"launch exited {res.rc}: {res.stderr.strip()}")

    # ------------------ readiness ------------------

    def _probe_once(self, spec: ServiceSpec) -> bool:
        try:
            return bool(spec.probe.check())
        except Exception as e:
            log.debug("[%s] probe raised %s: %s", spec.name, type(e).__name__, e)
            return False

    def wait_until_ready(self, spec: ServiceSpec) -> Readiness:
        """
        Probe up to ``max_probe_attempts`` times, ``probe_interval_seconds``
        apart. Returns on the first success; never sleeps after the last probe.
        """
        total = max(1, spec.max_probe_attempts)
        log.info("[%s] waiting for %s", spec.name, spec.probe.describe())
        for attempt in range(1, total + 1):
            ok = self._probe_once(spec)
            self.bus.emit(ProbeAttempt(name=spec.name, attempt=attempt, max_attempts=total, ok=ok, **self.event_ctx))
            if ok:
                return Readiness(ProbeResult.READY, attempt)
            if attempt < total:
                self.sleep(spec.probe_interval_seconds)
        return Readiness(ProbeResult.TIMED_OUT, total)

    def diagnose(self, spec: ServiceSpec) -> Optional[str]:
        """Log the tail of the service logs; return a best guess at the cause."""
        for path in spec.log_paths:
            res = self.shell.run(f"[ -f {path} ] && tail -n 20 {path}", mutating=False)
            if res.ok and res.stdout.strip():
                log.warning("[%s] last lines of %s:\n%s", spec.name, path, res.stdout.rstrip())

        if spec.port:
            cmd = (
                f"(ss -ltn 2>/dev/null || netstat -tln 2>/dev/null) "
                f"| grep -q ':{spec.port}\\b'"
            )
            if self.shell.run(cmd, mutating=False).ok:
                return f"port {spec.port} is already in use; another instance may be running"
        return None

    def _try_fallback(self, spec: ServiceSpec) -> bool:
        log.info("[%s] trying alternative start: %s", spec.name, spec.fallback_command)
        res = self.shell.run(spec.fallback_command)
        ok = False
        if res.ok:
            self.sleep(spec.fallback_settle_seconds)
            ok = self._probe_once(spec)
        self.bus.emit(FallbackAttempted(name=spec.name, ok=ok, **self.event_ctx))
        return ok

    # ------------------ one-time init ------------------

    def run_init_action_once(self, spec: ServiceSpec) -> bool:
        """
        Run the init action unless its marker is already present on the host.
        Returns True when the action ran. Raises InitActionFailed.
        """
        action = spec.init_action
        if action is None:
            return False

        try:
            present = action.marker()
        except Exception as e:
            raise InitActionFailed(spec.name, f"marker check failed: {e}") from e

        if present:
            log.info("[%s] %s already done (%s present), skipping", spec.name, action.description, action.marker_name)
            self.bus.emit(InitActionSkipped(name=spec.name, marker=action.marker_name, **self.event_ctx))
            return False

        log.info("[%s] %s", spec.name, action.description)
        try:
            action.action()
        except Exception as e:
            raise InitActionFailed(spec.name, f"{action.description} failed: {e}") from e
        self.bus.emit(InitActionRan(name=spec.name, **self.event_ctx))
        return True

    # ------------------ per service / whole run ------------------

    def bring_up(self, spec: ServiceSpec) -> ServiceOutcome:
        outcome = ServiceOutcome(name=spec.name, state=ServiceState.STARTING)
        log.info("[%s] starting (%s)", spec.name, self.strategy.value)

        try:
            self.start(spec)
        except StartFailed as e:
            outcome.state = ServiceState.START_FAILED
            outcome.error = str(e)
            log.error("%s", e)
            self.diagnose(spec)
            self.bus.emit(ServiceStartFailed(name=spec.name, error=str(e), **self.event_ctx))
            return outcome

        if self.dry_run:
            log.info("[%s] dry-run: readiness not probed", spec.name)
            outcome.state = ServiceState.READY
            return outcome

        readiness = self.wait_until_ready(spec)
        outcome.attempts = readiness.attempts

        if not readiness.ready:
            diagnosis = self.diagnose(spec)
            recovered = False
            if spec.fallback_command:
                outcome.fallback_used = True
                recovered = self._try_fallback(spec)
            if not recovered:
                outcome.state = ServiceState.TIMED_OUT
                outcome.error = diagnosis or f"not ready after {readiness.attempts} probes"
                log.error("[%s] failed to become ready: %s", spec.name, outcome.error)
                self.bus.emit(ServiceTimedOut(name=spec.name, attempts=readiness.attempts, diagnosis=diagnosis, **self.event_ctx))
                return outcome

        outcome.state = ServiceState.READY
        self.bus.emit(ServiceReady(name=spec.name, attempts=outcome.attempts, **self.event_ctx))

        try:
            if self.run_init_action_once(spec):
                outcome.init_ran = True
        except InitActionFailed as e:
            # the daemon itself is up; the failure is still reported
            outcome.error = str(e)
            log.error("%s", e)
            return outcome

        if spec.init_action is not None:
            outcome.state = ServiceState.INITIALIZED
        return outcome

    def bootstrap(self, specs: List[ServiceSpec]) -> BootstrapReport:
        report = BootstrapReport()
        for spec in specs:
            outcome = self.bring_up(spec)
            report.add(outcome)
            if self.fail_fast and not outcome.ok:
                self._emit_summary(report)
                raise _FAIL_FAST_ERRORS.get(outcome.state, InitActionFailed)(
                    spec.name, outcome.error or outcome.state.value
                )

        self._emit_summary(report)
        log.info("services: %s", report.summary())
        return report

    def _emit_summary(self, report: BootstrapReport) -> None:
        self.bus.emit(
            BootstrapSummary(
                ok=len(report.succeeded),
                failed=len(report.failed),
                failed_services=[o.name for o in report.failed],
                **self.event_ctx,
            )
        )
