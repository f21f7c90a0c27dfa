# src/devhost/cli/app.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import typer

from devhost.bootstrap.credentials import Credentials
from devhost.bootstrap.services.models import BootstrapReport
from devhost.bootstrap.setup_manager import SetupManager
from devhost.config.loader import load_config
from devhost.config.models import SetupConfig
from devhost.errors import ServiceError, SetupError
from devhost.execution.shell import build_shell
from devhost.logging.log import init_logging
from devhost.observers.console import ConsoleObserver
from devhost.observers.dispatcher import EventBus
from devhost.observers.jsonfile import JsonFileObserver
from devhost.observers.logger import LoggerObserver
from devhost.utils.execution import ExecutionContext


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="devhost: provision a browser-accessible development host")

VARIANTS = ("regular", "ipv6", "gpu-pod", "plain")


def _build_config(
    config: Optional[Path],
    variant: Optional[str],
    host: Optional[str],
    ssh_user: Optional[str],
    ssh_key: Optional[Path],
    ssh_password: Optional[str],
    strict: bool,
) -> SetupConfig:
    cfg = load_config(config)
    if variant:
        if variant not in VARIANTS:
            raise typer.BadParameter(
                f"Unknown variant: {variant}. Valid variants: {', '.join(VARIANTS)}",
                param_hint="--variant",
            )
        cfg.variant = variant
    if host:
        cfg.target.address = host
    if ssh_user:
        cfg.target.username = ssh_user
    if ssh_key:
        cfg.target.pkey_path = ssh_key.expanduser()
    if ssh_password:
        cfg.target.password = ssh_password
    if strict:
        cfg.policy.strict = True
    return cfg


def _prompt_ipv6() -> str:
    return typer.prompt("Could not auto-detect an IPv6 address. Enter the server IPv6 address")


def _sudo_user(cfg: SetupConfig) -> Optional[str]:
    # only meaningful when provisioning the machine we run on
    if cfg.target.address:
        return None
    return os.environ.get("SUDO_USER")


def _print_report(report: BootstrapReport) -> None:
    if not report.outcomes:
        return
    typer.echo("")
    typer.secho("Services", bold=True)
    for o in report.outcomes:
        colour = typer.colors.GREEN if o.ok else typer.colors.RED
        line = f"  {o.name:<12} {o.state.value}"
        if o.fallback_used:
            line += " (fallback start used)"
        if o.error:
            line += f": {o.error}"
        typer.secho(line, fg=colour)


def _print_credentials(creds: Credentials) -> None:
    typer.echo("")
    typer.secho("Access", bold=True)
    if creds.editor_url:
        typer.echo(f"  URL              : {creds.editor_url}")
    if creds.basic_auth_user:
        typer.echo(f"  Basic auth user  : {creds.basic_auth_user}")
        typer.echo(f"  Basic auth pass  : {creds.basic_auth_password}")
    if creds.editor_password:
        typer.echo(f"  Editor password  : {creds.editor_password}")
    for key, value in creds.database.items():
        typer.echo(f"  DB {key:<13} : {value}")
    for note in creds.notes:
        typer.echo(f"  {note}")
    typer.echo("")
    typer.secho("Save these credentials now; they are not stored anywhere else.", fg=typer.colors.YELLOW)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def setup(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Setup YAML"),
    variant: Optional[str] = typer.Option(None, "--variant", help="regular, ipv6, gpu-pod or plain"),
    host: Optional[str] = typer.Option(None, "--host", help="Provision this host over SSH instead of locally"),
    ssh_user: Optional[str] = typer.Option(None, "--ssh-user"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    ssh_password: Optional[str] = typer.Option(None, "--ssh-password"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Log mutating commands without running them"),
    strict: bool = typer.Option(False, "--strict", help="Exit 1 when any service failed"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Provision the host for the selected variant."""
    cfg = _build_config(config, variant, host, ssh_user, ssh_key, ssh_password, strict)

    logger, run_id, log_path = init_logging(verbose=verbose)

    typer.echo("")
    typer.secho("devhost setup started", bold=True)
    typer.echo(f"  Variant  : {cfg.variant}")
    typer.echo(f"  Target   : {cfg.target.address or 'localhost'}")
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    if dry_run:
        typer.secho("  DRY RUN: nothing will be changed on the host", fg=typer.colors.YELLOW)

    bus = EventBus([
        ConsoleObserver(),
        LoggerObserver(logger),
        JsonFileObserver(log_path.with_suffix(".jsonl")),
    ])

    shell = None
    try:
        shell = build_shell(cfg.target, ExecutionContext(dry_run=dry_run))
        manager = SetupManager(shell, cfg, bus=bus, run_id=run_id, dry_run=dry_run)
        result = manager.run(sudo_user=_sudo_user(cfg), prompt=_prompt_ipv6)
    except (SetupError, ServiceError) as e:
        logger.error("setup failed: %s", e)
        typer.secho(f"\nSetup failed: {e}", fg=typer.colors.RED)
        typer.echo(f"Full log: {log_path}")
        raise typer.Exit(code=1)
    finally:
        if shell is not None:
            shell.close()

    _print_report(result.report)
    _print_credentials(result.credentials)

    if result.report.failed:
        names = ", ".join(o.name for o in result.report.failed)
        typer.secho(f"Some services are not ready: {names}. See {log_path}", fg=typer.colors.RED)
        if cfg.policy.strict:
            raise typer.Exit(code=1)
    else:
        typer.secho("Setup complete", fg=typer.colors.GREEN)


@app.command()
def status(
    config: Optional[Path] = typer.Option(None, "--config", "-c"),
    variant: Optional[str] = typer.Option(None, "--variant"),
    host: Optional[str] = typer.Option(None, "--host"),
    ssh_user: Optional[str] = typer.Option(None, "--ssh-user"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    ssh_password: Optional[str] = typer.Option(None, "--ssh-password"),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
):
    """Run every readiness probe once and report; starts nothing."""
    cfg = _build_config(config, variant, host, ssh_user, ssh_key, ssh_password, False)
    init_logging(verbose=verbose)

    shell = None
    try:
        shell = build_shell(cfg.target, ExecutionContext())
        manager = SetupManager(shell, cfg)
        manager.detect(sudo_user=_sudo_user(cfg), prompt=_prompt_ipv6)
        statuses = manager.probe_services()
    except SetupError as e:
        typer.secho(f"Status check failed: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    finally:
        if shell is not None:
            shell.close()

    for s in statuses:
        colour = typer.colors.GREEN if s.ready else typer.colors.RED
        state = "ready" if s.ready else ("running, not ready" if s.running else "down")
        typer.secho(f"  {s.name:<12} {state}  ({s.probe})", fg=colour)

    if not all(s.ready for s in statuses):
        raise typer.Exit(code=1)


@app.command()
def detect(
    config: Optional[Path] = typer.Option(None, "--config", "-c"),
    variant: Optional[str] = typer.Option(None, "--variant"),
    host: Optional[str] = typer.Option(None, "--host"),
    ssh_user: Optional[str] = typer.Option(None, "--ssh-user"),
    ssh_key: Optional[Path] = typer.Option(None, "--ssh-key"),
    ssh_password: Optional[str] = typer.Option(None, "--ssh-password"),
):
    """Print what the host looks like to devhost."""
    cfg = _build_config(config, variant, host, ssh_user, ssh_key, ssh_password, False)

    shell = None
    try:
        shell = build_shell(cfg.target, ExecutionContext(dry_run=True))
        ctx = SetupManager(shell, cfg, dry_run=True).detect(sudo_user=_sudo_user(cfg), prompt=_prompt_ipv6)
    except SetupError as e:
        typer.secho(f"Detection failed: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    finally:
        if shell is not None:
            shell.close()

    typer.echo(f"variant        : {ctx.variant}")
    typer.echo(f"os             : {ctx.os_id} {ctx.os_codename}")
    typer.echo(f"init strategy  : {ctx.init_strategy.value}")
    typer.echo(f"user switch    : {ctx.user_switch.value}")
    typer.echo(f"address        : {ctx.address} ({ctx.address_family.value})")
    typer.echo(f"user           : {ctx.user} ({ctx.user_home})")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
