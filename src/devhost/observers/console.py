# src/devhost/observers/console.py
import typer

from .events import (
    BaseEvent,
    BootstrapSummary,
    FallbackAttempted,
    ServiceReady,
    ServiceStartFailed,
    ServiceTimedOut,
    StepStarted,
)


class ConsoleObserver:
    """Short coloured progress lines; everything else goes to the log file."""

    def notify(self, event: BaseEvent) -> None:
        if isinstance(event, StepStarted):
            typer.secho(f"\n[{event.index}/{event.total}] {event.name}...", fg=typer.colors.YELLOW)
        elif isinstance(event, ServiceReady):
            typer.secho(f"✓ {event.name} is ready", fg=typer.colors.GREEN)
        elif isinstance(event, ServiceStartFailed):
            typer.secho(f"✗ {event.name} failed to start: {event.error}", fg=typer.colors.RED)
        elif isinstance(event, ServiceTimedOut):
            msg = f"✗ {event.name} not ready after {event.attempts} probes"
            if event.diagnosis:
                msg += f" ({event.diagnosis})"
            typer.secho(msg, fg=typer.colors.RED)
        elif isinstance(event, FallbackAttempted):
            state = "succeeded" if event.ok else "failed"
            typer.secho(f"  fallback start for {event.name} {state}", fg=typer.colors.YELLOW)
        elif isinstance(event, BootstrapSummary):
            colour = typer.colors.GREEN if not event.failed else typer.colors.RED
            typer.secho(f"services: OK={event.ok} FAILED={event.failed}", fg=colour)
