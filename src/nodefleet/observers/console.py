# src/nodefleet/observers/console.py
import typer

from .events import BaseEvent, HostUnreachable, StepFailed, MonitoringFailed, ProvisionSummary

_FAILURES = (HostUnreachable, StepFailed, MonitoringFailed)


class ConsoleObserver:
    def notify(self, event: BaseEvent) -> None:
        d = event.dict()
        k = event.__class__.__name__
        data = ", ".join(f"{x}={y}" for x, y in d.items() if x not in ("ts", "run_id", "cluster", "network"))
        line = f"[{d['ts']}] {k} cluster={d['cluster']} {data}"
        if isinstance(event, _FAILURES) or (isinstance(event, ProvisionSummary) and event.failed):
            typer.secho(line, fg="red")
        else:
            typer.echo(line)
