"""
Pipeline orchestrator.

Runs stages strictly in declaration order on the calling thread. Destructive
stages sit behind a confirmation gate; a failed fatal stage halts the rest of the
pipeline, a failed non-fatal stage is recorded and the run carries on. Whole
stages are never retried here (retrying is the Poller's job).
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from rich.table import Table

from eksops import console
from eksops.checks import Check
from eksops.context import ConfirmationPolicy, RunContext
from eksops.errors import UserAborted
from eksops.stage import RunResult, RunStatus, Stage

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_PARTIAL = 2

STATUS_STYLE = {
    RunStatus.SKIPPED: "dim",
    RunStatus.APPLIED: "green",
    RunStatus.FAILED: "red",
    RunStatus.ROLLED_BACK: "yellow",
}


@dataclass
class Pipeline:
    """A fixed, ordered stage list plus (for teardown) residual-resource checks."""
    name: str
    stages: list[Stage]
    description: str = ""
    teardown: bool = False
    residual_checks: list[Check] = field(default_factory=list)

    def select(self, names: list[str] | None) -> 'Pipeline':
        """Restrict to the named stages, keeping declaration order."""
        if not names:
            return self
        unknown = set(names) - {s.name for s in self.stages}
        if unknown:
            raise KeyError(f"Unknown stage(s) in {self.name}: {', '.join(sorted(unknown))}")
        stages = [s for s in self.stages if s.name in names]
        return Pipeline(self.name, stages, self.description, self.teardown, self.residual_checks)


@dataclass
class RunReport:
    pipeline: str
    results: list[RunResult]
    residual: list[str] = field(default_factory=list)
    started_at: str = ""
    finished_at: str = ""
    halted_at: str | None = None
    cancelled: bool = False

    @property
    def exit_code(self) -> int:
        """0 all good; 1 a fatal stage failed or the run was cancelled; 2 only non-fatal failures."""
        if self.halted_at or self.cancelled:
            return EXIT_FATAL
        if any(r.failed for r in self.results):
            return EXIT_PARTIAL
        return EXIT_OK

    def to_dict(self) -> dict:
        return {
            'pipeline': self.pipeline,
            'results': [r.to_dict() for r in self.results],
            'residual': self.residual,
            'started_at': self.started_at,
            'finished_at': self.finished_at,
            'halted_at': self.halted_at,
            'cancelled': self.cancelled,
            'exit_code': self.exit_code,
        }

    @classmethod
    def from_dict(cls, d: dict) -> 'RunReport':
        return cls(
            pipeline=d['pipeline'],
            results=[RunResult.from_dict(r) for r in d.get('results', [])],
            residual=d.get('residual', []),
            started_at=d.get('started_at', ''),
            finished_at=d.get('finished_at', ''),
            halted_at=d.get('halted_at'),
            cancelled=d.get('cancelled', False),
        )

    def save(self, path: Path) -> None:
        Path(path).write_text(json.dumps(self.to_dict(), indent=2))

    @classmethod
    def load(cls, path: Path) -> 'RunReport | None':
        path = Path(path)
        if not path.exists():
            return None
        try:
            return cls.from_dict(json.loads(path.read_text()))
        except (json.JSONDecodeError, KeyError, ValueError):
            logger.warning("ignoring unreadable run report %s", path)
            return None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Orchestrator:
    """Manages staged execution for one invocation."""

    def __init__(self, context: RunContext, policy: ConfirmationPolicy | None = None, confirm=None):
        self.context = context
        if policy is not None:
            context.policy = policy
        if confirm is not None:
            context.confirm = confirm
        self.results: list[RunResult] = []
        self.halted_at: str | None = None

    @property
    def policy(self) -> ConfirmationPolicy:
        return self.context.policy

    def confirm_gate(self, stage: Stage) -> bool:
        if self.policy == ConfirmationPolicy.AUTO_APPROVE:
            return True
        if self.policy == ConfirmationPolicy.DENY:
            return False
        question = f"Proceed with '{stage.name}'?"
        if stage.description:
            question = f"{stage.description}. {question} This cannot be undone"
        return self.context.confirm(question, False)

    def run_pipeline(self, stages: list[Stage]) -> list[RunResult]:
        """Run stages in order and return the run log."""
        self.results = []
        self.halted_at = None
        total = len(stages)

        for index, stage in enumerate(stages, 1):
            if self.context.cancel.is_set():
                console.warning("Run cancelled; remaining stages not started")
                break

            console.section(f"Stage {index}/{total}: {stage.name}")
            if stage.description:
                console.console.print(f"[dim]{stage.description}[/dim]")

            # Already satisfied stages skip without asking
            if stage.destructive and not stage.satisfied(self.context) and not self.confirm_gate(stage):
                declined = UserAborted("declined at confirmation gate")
                console.warning(f"{stage.name}: skipped ({declined})")
                self.results.append(RunResult(stage.name, RunStatus.SKIPPED, str(declined), fatal=stage.fatal))
                continue

            try:
                result = stage.run(self.context)
            except KeyboardInterrupt:
                self.context.cancel.set()
                console.console.print("\n[yellow]Interrupted. Run again to resume.[/yellow]")
                self.results.append(RunResult(stage.name, RunStatus.FAILED, "interrupted", fatal=stage.fatal))
                break

            self.results.append(result)
            if result.failed and stage.fatal:
                self.halted_at = stage.name
                console.error(f"Fatal stage '{stage.name}' failed; stopping. ({index - 1}/{total} stages completed)")
                break

        return self.results

    def run(self, pipeline: Pipeline) -> RunReport:
        started = _now()
        results = self.run_pipeline(pipeline.stages)

        residual = []
        if pipeline.teardown and pipeline.residual_checks and not self.context.cancel.is_set():
            residual = self.find_residual(pipeline.residual_checks)

        report = RunReport(
            pipeline=pipeline.name,
            results=list(results),
            residual=residual,
            started_at=started,
            finished_at=_now(),
            halted_at=self.halted_at,
            cancelled=self.context.cancel.is_set(),
        )
        display_summary(report)
        return report

    def find_residual(self, checks: list[Check]) -> list[str]:
        """Probe for resources a teardown may have left behind."""
        console.section("Checking for remaining resources")
        residual = []
        for requirement in checks:
            result = requirement.evaluate(self.context)
            if result.ok:
                console.success(result.detail)
            else:
                console.warning(result.detail)
                residual.append(result.detail)
        return residual


# ─────────────────────────────────────────────────────────────────────────────
# DISPLAY
# ─────────────────────────────────────────────────────────────────────────────

def display_summary(report: RunReport) -> None:
    table = Table(title=f"Run Summary: {report.pipeline}", border_style="cyan")
    table.add_column("Stage")
    table.add_column("Status")
    table.add_column("Time", justify="right", style="dim")
    table.add_column("Detail")

    for r in report.results:
        style = STATUS_STYLE[r.status]
        status = f"[{style}]{r.status.value}[/{style}]"
        if r.failed and not r.fatal:
            status += " [dim](non-fatal)[/dim]"
        detail = r.detail
        if r.warnings:
            detail = "\n".join([detail, *(f"[yellow]⚠ {w}[/yellow]" for w in r.warnings)]).strip()
        table.add_row(r.stage_name, status, f"{r.duration_ms / 1000:.1f}s", detail)

    console.console.print()
    console.console.print(table)

    if report.residual:
        console.console.print()
        console.console.print("[bold yellow]Some resources may not have been fully removed:[/bold yellow]")
        for item in report.residual:
            console.console.print(f"  [yellow]⚠ {item}[/yellow]")
        console.console.print("[dim]Check the AWS console to make sure everything is cleaned up.[/dim]")

    if report.exit_code == EXIT_OK:
        console.console.print(f"\n[bold green]✅ {report.pipeline} complete![/bold green]")
    elif report.exit_code == EXIT_PARTIAL:
        console.console.print(f"\n[bold yellow]{report.pipeline} finished with failures[/bold yellow]")
    else:
        console.console.print(f"\n[bold red]❌ {report.pipeline} failed[/bold red]")


def display_plan(pipeline: Pipeline, policy: ConfirmationPolicy) -> None:
    """What a run would do, without touching anything."""
    table = Table(title=f"{pipeline.name}: {pipeline.description}", border_style="cyan")
    table.add_column("#", style="dim")
    table.add_column("Stage")
    table.add_column("Fatal")
    table.add_column("Gate")
    table.add_column("Description", style="dim")
    for i, stage in enumerate(pipeline.stages, 1):
        gate = policy.value if stage.destructive else ""
        table.add_row(str(i), stage.name, "yes" if stage.fatal else "no", gate, stage.description)
    console.console.print(table)
