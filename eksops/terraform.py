"""Terraform working-directory wrapper."""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

from eksops import console
from eksops.errors import CommandError
from eksops.shell import run_command

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ApplyResult:
    created: list[str] = field(default_factory=list)
    outputs: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class DestroyResult:
    destroyed: list[str] = field(default_factory=list)


class Terraform:
    """Runs terraform in one working directory. apply/destroy are idempotent."""

    def __init__(self, workdir: Path, env: dict | None = None, runner=run_command):
        self.workdir = Path(workdir)
        self.env = env
        self._run = runner

    def _cmd(self, *args: str, **kwargs):
        return self._run(["terraform", *args], cwd=self.workdir, env=self.env, **kwargs)

    @property
    def exists(self) -> bool:
        return self.workdir.is_dir()

    @property
    def initialized(self) -> bool:
        return (self.workdir / ".terraform").is_dir()

    def init(self) -> None:
        console.command(["terraform", "init"])
        self._cmd("init", "-input=false", capture=False)

    def ensure_init(self) -> None:
        if not self.initialized:
            self.init()

    def _var_args(self, variables: dict | None) -> list[str]:
        args = []
        for k, v in (variables or {}).items():
            args.extend(["-var", f"{k}={v}"])
        return args

    def has_changes(self, variables: dict | None = None) -> bool:
        """True when a plan would change anything (plan -detailed-exitcode == 2)."""
        self.ensure_init()
        result = self._cmd(
            "plan", "-detailed-exitcode", "-input=false", "-lock=false",
            *self._var_args(variables), check=False,
        )
        if result.returncode == 0:
            return False
        if result.returncode == 2:
            return True
        raise CommandError(["terraform", "plan"], result.returncode, result.stderr, result.stdout)

    def state_list(self) -> list[str]:
        """Addresses in state; empty when there is no state yet."""
        result = self._cmd("state", "list", check=False)
        if not result.ok:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def outputs(self) -> dict[str, str]:
        result = self._cmd("output", "-json", check=False)
        if not result.ok or not result.stdout.strip():
            return {}
        try:
            data = json.loads(result.stdout)
        except json.JSONDecodeError:
            logger.warning("unparseable terraform output in %s", self.workdir)
            return {}
        return {name: item.get("value") for name, item in data.items()}

    def apply(self, variables: dict | None = None) -> ApplyResult:
        self.ensure_init()
        before = set(self.state_list())
        cmd = ["apply", "-auto-approve", "-input=false", *self._var_args(variables)]
        console.command(["terraform", *cmd])
        self._cmd(*cmd, capture=False)
        created = [addr for addr in self.state_list() if addr not in before]
        return ApplyResult(created=created, outputs=self.outputs())

    def destroy(self, variables: dict | None = None) -> DestroyResult:
        self.ensure_init()
        before = self.state_list()
        cmd = ["destroy", "-auto-approve", "-input=false", *self._var_args(variables)]
        console.command(["terraform", *cmd])
        self._cmd(*cmd, capture=False)
        remaining = set(self.state_list())
        return DestroyResult(destroyed=[addr for addr in before if addr not in remaining])
