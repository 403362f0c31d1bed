"""Thin subprocess layer shared by every external CLI wrapper."""

import logging
import os
import subprocess
import sysconfig
from dataclasses import dataclass
from pathlib import Path

from eksops.errors import CommandError

logger = logging.getLogger(__name__)

# Searched when a tool is not on PATH (the workstation installs into several of these)
COMMON_PATHS = [
    Path.home() / ".local/bin",
    Path("/usr/local/bin"),
    Path("/opt/homebrew/bin"),
]


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def run_command(
    cmd: list[str],
    *,
    env: dict | None = None,
    cwd: Path | None = None,
    input: str | None = None,
    capture: bool = True,
    check: bool = True,
    timeout: float | None = None,
) -> CommandResult:
    """
    Run an external command.

    With check=True a non-zero exit raises CommandError. A missing executable or a
    timeout is reported the same way (exit codes 127 and 124), so callers only ever
    handle one error type.
    """
    logger.debug("running %s (cwd=%s)", " ".join(cmd), cwd or ".")
    full_env = None
    if env:
        full_env = {**os.environ, **env}
    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            env=full_env,
            input=input,
            capture_output=capture,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise CommandError(cmd, 127, f"{cmd[0]}: command not found")
    except subprocess.TimeoutExpired:
        raise CommandError(cmd, 124, f"{cmd[0]}: timed out after {timeout}s")

    result = CommandResult(proc.returncode, proc.stdout or "", proc.stderr or "")
    if check and not result.ok:
        raise CommandError(cmd, result.returncode, result.stderr, result.stdout)
    return result


def find_tool(tool: str) -> Path | None:
    """
    Locate an executable on PATH or in common install locations.

    When found outside PATH, its directory is prepended to PATH for this process.
    """
    for directory in os.environ.get("PATH", "").split(os.pathsep):
        candidate = Path(directory) / tool
        if directory and candidate.exists() and os.access(candidate, os.X_OK):
            return candidate

    search = list(COMMON_PATHS)
    scripts = Path(sysconfig.get_path("scripts"))
    if scripts not in search:
        search.append(scripts)

    for directory in search:
        candidate = directory / tool
        if candidate.exists() and os.access(candidate, os.X_OK):
            current = os.environ.get("PATH", "")
            os.environ["PATH"] = f"{directory}{os.pathsep}{current}"
            logger.debug("found %s in %s, added to PATH", tool, directory)
            return candidate
    return None


def tool_version(tool: str) -> str:
    """First line of the tool's version output, or '' if it cannot be read."""
    args = ["--version"] if tool in ("aws", "terraform", "jq") else ["version"]
    if tool == "kubectl":
        args = ["version", "--client"]
    try:
        result = run_command([tool, *args], check=False, timeout=10)
    except CommandError:
        return ""
    output = result.stdout.strip() or result.stderr.strip()
    return output.split("\n")[0] if output else ""
