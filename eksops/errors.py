"""
Error types for eksops.

Stages convert these into RunResult entries at the stage boundary; none of them
is allowed to escape the orchestrator.
"""


class EksOpsError(Exception):
    """Base exception for eksops."""


class ConfigError(EksOpsError):
    """Invalid or unreadable configuration."""


class CommandError(EksOpsError):
    """An external CLI exited non-zero."""

    def __init__(self, cmd: list[str], returncode: int, stderr: str = "", stdout: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else f"exit code {returncode}"
        super().__init__(f"{' '.join(cmd[:3])} failed: {detail}")


class PreconditionError(EksOpsError):
    """A required tool, credential or connection is missing."""


class ApplyError(EksOpsError):
    """The mutating action of a stage failed."""


class UserAborted(EksOpsError):
    """An interactive confirmation was declined."""


class FatalError(EksOpsError):
    """
    Raised from a readiness predicate to abort polling immediately.

    Any other predicate exception is treated as "not ready yet".
    """


class AuthorizationRevoked(FatalError):
    """Credentials expired or were revoked mid-run."""


class TimeoutWarning(UserWarning):
    """Readiness was not observed within the polling bound."""
