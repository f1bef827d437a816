# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class StepflowError(Exception):
    """Base class for every error the runner reports to the CLI."""


class InstantiationError(StepflowError):
    """Template, patch or manifest could not be turned into a manifest."""


class ResumeError(StepflowError):
    """`--resume` was requested but there is nothing to resume from."""


class LogError(StepflowError):
    """A field trajectory did not resolve, or a step was marked twice."""


@dataclass
class StepProblem:
    """One offending step found while compiling a manifest."""
    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}"


@dataclass
class CompileError(StepflowError):
    """
    All problems found while compiling a manifest.

    The compiler collects every offending step before raising so the user can
    fix the manifest in a single pass.
    """
    problems: list[StepProblem] = field(default_factory=list)

    def __str__(self) -> str:
        lines = [f"manifest has {len(self.problems)} invalid step(s)"]
        lines.extend(f"  {p}" for p in self.problems)
        return "\n".join(lines)


@dataclass
class StepFailure(StepflowError):
    order: int
    program: str
    cmd: str
    exit_code: int | None
    stdout: str = ""
    stderr: str = ""
    reason: str | None = None

    def __str__(self) -> str:
        head = f"step {self.order} ({self.program}) failed"
        if self.exit_code is not None:
            head += f" (exit={self.exit_code})"
        lines = [f"{head}: {self.cmd}"]
        if self.reason:
            lines.append(self.reason)
        return "\n".join(lines)
