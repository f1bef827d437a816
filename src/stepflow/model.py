# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Tuple, Union

from .manifest import Trajectory

BUILTIN_PREFIX = "stepflow"


class BuiltinOp(str, Enum):
    """The in-process operations a step can dispatch to."""
    INDEX = "index"
    QUANT = "quant"


@dataclass(frozen=True)
class ProgramName:
    """
    Resolved `Program Name` of a step.

    `stepflow index` and `stepflow quant` are reserved for the built-in
    operations; any other value is the executable of an external process.
    """
    name: str
    builtin: BuiltinOp | None = None

    @classmethod
    def parse(cls, raw: str) -> "ProgramName":
        words = raw.split()
        if not words:
            raise ValueError("program name is empty")
        if words[0] != BUILTIN_PREFIX:
            return cls(name=raw.strip())

        normalized = " ".join(words)
        if len(words) == 2:
            for op in BuiltinOp:
                if words[1] == op.value:
                    return cls(name=normalized, builtin=op)
        known = ", ".join(f"'{BUILTIN_PREFIX} {op.value}'" for op in BuiltinOp)
        raise ValueError(f"unknown built-in operation '{normalized}' (expected one of {known})")

    @property
    def is_external(self) -> bool:
        return self.builtin is None

    def __str__(self) -> str:
        return self.name


# ----------------------------------------------------------------------
# Step arguments (tagged union, picked once at compile time)
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class FlagArgs:
    """CLI-style flags of a built-in step; an empty value is a boolean flag."""
    flags: Tuple[Tuple[str, str], ...]

    def argv(self) -> list[str]:
        out: list[str] = []
        for name, value in self.flags:
            out.append(name)
            if value != "":
                out.append(value)
        return out


@dataclass(frozen=True)
class PositionalArgs:
    """Positional arguments of an external step, already sorted by position."""
    values: Tuple[str, ...]


StepArgs = Union[FlagArgs, PositionalArgs]


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------

@dataclass(frozen=True)
class BuiltinCommand:
    op: BuiltinOp
    args: FlagArgs
    # parameters as produced by the operation's own parser
    params: Dict[str, Any] = field(default_factory=dict, compare=False)

    def command_line(self) -> str:
        return " ".join([BUILTIN_PREFIX, self.op.value, *self.args.argv()])


@dataclass(frozen=True)
class ExternalCommand:
    program: str
    args: PositionalArgs

    @property
    def argv(self) -> list[str]:
        return [self.program, *self.args.values]

    def command_line(self) -> str:
        # joined verbatim so shell-only tokens such as `>` survive the fallback
        return " ".join(self.argv)


Command = Union[BuiltinCommand, ExternalCommand]


@dataclass
class CommandRecord:
    """
    One queued step.

    `trajectory` is the path of field indices from the manifest root to the
    step node inside the workflow log's tree; it is the only link between the
    record and the log.
    """
    order: int
    program: ProgramName
    command: Command
    trajectory: Trajectory
    # False when the manifest sets `Active: false`
    active: bool = True

    @property
    def position(self) -> int:
        return abs(self.order)

    @property
    def completed(self) -> bool:
        return self.order < 0
