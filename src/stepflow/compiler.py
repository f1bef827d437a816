# compiler.py
from __future__ import annotations

import re
from typing import Dict, List, Tuple

from .errors import CompileError, StepProblem
from .manifest import ACTIVE_FIELD, META_FIELD, ORDER_FIELD, PROGRAM_FIELD, ManifestTree, Trajectory
from .model import (
    BuiltinCommand,
    CommandRecord,
    ExternalCommand,
    FlagArgs,
    PositionalArgs,
    ProgramName,
)
from .operations import parse_builtin_args

_ORDER_RE = re.compile(r"^[+-]?\d+$")
_POSITION_RE = re.compile(r"^\d+$")


def parse_order(raw) -> int:
    """Parse an `Execution Order` value; the sign encodes completion."""
    if isinstance(raw, bool) or not isinstance(raw, (str, int)):
        raise ValueError(f"{ORDER_FIELD} must be a string holding an integer, got {raw!r}")
    text = str(raw).strip()
    if not _ORDER_RE.match(text):
        raise ValueError(f"cannot parse {ORDER_FIELD} {raw!r} as an integer")
    order = int(text)
    if order == 0:
        raise ValueError(f"{ORDER_FIELD} must be non-zero")
    return order


def _step_args(tree: ManifestTree, node: int) -> List[Tuple[str, str]]:
    args: List[Tuple[str, str]] = []
    for fid, child in tree.items(node):
        key = tree.fields.name(fid)
        if key in (ORDER_FIELD, PROGRAM_FIELD, ACTIVE_FIELD):
            continue
        if tree.is_object(child):
            raise ValueError(f"argument {key!r} is a nested object; step fields must be flat")
        value = tree.value(child)
        if not isinstance(value, str):
            raise ValueError(f"argument {key!r} must be a string, got {value!r}")
        args.append((key, value))
    return args


def _positional(args: List[Tuple[str, str]]) -> PositionalArgs:
    by_position: Dict[int, str] = {}
    for key, value in args:
        if not _POSITION_RE.match(key.strip()):
            raise ValueError(
                f"argument key {key!r} of an external program must be a non-negative integer position"
            )
        pos = int(key)
        if pos in by_position:
            raise ValueError(f"argument position {pos} appears more than once")
        by_position[pos] = value
    return PositionalArgs(values=tuple(by_position[p] for p in sorted(by_position)))


def build_record(tree: ManifestTree, node: int, trajectory: Trajectory) -> CommandRecord:
    """
    Build the command record for one step node.

    Raises:
        ValueError: describing why the step is invalid.
    """
    raw_program = tree.field_value(node, PROGRAM_FIELD)
    if not isinstance(raw_program, str):
        raise ValueError(f"{PROGRAM_FIELD} must be a string, got {raw_program!r}")
    program = ProgramName.parse(raw_program)
    order = parse_order(tree.field_value(node, ORDER_FIELD))

    active = True
    if tree.child(node, ACTIVE_FIELD) is not None:
        active = tree.field_value(node, ACTIVE_FIELD)
        if not isinstance(active, bool):
            raise ValueError(f"{ACTIVE_FIELD} must be true or false, got {active!r}")

    args = _step_args(tree, node)
    if not args:
        raise ValueError(f"step for {program} has an empty argument list")

    if program.is_external:
        command = ExternalCommand(program=program.name, args=_positional(args))
    else:
        flags = FlagArgs(flags=tuple(args))
        params = parse_builtin_args(program.builtin, flags.argv())
        command = BuiltinCommand(op=program.builtin, args=flags, params=params)

    return CommandRecord(order=order, program=program, command=command, trajectory=trajectory, active=active)


def compile_manifest(tree: ManifestTree) -> List[CommandRecord]:
    """
    Walk the manifest tree and return every step as a command record.

    The walk is depth-first in document order with an explicit stack. Group
    nodes are entered, step nodes (objects carrying both `Execution Order` and
    `Program Name`) become records, and the root `meta_info` section is never
    inspected.

    The queue is sorted by absolute execution order; completed (negative
    order) and inactive steps are kept in the queue so the caller can see them.

    Raises:
        CompileError: listing every invalid step.
    """
    problems: List[StepProblem] = []
    records: List[CommandRecord] = []

    stack: List[Tuple[int, Trajectory]] = [(ManifestTree.ROOT, ())]
    while stack:
        node, path = stack.pop()
        if path:
            has_order = tree.child(node, ORDER_FIELD) is not None
            has_program = tree.child(node, PROGRAM_FIELD) is not None
            if has_order and has_program:
                try:
                    records.append(build_record(tree, node, path))
                except ValueError as e:
                    problems.append(StepProblem(path=tree.path_of(path), message=str(e)))
                continue
            if has_order or has_program:
                missing = PROGRAM_FIELD if has_order else ORDER_FIELD
                problems.append(StepProblem(path=tree.path_of(path), message=f"step is missing {missing!r}"))
                continue

        children: List[Tuple[int, Trajectory]] = []
        for fid, child in tree.items(node):
            if not tree.is_object(child):
                continue
            if not path and tree.fields.name(fid) == META_FIELD:
                continue
            children.append((child, path + (fid,)))
        # reversed so siblings are visited in document order
        stack.extend(reversed(children))

    seen: Dict[int, CommandRecord] = {}
    for rec in records:
        other = seen.get(rec.position)
        if other is not None:
            problems.append(
                StepProblem(
                    path=tree.path_of(rec.trajectory),
                    message=(
                        f"{ORDER_FIELD} {rec.position} is also used by "
                        f"{tree.path_of(other.trajectory)}"
                    ),
                )
            )
        else:
            seen[rec.position] = rec

    if problems:
        raise CompileError(problems=problems)

    records.sort(key=lambda r: r.position)
    return records
