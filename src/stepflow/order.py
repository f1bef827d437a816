# order.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

from .compiler import parse_order
from .errors import ResumeError
from .manifest import ACTIVE_FIELD, ORDER_FIELD, ManifestTree, iter_step_nodes
from .model import CommandRecord

SKIP_INACTIVE = "inactive"
SKIP_COMPLETED = "completed"
SKIP_BEFORE_START = "before start-at"
SKIP_REQUESTED = "skip-step"


@dataclass
class RunPlan:
    """Records to execute, in order, plus the ones left out and why."""
    start_at: int
    to_run: List[CommandRecord] = field(default_factory=list)
    skipped: List[Tuple[CommandRecord, str]] = field(default_factory=list)


def resume_start(previous: ManifestTree) -> int:
    """
    Compute where a resumed run starts: one past the highest completed order.

    Steps switched off with `Active: false` never count as pending.

    Raises:
        ResumeError: if the previous log has no pending step left, or an
            order in it cannot be parsed.
    """
    orders: List[int] = []
    pending = False
    for trajectory, node in iter_step_nodes(previous):
        try:
            order = parse_order(previous.field_value(node, ORDER_FIELD))
        except ValueError as e:
            raise ResumeError(f"previous workflow log, step {previous.path_of(trajectory)}: {e}") from e
        orders.append(order)
        if order > 0 and previous.field_value(node, ACTIVE_FIELD) is not False:
            pending = True

    if not pending:
        raise ResumeError("The previous run completed every step; nothing to resume.")
    completed = [-o for o in orders if o < 0]
    return max(completed, default=0) + 1


def plan_execution(
    queue: Iterable[CommandRecord],
    *,
    start_at: int = 1,
    skip_steps: Iterable[int] = (),
) -> RunPlan:
    """
    Filter a compiled queue down to the records that should run.

    - steps with `Active: false` never run and are never marked
    - steps already marked completed (negative order) never run again
    - pending steps below `start_at` are skipped, not marked
    - orders listed in `skip_steps` are skipped, not marked

    The queue order (ascending absolute order) is preserved.
    """
    skip = set(skip_steps)
    plan = RunPlan(start_at=start_at)
    for rec in sorted(queue, key=lambda r: r.position):
        if not rec.active:
            plan.skipped.append((rec, SKIP_INACTIVE))
        elif rec.completed:
            plan.skipped.append((rec, SKIP_COMPLETED))
        elif rec.order < start_at:
            plan.skipped.append((rec, SKIP_BEFORE_START))
        elif rec.order in skip:
            plan.skipped.append((rec, SKIP_REQUESTED))
        else:
            plan.to_run.append(rec)
    return plan
