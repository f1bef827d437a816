# workflow_log.py
from __future__ import annotations

import json
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from .compiler import parse_order
from .errors import LogError, ResumeError
from .manifest import META_FIELD, ORDER_FIELD, ManifestTree, Trajectory, iter_step_nodes

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def format_duration(seconds: float) -> str:
    """Render a duration as e.g. `0d1h2m3.045s`."""
    d = timedelta(seconds=max(seconds, 0.0))
    hours, rem = divmod(d.seconds, 3600)
    minutes, secs = divmod(rem, 60)
    millis = d.microseconds // 1000
    return f"{d.days}d{hours}h{minutes}m{secs}.{millis:03d}s"


def log_path_for(output_dir: str | Path, name: str) -> Path:
    return Path(output_dir) / f"{name}.json"


def info_path_for(output_dir: str | Path, name: str) -> Path:
    return Path(output_dir) / f"{name}_run_info.json"


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def read_previous_log(path: str | Path) -> ManifestTree:
    """
    Load a workflow log written by an earlier run.

    Raises:
        ResumeError: if the log is missing or unreadable.
    """
    path = Path(path)
    if not path.exists():
        raise ResumeError(f"Could not find workflow log {path}; nothing to resume.")
    try:
        doc = _read_json(path)
        return ManifestTree.from_json(doc)
    except (OSError, ValueError, TypeError) as e:
        raise ResumeError(f"Could not read workflow log {path}: {e}") from e


def step_orders(tree: ManifestTree) -> Dict[Trajectory, int]:
    """Parsed execution order of every step node, keyed by trajectory."""
    return {traj: parse_order(tree.field_value(node, ORDER_FIELD)) for traj, node in iter_step_nodes(tree)}


class WorkflowLog:
    """
    Execution record of one manifest.

    Holds its own copy of the instantiated manifest (as a `ManifestTree`,
    together with the field index the compiler filled in). A step that
    finishes successfully has its `Execution Order` negated in place; the tree
    is written to `<output>/<name>.json` once per run. That file is all a later
    `--resume` needs.

    Alongside it, `<output>/<name>_run_info.json` records timing and run
    history.
    """

    def __init__(self, tree: ManifestTree, name: str, output_dir: str | Path):
        self.tree = tree
        self.fields = tree.fields
        self.name = name
        self.output_dir = Path(output_dir)
        self.path = log_path_for(self.output_dir, name)
        self.info_path = info_path_for(self.output_dir, name)

        self.start_time = datetime.now()
        self._start_clock = time.monotonic()
        self._step_clock: Optional[float] = None

        self.start_at = 1
        self.skip_steps: List[int] = []
        self.terminated_at: Optional[int] = None
        self.num_succeeded = 0
        self.runtimes: Dict[str, str] = {}
        self.previous_info: Optional[Dict[str, Any]] = None
        self.writes = 0

    # ------------------------------------------------------------------
    # step state
    # ------------------------------------------------------------------

    def order_at(self, trajectory: Trajectory) -> int:
        node = self.tree.resolve(trajectory)
        try:
            return parse_order(self.tree.field_value(node, ORDER_FIELD))
        except ValueError as e:
            raise LogError(f"{self.tree.path_of(trajectory)}: {e}") from e

    def negate(self, trajectory: Trajectory) -> int:
        """
        Mark the step at `trajectory` as completed by negating its order.

        Raises:
            LogError: if the step is already marked.
        """
        node = self.tree.resolve(trajectory)
        raw = self.tree.field_value(node, ORDER_FIELD)
        order = self.order_at(trajectory)
        if order < 0:
            raise LogError(
                f"step {self.tree.path_of(trajectory)} is already marked completed ({raw!r})"
            )
        new_order = -order
        self.tree.set_field_value(node, ORDER_FIELD, str(new_order) if isinstance(raw, str) else new_order)
        return new_order

    def orders(self) -> Dict[Trajectory, int]:
        return step_orders(self.tree)

    def completed_orders(self) -> Set[int]:
        return {-o for o in self.orders().values() if o < 0}

    def pending_orders(self) -> Set[int]:
        return {o for o in self.orders().values() if o > 0}

    def carry_over(self, completed: Set[int]) -> List[int]:
        """Mark steps finished by an earlier run (matched by order) as completed here too."""
        carried: List[int] = []
        for trajectory, order in self.orders().items():
            if order > 0 and order in completed:
                self.negate(trajectory)
                carried.append(order)
        return sorted(carried)

    # ------------------------------------------------------------------
    # timing
    # ------------------------------------------------------------------

    def step_started(self, order: int) -> None:
        self.terminated_at = abs(order)
        self._step_clock = time.monotonic()

    def step_succeeded(self, trajectory: Trajectory) -> None:
        order = self.negate(trajectory)
        if self._step_clock is not None:
            self.runtimes[str(-order)] = format_duration(time.monotonic() - self._step_clock)
        self._step_clock = None
        self.num_succeeded += 1

    # ------------------------------------------------------------------
    # persistence
    # ------------------------------------------------------------------

    def load_previous_info(self) -> None:
        if self.info_path.exists():
            try:
                self.previous_info = _read_json(self.info_path)
            except (OSError, ValueError) as e:
                raise ResumeError(f"Could not read run info {self.info_path}: {e}") from e

    def run_info(self, succeed: bool) -> Dict[str, Any]:
        previous_runs: Dict[str, Any] = {}
        if self.previous_info:
            previous_runs = dict(self.previous_info.get("Previous Runs") or {})
            latest = self.previous_info.get("Latest Run")
            if isinstance(latest, dict):
                stamp = latest.get("Execution Start Local Time") or f"run {len(previous_runs) + 1}"
                previous_runs[stamp] = latest

        meta = self.tree.child(ManifestTree.ROOT, META_FIELD)
        meta_info = self.tree.to_json(meta) if meta is not None and self.tree.is_object(meta) else {}

        return {
            "Workflow Name": self.name,
            "Workflow Meta Info": meta_info,
            "Succeed": succeed,
            "Latest Run": {
                "Execution Start Local Time": self.start_time.strftime(TIME_FORMAT),
                "Execution Elapsed Time": format_duration(time.monotonic() - self._start_clock),
                "Execution Start Step": self.start_at,
                "Skip Step": sorted(self.skip_steps),
                "Execution Terminated Step": self.terminated_at,
                "Number of Succeed Commands": self.num_succeeded,
                "Command Runtime by Step": dict(self.runtimes),
            },
            "Previous Runs": previous_runs,
        }

    def write(self, succeed: bool) -> Path:
        """Write the manifest (with completion marks) and the run info to disk."""
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self.tree.to_json(), indent=2) + "\n", encoding="utf-8")
        self.info_path.write_text(json.dumps(self.run_info(succeed), indent=2) + "\n", encoding="utf-8")
        self.writes += 1
        return self.path
