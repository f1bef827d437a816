# runner.py
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from . import settings
from .compiler import compile_manifest
from .errors import InstantiationError, StepFailure, StepflowError
from .instantiate import Instance
from .manifest import ManifestTree
from .model import BuiltinCommand, BuiltinOp, CommandRecord, ExternalCommand
from .operations import DEFAULT_HANDLERS, Handler
from .order import RunPlan, plan_execution, resume_start
from .ui.console import get_console
from .workflow_log import WorkflowLog, read_previous_log, step_orders


def _tail(text: str | None) -> str:
    return (text or "")[-settings.OUTPUT_TAIL:]


# ----------------------------------------------------------------------
# Execution primitives
# ----------------------------------------------------------------------

def _run_external(rec: CommandRecord, cwd: Optional[Path]) -> None:
    """
    Spawn an external step; on failure retry once through the shell.

    The shell attempt receives the space-joined command line so constructs a
    direct spawn cannot express (redirection, pipes) still work.
    """
    cmd: ExternalCommand = rec.command
    console = get_console()

    try:
        proc = subprocess.run(
            cmd.argv,
            cwd=str(cwd) if cwd else None,
            text=True,
            errors="replace",
            capture_output=True,
        )
        if proc.returncode == 0:
            return
        first_failure = f"direct invocation exited with status {proc.returncode}"
    except (OSError, ValueError) as e:
        first_failure = f"direct invocation could not start: {e}"

    line = cmd.command_line()
    console.print_fallback(rec.position, line)
    try:
        proc = subprocess.run(
            line,
            shell=True,
            executable=settings.SHELL,
            cwd=str(cwd) if cwd else None,
            text=True,
            errors="replace",
            capture_output=True,
        )
    except (OSError, ValueError) as e:
        raise StepFailure(
            order=rec.position,
            program=str(rec.program),
            cmd=line,
            exit_code=None,
            reason=f"{first_failure}; shell fallback could not start: {e}",
        )

    if proc.returncode != 0:
        raise StepFailure(
            order=rec.position,
            program=str(rec.program),
            cmd=line,
            exit_code=proc.returncode,
            stdout=_tail(proc.stdout),
            stderr=_tail(proc.stderr),
            reason=f"{first_failure}; shell fallback exited with status {proc.returncode}",
        )


def _run_builtin(rec: CommandRecord, handlers: Dict[BuiltinOp, Handler]) -> None:
    cmd: BuiltinCommand = rec.command
    handler = handlers[cmd.op]
    try:
        handler(**cmd.params)
    except Exception as e:
        raise StepFailure(
            order=rec.position,
            program=str(rec.program),
            cmd=cmd.command_line(),
            exit_code=None,
            reason=str(e) or type(e).__name__,
        ) from e


class Executor:
    """
    Runs a plan one step at a time, keeping the workflow log in sync.

    The log is written exactly once: after the last step, or right before the
    first failure propagates.
    """

    def __init__(
        self,
        log: WorkflowLog,
        *,
        handlers: Optional[Dict[BuiltinOp, Handler]] = None,
        cwd: str | Path | None = None,
    ):
        self.log = log
        self.handlers = dict(DEFAULT_HANDLERS)
        if handlers:
            self.handlers.update(handlers)
        self.cwd = Path(cwd) if cwd is not None else None
        self.executed: List[int] = []

    def run_record(self, rec: CommandRecord) -> None:
        if isinstance(rec.command, BuiltinCommand):
            _run_builtin(rec, self.handlers)
        else:
            _run_external(rec, self.cwd)

    def run(self, plan: RunPlan) -> WorkflowLog:
        console = get_console()
        for rec, reason in plan.skipped:
            console.print_step_skipped(rec.position, str(rec.program), reason)

        for rec in plan.to_run:
            console.print_step(rec.position, str(rec.program), rec.command.command_line())
            self.log.step_started(rec.order)
            try:
                self.run_record(rec)
                self.log.step_succeeded(rec.trajectory)
            except StepFailure as e:
                console.print_failure(rec.position, str(e), exit_code=e.exit_code)
                self.log.write(succeed=False)
                raise
            except BaseException:
                self.log.write(succeed=False)
                raise
            self.executed.append(rec.position)
            console.print_success(rec.position)

        self.log.write(succeed=True)
        return self.log


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def prepare(
    instance: Instance,
    output_dir: str | Path,
    *,
    start_at: Optional[int] = None,
    resume: bool = False,
    skip_steps: Iterable[int] = (),
) -> tuple[WorkflowLog, RunPlan]:
    """
    Compile an instantiated manifest and work out what to run.

    Nothing is written to disk here; compile errors surface before any log
    exists.
    """
    if resume and start_at is not None:
        raise StepflowError("--resume and --start-at cannot be used together")

    try:
        tree = ManifestTree.from_json(instance.manifest)
    except TypeError as e:
        raise InstantiationError(str(e)) from e
    queue = compile_manifest(tree)
    log = WorkflowLog(tree, instance.name, output_dir)

    first = start_at if start_at is not None else 1
    if resume:
        previous = read_previous_log(log.path)
        first = resume_start(previous)
        completed = {-o for o in step_orders(previous).values() if o < 0}
        carried = set(log.carry_over(completed))
        for rec in queue:
            if rec.position in carried:
                rec.order = -rec.position
        log.load_previous_info()

    skip = sorted(set(skip_steps))
    log.start_at = first
    log.skip_steps = skip
    return log, plan_execution(queue, start_at=first, skip_steps=skip)


def run_workflow(
    instance: Instance,
    output_dir: str | Path,
    *,
    start_at: Optional[int] = None,
    resume: bool = False,
    skip_steps: Iterable[int] = (),
    no_execution: bool = False,
    handlers: Optional[Dict[BuiltinOp, Handler]] = None,
    cwd: str | Path | None = None,
) -> WorkflowLog:
    """
    Compile, plan and execute one instantiated manifest.

    Returns the workflow log after it has been written. Raises the first
    `StepFailure` after flushing the log.
    """
    log, plan = prepare(
        instance,
        output_dir,
        start_at=start_at,
        resume=resume,
        skip_steps=skip_steps,
    )

    console = get_console()
    console.print_run_started(
        workflow=instance.name,
        output=str(output_dir),
        step_count=len(plan.to_run),
        start_at=plan.start_at,
    )

    if no_execution:
        for rec, reason in plan.skipped:
            console.print_step_skipped(rec.position, str(rec.program), reason)
        log.write(succeed=False)
        console.print_info(f"No-execution mode: wrote {log.path}")
        return log

    Executor(log, handlers=handlers, cwd=cwd).run(plan)
    console.print_results(instance.name, str(log.path), log.num_succeeded, len(plan.to_run))
    return log
