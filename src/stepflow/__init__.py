from .compiler import compile_manifest
from .errors import CompileError, InstantiationError, LogError, ResumeError, StepFailure, StepflowError
from .instantiate import Instance, Patch, PatchMode, instantiate
from .manifest import ManifestTree
from .model import BuiltinOp, CommandRecord
from .order import RunPlan, plan_execution, resume_start
from .runner import Executor, prepare, run_workflow
from .workflow_log import WorkflowLog

__all__ = [
    "compile_manifest",
    "CompileError",
    "InstantiationError",
    "LogError",
    "ResumeError",
    "StepFailure",
    "StepflowError",
    "Instance",
    "Patch",
    "PatchMode",
    "instantiate",
    "ManifestTree",
    "BuiltinOp",
    "CommandRecord",
    "RunPlan",
    "plan_execution",
    "resume_start",
    "Executor",
    "prepare",
    "run_workflow",
    "WorkflowLog",
]
