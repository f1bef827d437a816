# cli.py
from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import click

from .errors import CompileError, InstantiationError, ResumeError, StepFailure, StepflowError
from .instantiate import Instance, PatchMode, instantiate, load_patches
from .runner import run_workflow
from .ui.console import Console, get_console, set_console

ERROR_TITLES = {
    InstantiationError: "Could not instantiate workflow",
    CompileError: "Invalid manifest",
    StepFailure: "Step failed",
    ResumeError: "Cannot resume",
}


def _parse_vars(ctx, param, values: Tuple[str, ...]) -> Dict[str, str]:
    variables: Dict[str, str] = {}
    for item in values:
        name, sep, value = item.partition("=")
        if not sep or not name.strip():
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}")
        variables[name.strip()] = value
    return variables


def _parse_skip(ctx, param, value: Optional[str]) -> List[int]:
    if not value:
        return []
    steps: List[int] = []
    for part in value.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            step = int(part)
        except ValueError:
            raise click.BadParameter(f"{part!r} is not an integer")
        if step < 1:
            raise click.BadParameter(f"{step} is not a positive step")
        steps.append(step)
    return steps


def _report(exc: StepflowError) -> None:
    console = get_console()
    title = next((t for cls, t in ERROR_TITLES.items() if isinstance(exc, cls)), "Workflow failed")
    details = None
    suggestion = None
    if isinstance(exc, StepFailure):
        details = [line for line in (exc.stderr or exc.stdout).splitlines()[-20:]] or None
        suggestion = "Fix the failing step, then continue with:\n  stepflow run ... --resume"
    console.print_error(title, str(exc), details=details, suggestion=suggestion)


def _load_instances(
    template: Optional[Path],
    manifest: Optional[Path],
    output: Optional[Path],
    variables: Dict[str, str],
    search_paths: Tuple[Path, ...],
    patch: Optional[Path],
    patch_mode: Optional[str],
) -> List[Instance]:
    if (template is None) == (manifest is None):
        raise click.UsageError("Pass exactly one of --template or --manifest.")

    if template is not None and output is not None:
        variables = {"output_dir": str(output), **variables}

    patches = None
    if patch is not None:
        if patch_mode is None:
            mode = PatchMode.TEMPLATE if template is not None else PatchMode.MANIFEST
        else:
            mode = PatchMode(patch_mode)
        patches = load_patches(patch, mode)

    return instantiate(
        manifest=manifest,
        template=template,
        variables=variables,
        patches=patches,
        search_paths=search_paths,
    )


def _resolve_output(instance: Instance, output: Optional[Path]) -> Path:
    """The --output directory, or the one the manifest declares in meta_info."""
    console = get_console()
    meta = instance.manifest.get("meta_info")
    declared = meta.get("output_dir") if isinstance(meta, dict) else None

    if output is not None:
        if declared and Path(declared) != output:
            console.print_warning(
                f"{instance.name}: output directory {output} was requested, "
                f"but the manifest declares {declared}; using {output}"
            )
        return output
    if not declared:
        raise click.UsageError(
            f"{instance.name}: no --output given and the manifest has no meta_info.output_dir"
        )
    return Path(declared)


source_options = [
    click.option("--template", "-t", default=None, type=click.Path(exists=True, dir_okay=False, path_type=Path),
                 help="Workflow template to instantiate"),
    click.option("--manifest", "-m", default=None, type=click.Path(exists=True, dir_okay=False, path_type=Path),
                 help="Already-instantiated manifest (JSON)"),
    click.option("--var", "variables", multiple=True, callback=_parse_vars, metavar="KEY=VALUE",
                 help="Template variable (repeatable)"),
    click.option("--search-path", "search_paths", multiple=True,
                 type=click.Path(exists=True, file_okay=False, path_type=Path),
                 help="Extra directory searched for template includes (repeatable)"),
    click.option("--patch-mode", default=None, type=click.Choice([m.value for m in PatchMode]),
                 help="Apply the patch before (pre) or after (post) instantiation"),
]


def with_source_options(fn):
    for option in reversed(source_options):
        fn = option(fn)
    return fn


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """stepflow: manifest-driven, resumable step runner."""
    # Initialize console with debug flag
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@with_source_options
@click.option("--output", "-o", default=None, type=click.Path(file_okay=False, path_type=Path),
              help="Output directory (defaults to meta_info.output_dir of the manifest)")
@click.option("--patch", default=None, type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Semicolon-separated patch file; each row is run as its own manifest")
@click.option("--start-at", "-s", default=None, type=click.IntRange(min=1),
              help="Execution order to start from  [default: 1]")
@click.option("--resume", "-r", is_flag=True, default=False,
              help="Continue after the last completed step of the previous run")
@click.option("--skip-step", default=None, callback=_parse_skip,
              help="Comma-separated execution orders to skip")
@click.option("--no-execution", is_flag=True, default=False,
              help="Instantiate and compile only; write the manifest without running it")
@click.pass_context
def run(ctx, template, manifest, variables, search_paths, patch_mode, output, patch,
        start_at, resume, skip_step, no_execution):
    """Instantiate a workflow and run its steps in order."""
    console = get_console()

    if resume and start_at is not None:
        raise click.UsageError("--resume and --start-at are mutually exclusive.")

    try:
        instances = _load_instances(template, manifest, output, variables, search_paths, patch, patch_mode)
        for instance in instances:
            run_workflow(
                instance,
                _resolve_output(instance, output),
                start_at=start_at,
                resume=resume,
                skip_steps=skip_step,
                no_execution=no_execution,
            )
    except click.UsageError:
        raise
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except StepflowError as e:
        _report(e)
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)


@cli.command()
@with_source_options
@click.option("--patch", required=True, type=click.Path(exists=True, dir_okay=False, path_type=Path),
              help="Semicolon-separated patch file")
@click.option("--output", "-o", default=None, type=click.Path(file_okay=False, path_type=Path),
              help="Directory for the patched manifests (defaults to the source directory)")
@click.pass_context
def patch(ctx, template, manifest, variables, search_paths, patch_mode, patch, output):
    """Write one patched manifest per patch row, without running anything."""
    console = get_console()

    try:
        instances = _load_instances(template, manifest, output, variables, search_paths, patch, patch_mode)
    except StepflowError as e:
        _report(e)
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)

    for instance in instances:
        out_dir = output if output is not None else instance.source.parent
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / f"{instance.name}.json"
        path.write_text(json.dumps(instance.manifest, indent=2) + "\n", encoding="utf-8")
        console.print_info(f"wrote {path}")


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
