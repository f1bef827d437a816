# operations.py
from __future__ import annotations

import json
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence

import click

from . import settings
from .model import BUILTIN_PREFIX, BuiltinOp

# ---------------------------------------------------------------------
# Built-in operations
# ---------------------------------------------------------------------
# Each operation is a click command. Its parser is the single authority on
# which flags a manifest step may carry; the compiler feeds the rebuilt argv
# through it and the executor hands the parsed params to the handler.

REF_TYPES = {
    "spliced+intronic": "intronic",
    "spliced+unspliced": "gene-body",
}
RESOLUTIONS = [
    "cr-like",
    "cr-like-em",
    "parsimony",
    "parsimony-em",
    "parsimony-gene",
    "parsimony-gene-em",
]
# chemistry keywords understood by the mapping backends
PISCEM_GEOMETRY = {"10xv2": "chromium_v2", "10xv3": "chromium_v3"}
SALMON_GEOMETRY = {"10xv2": "--chromium", "10xv3": "--chromiumV3"}

PERMIT_LIST_MODES = ("knee", "unfiltered_pl", "forced_cells", "expect_cells", "explicit_pl")


def _run_backend(argv: Sequence[Any], cwd: Path | None = None) -> None:
    cmd = [str(a) for a in argv]
    try:
        proc = subprocess.run(
            cmd,
            cwd=str(cwd) if cwd else None,
            text=True,
            errors="replace",
            capture_output=True,
        )
    except FileNotFoundError:
        raise RuntimeError(f"{cmd[0]} is not available. Install it or fix PATH.")

    if proc.returncode != 0:
        tail = (proc.stderr or proc.stdout or "")[-settings.OUTPUT_TAIL:]
        raise RuntimeError(
            f"`{' '.join(cmd)}` exited with status {proc.returncode}\n{tail}".rstrip()
        )


def _write_info(path: Path, command: str, params: Dict[str, Any], extra: Dict[str, Any]) -> None:
    info = {
        "command": f"{BUILTIN_PREFIX} {command}",
        "args": {k: (str(v) if isinstance(v, Path) else v) for k, v in params.items()},
        **extra,
    }
    path.write_text(json.dumps(info, indent=2) + "\n", encoding="utf-8")


# ---------------------------------------------------------------------
# index
# ---------------------------------------------------------------------

def run_index(
    *,
    fasta: Path,
    gtf: Path | None,
    ref_type: str,
    output: Path,
    kmer_length: int,
    threads: int,
    use_piscem: bool,
    overwrite: bool,
) -> None:
    """Build a mapping index, optionally from an augmented reference."""
    output = Path(output)
    index_dir = output / "index"
    if index_dir.exists() and not overwrite:
        raise RuntimeError(
            f"index directory {index_dir} already exists; pass --overwrite to rebuild it"
        )
    index_dir.mkdir(parents=True, exist_ok=True)

    reference = Path(fasta)
    if gtf is not None:
        ref_dir = output / "ref"
        _run_backend([
            settings.REF_PROGRAM, "make-ref", fasta, gtf, ref_dir,
            "--aug-type", REF_TYPES[ref_type],
        ])
        reference = ref_dir / "roers_ref.fa"

    if use_piscem:
        prefix = index_dir / "piscem_idx"
        _run_backend([
            settings.PISCEM_PROGRAM, "build",
            "-s", reference, "-k", kmer_length, "-t", threads, "-o", prefix,
        ])
    else:
        prefix = index_dir
        _run_backend([
            settings.INDEX_PROGRAM, "index",
            "-t", reference, "-k", kmer_length, "-p", threads, "-i", prefix,
        ])

    _write_info(
        index_dir / "index_info.json",
        "index",
        {
            "fasta": fasta, "gtf": gtf, "ref_type": ref_type, "output": output,
            "kmer_length": kmer_length, "threads": threads,
            "use_piscem": use_piscem, "overwrite": overwrite,
        },
        {"index": str(prefix), "reference": str(reference)},
    )


@click.command("index")
@click.option("--fasta", required=True, type=click.Path(path_type=Path), help="Genome or transcriptome FASTA")
@click.option("--gtf", default=None, type=click.Path(path_type=Path), help="Annotation used to augment the reference")
@click.option(
    "--ref-type",
    default="spliced+intronic",
    show_default=True,
    type=click.Choice(sorted(REF_TYPES)),
    help="Kind of augmented reference built from --gtf",
)
@click.option("--output", required=True, type=click.Path(path_type=Path), help="Output directory")
@click.option("--kmer-length", "-k", default=31, show_default=True, type=click.IntRange(min=1))
@click.option("--threads", "-t", default=16, show_default=True, type=click.IntRange(min=1))
@click.option("--use-piscem", is_flag=True, default=False, help="Index with piscem instead of salmon")
@click.option("--overwrite", is_flag=True, default=False, help="Rebuild an existing index")
def index_command(**params):
    """Build a reference index."""
    run_index(**params)


# ---------------------------------------------------------------------
# quant
# ---------------------------------------------------------------------

def _map_reads(
    *,
    index: Path,
    reads1: str,
    reads2: str,
    chemistry: str,
    threads: int,
    use_piscem: bool,
    use_selective_alignment: bool,
    map_dir: Path,
) -> None:
    if use_piscem:
        _run_backend([
            settings.PISCEM_PROGRAM, "map-sc",
            "-i", Path(index) / "piscem_idx",
            "-g", PISCEM_GEOMETRY.get(chemistry, chemistry),
            "-1", reads1, "-2", reads2,
            "-t", threads, "-o", map_dir,
        ])
        return

    geometry = SALMON_GEOMETRY.get(chemistry)
    if geometry is None:
        raise RuntimeError(
            f"chemistry {chemistry!r} is not supported by the salmon backend; use --use-piscem"
        )
    argv: List[Any] = [
        settings.INDEX_PROGRAM, "alevin",
        "-i", index, "-l", "A",
        "-1", *reads1.split(","), "-2", *reads2.split(","),
        geometry, "-p", threads, "-o", map_dir, "--rad",
    ]
    if not use_selective_alignment:
        argv.append("--sketch")
    _run_backend(argv)


def run_quant(
    *,
    index: Path | None,
    map_dir: Path | None,
    reads1: str | None,
    reads2: str | None,
    chemistry: str,
    t2g_map: Path,
    resolution: str,
    expected_ori: str,
    knee: bool,
    unfiltered_pl: Path | None,
    forced_cells: int | None,
    expect_cells: int | None,
    explicit_pl: Path | None,
    output: Path,
    threads: int,
    min_reads: int,
    use_piscem: bool,
    use_selective_alignment: bool,
) -> None:
    """Map reads (unless already mapped), then filter, collate and quantify."""
    output = Path(output)
    output.mkdir(parents=True, exist_ok=True)

    if map_dir is None:
        map_dir = output / "af_map"
        _map_reads(
            index=index,
            reads1=reads1,
            reads2=reads2,
            chemistry=chemistry,
            threads=threads,
            use_piscem=use_piscem,
            use_selective_alignment=use_selective_alignment,
            map_dir=map_dir,
        )

    quant_dir = output / "af_quant"
    if knee:
        pl_args: List[Any] = ["--knee-distance"]
    elif unfiltered_pl is not None:
        pl_args = ["--unfiltered-pl", unfiltered_pl, "--min-reads", min_reads]
    elif forced_cells is not None:
        pl_args = ["--force-cells", forced_cells]
    elif expect_cells is not None:
        pl_args = ["--expect-cells", expect_cells]
    else:
        pl_args = ["--valid-bc", explicit_pl]

    _run_backend([
        settings.QUANT_PROGRAM, "generate-permit-list",
        "-i", map_dir, "-d", expected_ori, *pl_args, "-o", quant_dir,
    ])
    _run_backend([settings.QUANT_PROGRAM, "collate", "-i", quant_dir, "-r", map_dir, "-t", threads])
    _run_backend([
        settings.QUANT_PROGRAM, "quant",
        "-i", quant_dir, "-m", t2g_map, "-t", threads, "-r", resolution, "-o", quant_dir,
    ])

    _write_info(
        output / "quant_info.json",
        "quant",
        {
            "index": index, "map_dir": map_dir, "reads1": reads1, "reads2": reads2,
            "chemistry": chemistry, "t2g_map": t2g_map, "resolution": resolution,
            "expected_ori": expected_ori, "output": output, "threads": threads,
        },
        {"quant_dir": str(quant_dir)},
    )


@click.command("quant")
@click.option("--index", "-i", default=None, type=click.Path(path_type=Path), help="Index built by `stepflow index`")
@click.option("--map-dir", default=None, type=click.Path(path_type=Path), help="Existing mapping output; skips mapping")
@click.option("--reads1", default=None, help="Comma-separated read 1 files")
@click.option("--reads2", default=None, help="Comma-separated read 2 files")
@click.option("--chemistry", "-c", required=True, help="Read geometry, e.g. 10xv3")
@click.option("--t2g-map", "-m", required=True, type=click.Path(path_type=Path))
@click.option("--resolution", "-r", required=True, type=click.Choice(RESOLUTIONS))
@click.option("--expected-ori", "-d", default="fw", show_default=True, type=click.Choice(["fw", "rc", "both"]))
@click.option("--knee", "-k", is_flag=True, default=False)
@click.option("--unfiltered-pl", "-u", default=None, type=click.Path(path_type=Path))
@click.option("--forced-cells", "-f", default=None, type=click.IntRange(min=1))
@click.option("--expect-cells", "-e", default=None, type=click.IntRange(min=1))
@click.option("--explicit-pl", "-x", default=None, type=click.Path(path_type=Path))
@click.option("--output", "-o", required=True, type=click.Path(path_type=Path))
@click.option("--threads", "-t", default=16, show_default=True, type=click.IntRange(min=1))
@click.option("--min-reads", default=10, show_default=True, type=click.IntRange(min=1))
@click.option("--use-piscem", is_flag=True, default=False)
@click.option("--use-selective-alignment", is_flag=True, default=False)
def quant_command(**params):
    """Quantify single-cell reads."""
    run_quant(**params)


def _check_quant(params: Dict[str, Any]) -> None:
    if (params["index"] is None) == (params["map_dir"] is None):
        raise click.UsageError("exactly one of --index and --map-dir is required")
    if params["index"] is not None and not (params["reads1"] and params["reads2"]):
        raise click.UsageError("--reads1 and --reads2 are required when mapping with --index")
    modes = [m for m in PERMIT_LIST_MODES if params[m] not in (None, False)]
    if len(modes) != 1:
        flags = ", ".join("--" + m.replace("_", "-") for m in PERMIT_LIST_MODES)
        raise click.UsageError(f"exactly one permit-list mode is required ({flags})")


COMMANDS: Dict[BuiltinOp, click.Command] = {
    BuiltinOp.INDEX: index_command,
    BuiltinOp.QUANT: quant_command,
}

Handler = Callable[..., None]

DEFAULT_HANDLERS: Dict[BuiltinOp, Handler] = {
    BuiltinOp.INDEX: run_index,
    BuiltinOp.QUANT: run_quant,
}

_CHECKS: Dict[BuiltinOp, Callable[[Dict[str, Any]], None]] = {
    BuiltinOp.QUANT: _check_quant,
}


def parse_builtin_args(op: BuiltinOp, argv: Sequence[str]) -> Dict[str, Any]:
    """
    Run `argv` through the operation's own parser.

    Raises:
        ValueError: with click's message if the arguments are rejected.
    """
    command = COMMANDS[op]
    try:
        ctx = command.make_context(f"{BUILTIN_PREFIX} {op.value}", list(argv))
        params = dict(ctx.params)
        check = _CHECKS.get(op)
        if check is not None:
            check(params)
    except click.ClickException as e:
        raise ValueError(e.format_message()) from e
    return params
