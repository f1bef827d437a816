# instantiate.py
from __future__ import annotations

import copy
import csv
import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from .errors import InstantiationError

TEMPLATE_SUFFIXES = (".j2", ".jinja", ".jinja2", ".tmpl", ".json")


class PatchMode(str, Enum):
    # values become template variables before expansion
    TEMPLATE = "pre"
    # values replace leaves of the expanded manifest
    MANIFEST = "post"


@dataclass(frozen=True)
class Patch:
    name: str
    values: Dict[str, str]
    mode: PatchMode


@dataclass
class Instance:
    """One instantiated manifest, ready to compile."""
    name: str
    source: Path
    manifest: Dict[str, Any]
    patch: Optional[Patch] = None


def manifest_name(path: str | Path) -> str:
    """Base name of the workflow log for a template or manifest path."""
    name = Path(path).name
    stripped = True
    while stripped:
        stripped = False
        for suffix in TEMPLATE_SUFFIXES:
            if name.endswith(suffix) and len(name) > len(suffix):
                name = name[: -len(suffix)]
                stripped = True
    return name


def _as_manifest(doc: Any, source: Path) -> Dict[str, Any]:
    if not isinstance(doc, dict):
        raise InstantiationError(
            f"{source} must describe a JSON object at the top level, got {type(doc).__name__}"
        )
    return doc


def load_manifest(path: str | Path) -> Dict[str, Any]:
    """Read an already-instantiated manifest."""
    path = Path(path)
    if not path.is_file():
        raise InstantiationError(f"Manifest file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            doc = json.load(f)
    except (OSError, ValueError) as e:
        raise InstantiationError(f"Could not parse manifest {path}: {e}") from e
    return _as_manifest(doc, path)


def render_template(
    path: str | Path,
    variables: Dict[str, Any],
    search_paths: Iterable[str | Path] = (),
) -> Dict[str, Any]:
    """
    Expand a Jinja2 template into a manifest.

    The template's own directory and `search_paths` are searched for
    includes/imports. Undefined variables are errors.
    """
    path = Path(path)
    if not path.is_file():
        raise InstantiationError(f"Template file not found: {path}")

    env = Environment(
        loader=FileSystemLoader([str(path.parent), *(str(p) for p in search_paths)]),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )
    try:
        text = env.get_template(path.name).render(**variables)
    except TemplateError as e:
        raise InstantiationError(f"Error occurred when expanding template {path}: {e}") from e

    try:
        doc = json.loads(text)
    except ValueError as e:
        raise InstantiationError(f"Template {path} did not expand to valid JSON: {e}") from e
    return _as_manifest(doc, path)


# ---------------------------------------------------------------------
# Patches
# ---------------------------------------------------------------------

def load_patches(path: str | Path, mode: PatchMode) -> List[Patch]:
    """
    Read patches from a semicolon-separated CSV file.

    The header row is `name;<key>;<key>...`; every following row is one
    patch. Empty cells leave the key unpatched.
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8", newline="") as f:
            rows = [row for row in csv.reader(f, delimiter=";") if any(c.strip() for c in row)]
    except OSError as e:
        raise InstantiationError(f"Could not read patch file {path}: {e}") from e

    if not rows:
        raise InstantiationError(f"Patch file {path} is empty")
    header = [c.strip() for c in rows[0]]
    if not header or header[0] != "name":
        raise InstantiationError(f"Patch file {path}: the first header column must be `name`")
    keys = header[1:]
    if not keys or any(not k for k in keys):
        raise InstantiationError(f"Patch file {path}: header has no keys or an empty key")

    patches: List[Patch] = []
    seen = set()
    for lineno, row in enumerate(rows[1:], start=2):
        if len(row) != len(header):
            raise InstantiationError(
                f"Patch file {path}, row {lineno}: expected {len(header)} columns, got {len(row)}"
            )
        name = row[0].strip()
        if not name:
            raise InstantiationError(f"Patch file {path}, row {lineno}: patch name is empty")
        if name in seen:
            raise InstantiationError(f"Patch file {path}: patch name {name!r} appears twice")
        seen.add(name)
        values = {k: v for k, v in zip(keys, row[1:]) if v != ""}
        patches.append(Patch(name=name, values=values, mode=mode))

    if not patches:
        raise InstantiationError(f"Patch file {path} has a header but no patches")
    return patches


def _pointer(key: str) -> List[str]:
    parts = key[1:].split("/") if key.startswith("/") else key.split("/")
    return [p.replace("~1", "/").replace("~0", "~") for p in parts]


def apply_patch(manifest: Dict[str, Any], patch: Patch) -> Dict[str, Any]:
    """Replace literal leaf values of an instantiated manifest; returns a new document."""
    if patch.mode is not PatchMode.MANIFEST:
        raise InstantiationError(f"patch {patch.name!r} is a pre-instantiation patch")

    doc = copy.deepcopy(manifest)
    for key, value in patch.values.items():
        parts = _pointer(key)
        target: Any = doc
        for part in parts[:-1]:
            target = target.get(part) if isinstance(target, dict) else None
            if not isinstance(target, dict):
                raise InstantiationError(f"patch {patch.name!r}: {key!r} does not exist in the manifest")
        if isinstance(target.get(parts[-1]), dict):
            raise InstantiationError(f"patch {patch.name!r}: {key!r} is an object, not a value")
        target[parts[-1]] = value
    return doc


def instantiate(
    *,
    manifest: str | Path | None = None,
    template: str | Path | None = None,
    variables: Optional[Dict[str, Any]] = None,
    patches: Optional[List[Patch]] = None,
    search_paths: Iterable[str | Path] = (),
) -> List[Instance]:
    """
    Turn a manifest or a template (plus optional patches) into manifests.

    Without patches one instance is returned; otherwise one per patch, named
    `<source>_<patch>`.
    """
    if (manifest is None) == (template is None):
        raise InstantiationError("Exactly one of a manifest or a template is required")

    variables = dict(variables or {})
    search_paths = list(search_paths)
    source = Path(manifest if manifest is not None else template)
    base = manifest_name(source)

    def expand(extra: Dict[str, Any]) -> Dict[str, Any]:
        if manifest is not None:
            return load_manifest(source)
        return render_template(source, {**variables, **extra}, search_paths)

    if not patches:
        return [Instance(name=base, source=source, manifest=expand({}))]

    instances: List[Instance] = []
    base_doc: Optional[Dict[str, Any]] = None
    for patch in patches:
        if patch.mode is PatchMode.TEMPLATE:
            if manifest is not None:
                raise InstantiationError(
                    f"patch {patch.name!r}: a pre-instantiation patch needs a template, not a manifest"
                )
            doc = expand(patch.values)
        else:
            if base_doc is None:
                base_doc = expand({})
            doc = apply_patch(base_doc, patch)
        instances.append(Instance(name=f"{base}_{patch.name}", source=source, manifest=doc, patch=patch))
    return instances
