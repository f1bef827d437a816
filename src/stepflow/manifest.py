# manifest.py
from __future__ import annotations

import copy
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .errors import LogError
from .fields import FieldIndex

# Reserved field names of a step node
ORDER_FIELD = "Execution Order"
PROGRAM_FIELD = "Program Name"
# Optional per-step switch; `false` keeps the step out of every run
ACTIVE_FIELD = "Active"
# Root-level field the compiler never looks into
META_FIELD = "meta_info"

Trajectory = Tuple[int, ...]


class ManifestTree:
    """
    A manifest stored as an arena of indexed nodes.

    Object nodes map a field index to a child node id, keeping the key order
    of the source document. Every other JSON value is kept verbatim as a
    leaf. Node 0 is always the root object.

    Field trajectories resolve through this tree by index only, so mutating a
    step never re-walks key names.
    """

    ROOT = 0

    def __init__(self, fields: FieldIndex | None = None):
        self.fields = fields if fields is not None else FieldIndex()
        self._children: List[Optional[Dict[int, int]]] = []
        self._values: List[Any] = []

    # ------------------------------------------------------------------
    # construction / serialisation
    # ------------------------------------------------------------------

    @classmethod
    def from_json(cls, doc: Dict[str, Any], fields: FieldIndex | None = None) -> "ManifestTree":
        if not isinstance(doc, dict):
            raise TypeError(f"manifest must be a JSON object, got {type(doc).__name__}")

        tree = cls(fields)
        root = tree._new_object()
        # explicit stack: nesting depth is controlled by whoever wrote the document
        stack: List[Tuple[int, Dict[str, Any]]] = [(root, doc)]
        while stack:
            node, obj = stack.pop()
            children = tree._children[node]
            for key, value in obj.items():
                fid = tree.fields.intern(key)
                if isinstance(value, dict):
                    child = tree._new_object()
                    stack.append((child, value))
                else:
                    child = tree._new_leaf(value)
                children[fid] = child
        return tree

    def to_json(self, node: int = ROOT) -> Dict[str, Any]:
        if not self.is_object(node):
            raise LogError(f"node {node} is not an object")

        out: Dict[str, Any] = {}
        stack: List[Tuple[int, Dict[str, Any]]] = [(node, out)]
        while stack:
            nid, target = stack.pop()
            for fid, child in self._children[nid].items():
                name = self.fields.name(fid)
                if self._children[child] is None:
                    target[name] = copy.deepcopy(self._values[child])
                else:
                    sub: Dict[str, Any] = {}
                    target[name] = sub
                    stack.append((child, sub))
        return out

    def _new_object(self) -> int:
        self._children.append({})
        self._values.append(None)
        return len(self._children) - 1

    def _new_leaf(self, value: Any) -> int:
        self._children.append(None)
        self._values.append(value)
        return len(self._children) - 1

    # ------------------------------------------------------------------
    # navigation
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self._children)

    def is_object(self, node: int) -> bool:
        return self._children[node] is not None

    def items(self, node: int) -> Iterator[Tuple[int, int]]:
        """(field index, child node id) pairs of an object node, in document order."""
        children = self._children[node]
        if children is None:
            return iter(())
        return iter(list(children.items()))

    def child(self, node: int, name: str) -> Optional[int]:
        children = self._children[node]
        fid = self.fields.lookup(name)
        if children is None or fid is None:
            return None
        return children.get(fid)

    def value(self, node: int) -> Any:
        if self.is_object(node):
            raise LogError(f"node {node} is an object, not a value")
        return self._values[node]

    def field_value(self, node: int, name: str) -> Any:
        """Leaf value stored under `name` in an object node, or None."""
        child = self.child(node, name)
        if child is None or self.is_object(child):
            return None
        return self._values[child]

    def set_field_value(self, node: int, name: str, value: Any) -> None:
        child = self.child(node, name)
        if child is None:
            raise LogError(f"node has no field {name!r}")
        if self.is_object(child):
            raise LogError(f"field {name!r} is an object and cannot hold a value")
        self._values[child] = value

    def resolve(self, trajectory: Trajectory) -> int:
        """Follow a field trajectory from the root and return the node it names."""
        node = self.ROOT
        for depth, fid in enumerate(trajectory):
            children = self._children[node]
            if children is None or fid not in children:
                walked = "/".join(self.fields.names(trajectory[: depth + 1]))
                raise LogError(f"field trajectory does not resolve at {walked!r}")
            node = children[fid]
        return node

    def path_of(self, trajectory: Trajectory) -> str:
        return "/".join(self.fields.names(trajectory))


def is_step_node(tree: ManifestTree, node: int) -> bool:
    return tree.child(node, ORDER_FIELD) is not None and tree.child(node, PROGRAM_FIELD) is not None


def iter_step_nodes(tree: ManifestTree) -> Iterator[Tuple[Trajectory, int]]:
    """Yield (trajectory, node) for every object carrying both step fields, in document order."""
    stack: List[Tuple[int, Trajectory, bool]] = [(ManifestTree.ROOT, (), False)]
    while stack:
        node, path, is_step = stack.pop()
        if is_step:
            yield path, node
            continue
        entries: List[Tuple[int, Trajectory, bool]] = []
        for fid, child in tree.items(node):
            if not tree.is_object(child):
                continue
            if not path and tree.fields.name(fid) == META_FIELD:
                continue
            entries.append((child, path + (fid,), is_step_node(tree, child)))
        # reversed so the first sibling is popped first
        stack.extend(reversed(entries))
