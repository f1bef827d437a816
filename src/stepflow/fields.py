# fields.py
from __future__ import annotations

from typing import Iterator


class FieldIndex:
    """
    Interns manifest field names into small, stable integers.

    Indices are handed out in first-seen order and never change, so a field
    trajectory (a tuple of indices) stays valid for the lifetime of the table.
    """

    def __init__(self) -> None:
        self._ids: dict[str, int] = {}
        self._names: list[str] = []

    def intern(self, name: str) -> int:
        """Return the index for `name`, assigning the next one if unseen."""
        fid = self._ids.get(name)
        if fid is None:
            fid = len(self._names)
            self._ids[name] = fid
            self._names.append(name)
        return fid

    def lookup(self, name: str) -> int | None:
        return self._ids.get(name)

    def name(self, fid: int) -> str:
        try:
            return self._names[fid]
        except IndexError:
            raise KeyError(f"unknown field index {fid}") from None

    def names(self, trajectory: tuple[int, ...]) -> list[str]:
        return [self.name(fid) for fid in trajectory]

    def __len__(self) -> int:
        return len(self._names)

    def __contains__(self, name: object) -> bool:
        return name in self._ids

    def __iter__(self) -> Iterator[str]:
        return iter(self._names)
