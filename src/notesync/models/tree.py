"""Derived hierarchical view of the note collection."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class NoteTreeNode:
    """A read-only node of the materialized note tree."""

    id: str
    title: str
    parent_id: Optional[str]
    position: int
    is_archived: bool
    depth: int
    path: tuple[str, ...] = ()  # Ancestor ids, root first
    children: tuple["NoteTreeNode", ...] = ()

