"""Materialize the flat note collection into an ordered tree."""

from collections import defaultdict
from typing import Iterable, Mapping, Optional

from notesync.errors import HierarchyError
from notesync.models.note import Note
from notesync.models.tree import NoteTreeNode


def _index_children(notes: Iterable[Note]) -> dict[Optional[str], list[Note]]:
    """Group notes by parent in one pass. Orphans are filed under None."""
    notes = list(notes)
    known = {note.id for note in notes}
    index: dict[Optional[str], list[Note]] = defaultdict(list)
    for note in notes:
        parent_id = note.parent_id
        if parent_id not in known or parent_id == note.id:
            parent_id = None
        index[parent_id].append(note)
    for siblings in index.values():
        siblings.sort(key=lambda note: note.position)
    return index


def _build_node(
    note: Note,
    path: tuple[str, ...],
    index: Mapping[Optional[str], list[Note]],
    visited: set[str],
    include_archived: bool,
) -> NoteTreeNode:
    visited.add(note.id)
    child_path = path + (note.id,)
    children = tuple(
        _build_node(child, child_path, index, visited, include_archived)
        for child in index.get(note.id, ())
        if child.id not in visited and (include_archived or not child.is_archived)
    )
    return NoteTreeNode(
        id=note.id,
        title=note.title,
        parent_id=note.parent_id,
        position=note.position,
        is_archived=note.is_archived,
        depth=len(path),
        path=path,
        children=children,
    )


def _in_cycle(note: Note, by_id: Mapping[str, Note]) -> bool:
    seen = set()
    current: Optional[Note] = note
    while current is not None and current.parent_id and current.parent_id != current.id:
        if current.id in seen:
            return True
        seen.add(current.id)
        current = by_id.get(current.parent_id)
    return False


def build_tree(notes: Iterable[Note], *, include_archived: bool = False) -> list[NoteTreeNode]:
    """Build the forest of root nodes, each level ordered by position.

    Notes whose parent is missing are treated as roots. Archived notes and
    everything beneath them are left out unless ``include_archived`` is set.
    Notes caught in a parent cycle are promoted to roots rather than dropped.
    """
    notes = list(notes)
    index = _index_children(notes)
    visited: set[str] = set()
    roots = [
        _build_node(note, (), index, visited, include_archived)
        for note in index.get(None, ())
        if include_archived or not note.is_archived
    ]

    if len(visited) < len(notes):
        by_id = {note.id: note for note in notes}
        for note in notes:
            if note.id in visited or (note.is_archived and not include_archived):
                continue
            if _in_cycle(note, by_id):
                roots.append(_build_node(note, (), index, visited, include_archived))
    return roots


def flatten_tree(nodes: Iterable[NoteTreeNode]) -> list[NoteTreeNode]:
    """Pre-order listing of every node."""
    flat: list[NoteTreeNode] = []
    stack = list(reversed(list(nodes)))
    while stack:
        node = stack.pop()
        flat.append(node)
        stack.extend(reversed(node.children))
    return flat


def find_node(nodes: Iterable[NoteTreeNode], note_id: str) -> Optional[NoteTreeNode]:
    for node in flatten_tree(nodes):
        if node.id == note_id:
            return node
    return None


def ancestors_of(note_id: str, notes_by_id: Mapping[str, Note]) -> list[str]:
    """Ancestor ids of a note, root first. Stops at missing parents and cycles."""
    ancestors: list[str] = []
    seen = {note_id}
    note = notes_by_id.get(note_id)
    while note is not None and note.parent_id and note.parent_id not in seen:
        if note.parent_id not in notes_by_id:
            break
        ancestors.append(note.parent_id)
        seen.add(note.parent_id)
        note = notes_by_id.get(note.parent_id)
    ancestors.reverse()
    return ancestors


def subtree_height(note_id: str, notes: Iterable[Note]) -> int:
    """Number of levels below the note (0 for a leaf)."""
    index = _index_children(notes)
    height = 0
    frontier = [note_id]
    seen = {note_id}
    while True:
        next_frontier = [
            child.id
            for parent_id in frontier
            for child in index.get(parent_id, ())
            if child.id not in seen
        ]
        if not next_frontier:
            return height
        seen.update(next_frontier)
        frontier = next_frontier
        height += 1


def validate_move(
    notes_by_id: Mapping[str, Note],
    note_id: Optional[str],
    new_parent_id: Optional[str],
    max_depth: int,
) -> None:
    """Check that placing a note under new_parent_id keeps the hierarchy valid.

    ``note_id`` is None when validating a note that does not exist yet.

    Raises:
        HierarchyError: If the parent is unknown, is the note itself or one
            of its descendants, or the subtree would exceed max_depth levels
    """
    if new_parent_id is None:
        return
    if note_id is not None and new_parent_id == note_id:
        raise HierarchyError("A note cannot be its own parent")
    if new_parent_id not in notes_by_id:
        raise HierarchyError(f"Parent note not found: {new_parent_id}")

    parent_ancestors = ancestors_of(new_parent_id, notes_by_id)
    if note_id is not None and note_id in parent_ancestors:
        raise HierarchyError("Cannot move a note under one of its own descendants")

    height = subtree_height(note_id, notes_by_id.values()) if note_id is not None else 0
    deepest = len(parent_ancestors) + 1 + height
    if deepest >= max_depth:
        raise HierarchyError(f"Maximum hierarchy depth of {max_depth} levels exceeded")


def next_position(notes: Iterable[Note], parent_id: Optional[str]) -> int:
    """Position after the last sibling under parent_id, or 0."""
    positions = [note.position for note in notes if note.parent_id == parent_id]
    return max(positions) + 1 if positions else 0
