from __future__ import annotations

from dataclasses import replace
from typing import Iterator, Optional

from labtree.core.model import LabNode


def find_node(tree: LabNode, node_id: str) -> Optional[LabNode]:
    """Depth-first lookup. Returns None when the id is not in the tree."""
    if tree.id == node_id:
        return tree
    for child in tree.children:
        found = find_node(child, node_id)
        if found is not None:
            return found
    return None


def replace_node(tree: LabNode, updated: LabNode) -> LabNode:
    """Return a new tree with the node sharing ``updated.id`` swapped for ``updated``.

    Only the ancestors on the path to the replaced node are copied; every other
    subtree is reused as-is. An unknown id returns ``tree`` itself.
    """
    if tree.id == updated.id:
        return updated
    if not tree.children:
        return tree

    changed = False
    new_children: list[LabNode] = []
    for child in tree.children:
        new_child = replace_node(child, updated)
        if new_child is not child:
            changed = True
        new_children.append(new_child)

    if not changed:
        return tree
    return replace(tree, children=tuple(new_children))


def iter_nodes(tree: LabNode) -> Iterator[LabNode]:
    """Pre-order traversal."""
    yield tree
    for child in tree.children:
        yield from iter_nodes(child)


def collect_names(tree: LabNode) -> list[str]:
    return [n.name for n in iter_nodes(tree)]


def count_nodes(tree: LabNode) -> int:
    return sum(1 for _ in iter_nodes(tree))
