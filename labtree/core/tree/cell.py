from __future__ import annotations

import threading
from dataclasses import replace
from typing import Callable, Optional

from labtree.core.model import LabNode
from labtree.core.tree.node_store import find_node, replace_node


Listener = Callable[[Optional[LabNode]], None]


class SnapshotCell:
    """Owner of the latest tree snapshot.

    Readers always go through get_snapshot(); writers publish a new tree and never
    mutate the current one. Check-then-set helpers (try_acquire, update_node) run
    under one lock with no suspension point, so two callers can never both win the
    same node.
    """

    def __init__(self, tree: Optional[LabNode] = None) -> None:
        self._tree = tree
        self._version = 0
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []

    @property
    def version(self) -> int:
        return self._version

    def get_snapshot(self) -> Optional[LabNode]:
        with self._lock:
            return self._tree

    def publish(self, tree: Optional[LabNode]) -> None:
        with self._lock:
            self._tree = tree
            self._version += 1
            listeners = list(self._listeners)
        for listener in listeners:
            listener(tree)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def update_node(
        self, node_id: str, fn: Callable[[LabNode], LabNode]
    ) -> Optional[LabNode]:
        """Apply fn to the latest copy of a node and publish. None if the node is gone."""
        with self._lock:
            tree = self._tree
            if tree is None:
                return None
            node = find_node(tree, node_id)
            if node is None:
                return None
            updated = fn(node)
            self.publish(replace_node(tree, updated))
            return updated

    def try_acquire(self, node_id: str) -> Optional[LabNode]:
        """Move a node from unexpanded to generating.

        Returns the locked node, or None when the node is missing, already
        generating, or already has children.
        """
        with self._lock:
            tree = self._tree
            if tree is None:
                return None
            node = find_node(tree, node_id)
            if node is None or node.is_generating or node.has_children:
                return None
            locked = replace(node, is_generating=True)
            self.publish(replace_node(tree, locked))
            return locked
