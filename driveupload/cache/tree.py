"""Cached directory hierarchy.

Nodes live in one table keyed by id; parent and child links are ids, never
object references, so a subtree can be dropped by walking ids.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

__all__ = ["Node", "NodeTable"]


@dataclass(frozen=True)
class Node:
    id: str
    name: str
    parent_id: str
    is_dir: bool = False


class NodeTable:
    """Arena of cached nodes with a parent -> children index."""

    def __init__(self) -> None:
        self._nodes: Dict[str, Node] = {}
        self._children: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def add(self, node: Node) -> None:
        with self._lock:
            self._add(node)

    def get(self, node_id: str) -> Optional[Node]:
        with self._lock:
            return self._nodes.get(node_id)

    def replace_children(self, parent_id: str, nodes: Iterable[Node]) -> None:
        """Make ``nodes`` the complete child set of ``parent_id``.

        Children that disappeared are dropped together with their subtrees.
        """
        with self._lock:
            fresh = {node.id: node for node in nodes}
            for stale in self._children.get(parent_id, set()) - set(fresh):
                self._remove_subtree(stale)
            for node in fresh.values():
                self._add(node)

    def remove_subtree(self, node_id: str) -> List[str]:
        """Drop a node and all its descendants; return the removed ids."""
        with self._lock:
            return self._remove_subtree(node_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def _add(self, node: Node) -> None:
        previous = self._nodes.get(node.id)
        if previous is not None and previous.parent_id != node.parent_id:
            self._children.get(previous.parent_id, set()).discard(node.id)
        self._nodes[node.id] = node
        self._children.setdefault(node.parent_id, set()).add(node.id)

    def _remove_subtree(self, node_id: str) -> List[str]:
        removed: List[str] = []
        stack = [node_id]
        while stack:
            current = stack.pop()
            stack.extend(self._children.pop(current, ()))
            node = self._nodes.pop(current, None)
            if node is not None:
                self._children.get(node.parent_id, set()).discard(current)
                removed.append(current)
        return removed
