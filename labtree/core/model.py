from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal


NodeKind = Literal["root", "required", "compatible"]

NODE_KINDS: tuple[str, ...] = ("root", "required", "compatible")


@dataclass(frozen=True)
class LabNode:
    id: str
    name: str
    kind: NodeKind
    description: str = ""
    specs: dict[str, str] = field(default_factory=dict)
    in_inventory: bool = False

    # Empty means "not yet expanded"; is_expanded tells an empty expansion apart.
    children: tuple[LabNode, ...] = ()
    is_generating: bool = False
    is_expanded: bool = False

    @property
    def has_children(self) -> bool:
        return len(self.children) > 0

    @property
    def state(self) -> str:
        if self.is_generating:
            return "generating"
        if self.has_children:
            return "expanded"
        if self.is_expanded:
            return "expanded-empty"
        return "unexpanded"
