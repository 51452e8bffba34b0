from __future__ import annotations

from typing import Any, Optional, cast

from labtree.core.errors import LabValidationError
from labtree.core.model import NODE_KINDS, LabNode
from labtree.core.tree.node_store import iter_nodes


def validate_tree(raw: dict[str, Any]) -> tuple[Optional[LabNode], list[LabValidationError]]:
    """Validate a raw tree mapping (as loaded from YAML/JSON) and build it.

    Returns (tree, errors). Tree is None when errors exist.
    """

    file = cast(Optional[str], raw.get("__file__"))
    errors: list[LabValidationError] = []
    seen_ids: set[str] = set()

    tree = _build(raw, "root", file, errors, seen_ids, is_root=True)
    if errors:
        return None, _sorted(errors)
    return tree, []


def check_tree(tree: LabNode) -> list[LabValidationError]:
    """Check the invariants of an in-memory tree: one root at the top, unique ids."""
    errors: list[LabValidationError] = []
    if tree.kind != "root":
        errors.append(
            LabValidationError(
                code="E_ROOT_KIND", message="tree root must have kind 'root'", path=tree.id
            )
        )

    seen: set[str] = set()
    for node in iter_nodes(tree):
        if node.id in seen:
            errors.append(
                LabValidationError(
                    code="E_DUPLICATE_ID", message=f"duplicate node id: {node.id}", path=node.id
                )
            )
        seen.add(node.id)
        if node is not tree and node.kind == "root":
            errors.append(
                LabValidationError(
                    code="E_ROOT_KIND",
                    message="only the tree root may have kind 'root'",
                    path=node.id,
                )
            )
    return errors


def summarize_tree(tree: LabNode) -> str:
    counts = {k: 0 for k in NODE_KINDS}
    unexpanded = 0
    for node in iter_nodes(tree):
        counts[node.kind] += 1
        if not node.children and not node.is_expanded and node.kind != "root":
            unexpanded += 1
    total = sum(counts.values())
    return (
        f"OK: {tree.name} ({total} nodes: {counts['required']} required, "
        f"{counts['compatible']} compatible, {unexpanded} unexpanded)"
    )


def _build(
    raw: Any,
    path: str,
    file: Optional[str],
    errors: list[LabValidationError],
    seen_ids: set[str],
    *,
    is_root: bool,
) -> Optional[LabNode]:
    def err(code: str, message: str, at: str) -> None:
        errors.append(LabValidationError(code=code, message=message, file=file, path=at))

    if not isinstance(raw, dict):
        err("E_INVALID_TYPE", "node must be an object", path)
        return None

    nid = raw.get("id")
    if not isinstance(nid, str) or not nid.strip():
        err("E_REQUIRED_FIELD", "id is required and must be a non-empty string", f"{path}.id")
        return None
    if nid in seen_ids:
        err("E_DUPLICATE_ID", f"duplicate node id: {nid}", f"{path}.id")
        return None
    seen_ids.add(nid)

    name = raw.get("name")
    if not isinstance(name, str) or not name.strip():
        err("E_REQUIRED_FIELD", "name is required and must be a non-empty string", f"{path}.name")
        return None

    kind = raw.get("kind")
    if not isinstance(kind, str) or kind not in NODE_KINDS:
        err("E_INVALID_ENUM", f"kind must be one of {list(NODE_KINDS)}", f"{path}.kind")
        return None
    if is_root and kind != "root":
        err("E_ROOT_KIND", "tree root must have kind 'root'", f"{path}.kind")
        return None
    if not is_root and kind == "root":
        err("E_ROOT_KIND", "only the tree root may have kind 'root'", f"{path}.kind")
        return None

    description = raw.get("description", "")
    if description is None:
        description = ""
    if not isinstance(description, str):
        err("E_INVALID_TYPE", "description must be a string", f"{path}.description")
        return None

    specs = raw.get("specs") or {}
    if not isinstance(specs, dict):
        err("E_INVALID_TYPE", "specs must be a mapping of string -> string", f"{path}.specs")
        return None

    for flag in ("in_inventory", "is_expanded"):
        if flag in raw and not isinstance(raw[flag], bool):
            err("E_INVALID_TYPE", f"{flag} must be a boolean", f"{path}.{flag}")
            return None

    raw_children = raw.get("children") or []
    if not isinstance(raw_children, list):
        err("E_INVALID_TYPE", "children must be an array", f"{path}.children")
        return None

    children: list[LabNode] = []
    for i, raw_child in enumerate(raw_children):
        child = _build(
            raw_child, f"{path}.children[{i}]", file, errors, seen_ids, is_root=False
        )
        if child is not None:
            children.append(child)

    return LabNode(
        id=nid,
        name=name.strip(),
        kind=kind,  # type: ignore[arg-type]
        description=description,
        specs={str(k): str(v) for k, v in specs.items()},
        in_inventory=bool(raw.get("in_inventory", False)),
        children=tuple(children),
        is_expanded=bool(raw.get("is_expanded", bool(children))),
    )


def _sorted(errors: list[LabValidationError]) -> list[LabValidationError]:
    return sorted(errors, key=lambda e: (e.file or "", e.path or "", e.code))
