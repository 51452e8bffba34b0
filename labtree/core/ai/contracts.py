from __future__ import annotations

from typing import Any

from labtree.core.errors import GenerationError
from labtree.core.model import LabNode


# Equipment the lab is assumed to own already; matched as substrings of the node name.
LAB_INVENTORY_KEYWORDS: tuple[str, ...] = (
    "robot", "arm", "gripper", "pipette", "handler", "dispenser", "washer",
    "centrifuge", "incubator", "cytomat", "peeler", "sealer", "reader",
    "microscope", "imager", "camera", "conveyor", "track", "hotel", "storage",
    "pc", "server", "controller", "barcode", "scanner", "printer", "pump",
    "reservoir", "shaker", "mixer", "heater", "cooler", "magnet", "cycler", "pcr",
)


def check_inventory(name: str) -> bool:
    lower = name.lower()
    return any(k in lower for k in LAB_INVENTORY_KEYWORDS)


def _parse_specs(raw: Any, path: str) -> dict[str, str]:
    # Structured outputs send specs as [{key, value}]; plain JSON may send a mapping.
    if raw is None:
        return {}
    if isinstance(raw, dict):
        return {str(k): str(v) for k, v in raw.items() if v is not None}
    if isinstance(raw, list):
        out: dict[str, str] = {}
        for i, item in enumerate(raw):
            if not isinstance(item, dict) or not isinstance(item.get("key"), str):
                raise GenerationError(
                    code="E_GENERATION_SHAPE",
                    message="specs items must be {key, value} objects",
                    path=f"{path}.specs[{i}]",
                )
            value = item.get("value")
            if value is None:
                continue
            out[item["key"]] = str(value)
        return out
    raise GenerationError(
        code="E_GENERATION_SHAPE",
        message="specs must be a list of {key, value} or a mapping",
        path=f"{path}.specs",
    )


def _parse_kind(raw: Any, path: str, allowed: tuple[str, ...]) -> str:
    kind = raw.strip().lower() if isinstance(raw, str) else None
    if kind not in allowed:
        raise GenerationError(
            code="E_GENERATION_SHAPE",
            message=f"type must be one of {list(allowed)}, got {raw!r}",
            path=f"{path}.type",
        )
    return kind


def parse_candidate(obj: Any, *, path: str = "node") -> LabNode:
    """Build a child candidate. The returned id is whatever the model sent and is never trusted."""
    if not isinstance(obj, dict):
        raise GenerationError(code="E_GENERATION_SHAPE", message="node must be an object", path=path)

    name = obj.get("name")
    if not isinstance(name, str) or not name.strip():
        raise GenerationError(
            code="E_GENERATION_SHAPE",
            message="name must be a non-empty string",
            path=f"{path}.name",
        )
    description = obj.get("description")
    raw_id = obj.get("id")

    return LabNode(
        id=raw_id if isinstance(raw_id, str) else "",
        name=name.strip(),
        kind=_parse_kind(obj.get("type"), path, ("required", "compatible")),  # type: ignore[arg-type]
        description=description.strip() if isinstance(description, str) else "",
        specs=_parse_specs(obj.get("specs"), path),
        in_inventory=check_inventory(name),
    )


def parse_children(obj: Any) -> list[LabNode]:
    """Accept either a bare array or {"children": [...]}."""
    if isinstance(obj, dict) and "children" in obj:
        obj = obj["children"]
    if not isinstance(obj, list):
        raise GenerationError(
            code="E_GENERATION_SHAPE", message="children must be an array", path="children"
        )
    return [parse_candidate(item, path=f"children[{i}]") for i, item in enumerate(obj)]


def parse_initial_analysis(obj: Any) -> LabNode:
    if not isinstance(obj, dict):
        raise GenerationError(code="E_GENERATION_SHAPE", message="root must be an object", path="root")

    name = obj.get("name")
    if not isinstance(name, str) or not name.strip():
        raise GenerationError(
            code="E_GENERATION_SHAPE",
            message="name must be a non-empty string",
            path="root.name",
        )
    description = obj.get("description")
    children = parse_children(obj.get("children", []))

    return LabNode(
        id=obj["id"] if isinstance(obj.get("id"), str) else "",
        name=name.strip(),
        kind="root",
        description=description.strip() if isinstance(description, str) else "",
        specs=_parse_specs(obj.get("specs"), "root"),
        children=tuple(children),
    )
