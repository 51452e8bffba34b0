from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from labtree.core.errors import LabLoadError
from labtree.core.model import LabNode


def load_tree_file(path: str) -> dict[str, Any]:
    """Load a YAML/JSON tree file.

    Returns the raw root mapping plus a ``__file__`` key.
    Does not coerce types; validate_tree owns shape checking.
    """

    p = Path(path)
    if not p.exists():
        raise LabLoadError(
            code="E_FILE_NOT_FOUND",
            message="file does not exist",
            file=str(p),
        )

    suffix = p.suffix.lower()
    try:
        raw_text = p.read_text(encoding="utf-8")
    except OSError as e:  # pragma: no cover
        raise LabLoadError(code="E_FILE_READ", message=str(e), file=str(p)) from e

    try:
        if suffix in {".yaml", ".yml"}:
            data = yaml.safe_load(raw_text)
        elif suffix == ".json":
            data = json.loads(raw_text)
        else:
            raise LabLoadError(
                code="E_UNSUPPORTED_FORMAT",
                message="supported formats are .yaml/.yml and .json",
                file=str(p),
            )
    except LabLoadError:
        raise
    except Exception as e:
        code = "E_YAML_PARSE" if suffix in {".yaml", ".yml"} else "E_JSON_PARSE"
        raise LabLoadError(code=code, message=str(e), file=str(p)) from e

    if not isinstance(data, dict):
        raise LabLoadError(
            code="E_INVALID_TOP_LEVEL",
            message="top-level document must be the root node mapping",
            file=str(p),
        )

    data = dict(data)
    data["__file__"] = str(p)
    return data


def tree_to_dict(node: LabNode, *, omit_empty_children: bool = False) -> dict[str, Any]:
    """Serializable snapshot. is_generating is transient and never written."""
    out: dict[str, Any] = {
        "id": node.id,
        "name": node.name,
        "kind": node.kind,
        "description": node.description,
        "specs": dict(node.specs),
        "in_inventory": node.in_inventory,
        "is_expanded": node.is_expanded,
    }
    if node.children or not omit_empty_children:
        out["children"] = [
            tree_to_dict(c, omit_empty_children=omit_empty_children) for c in node.children
        ]
    return out


def dump_tree_yaml(tree: LabNode, path: str) -> None:
    p = Path(path)
    if str(p.parent) not in (".", ""):
        p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(
        yaml.safe_dump(tree_to_dict(tree), sort_keys=False, allow_unicode=True),
        encoding="utf-8",
    )


def dump_tree_json(tree: LabNode, *, omit_empty_children: bool = False) -> str:
    return json.dumps(
        tree_to_dict(tree, omit_empty_children=omit_empty_children), indent=2, ensure_ascii=False
    )
