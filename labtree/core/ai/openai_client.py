from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Optional, Sequence

from openai import OpenAI

from labtree.core.ai.contracts import parse_children, parse_initial_analysis
from labtree.core.ai.retry import Sleep, call_with_backoff
from labtree.core.config import EngineConfig, model_for_role
from labtree.core.errors import GenerationError, LabConfigError
from labtree.core.io.tree_io import tree_to_dict
from labtree.core.model import LabNode
from labtree.logging import get_logger, log_exception

logger = get_logger(__name__)


SYSTEM_PROMPT = """You are an expert lab automation engineer.
You help users design automated laboratory setups.
You understand hard dependencies (REQUIRED) and optional add-ons (COMPATIBLE).
Return ONLY the JSON object requested (no markdown, no extra text).
"""


# OpenAI Structured Outputs requirements:
# - For ALL object schemas, `additionalProperties` MUST be present and MUST be false.
# - For ALL object schemas, `required` MUST include EVERY key in `properties`.
# Free-form string maps are not allowed, so specs travel as [{key, value}].

SPECS_SCHEMA: dict[str, Any] = {
    "type": "array",
    "items": {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "key": {"type": "string"},
            "value": {"type": "string"},
        },
        "required": ["key", "value"],
    },
}


CHILD_NODE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "id": {"type": "string"},
        "name": {"type": "string"},
        "type": {"type": "string", "enum": ["REQUIRED", "COMPATIBLE"]},
        "description": {"type": "string"},
        "specs": SPECS_SCHEMA,
    },
    "required": ["id", "name", "type", "description", "specs"],
}


INITIAL_ANALYSIS_JSON_SCHEMA: dict[str, Any] = {
    "name": "lab_root",
    "schema": {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "id": {"type": "string"},
            "name": {"type": "string"},
            "type": {"type": "string", "enum": ["ROOT"]},
            "description": {"type": "string"},
            "specs": SPECS_SCHEMA,
            "children": {"type": "array", "items": CHILD_NODE_SCHEMA},
        },
        "required": ["id", "name", "type", "description", "specs", "children"],
    },
}


# Structured outputs need an object at the top level, so the array is wrapped.
EXPAND_CHILDREN_JSON_SCHEMA: dict[str, Any] = {
    "name": "lab_children",
    "schema": {
        "type": "object",
        "additionalProperties": False,
        "properties": {
            "children": {"type": "array", "items": CHILD_NODE_SCHEMA},
        },
        "required": ["children"],
    },
}


class OpenAILabOracle:
    """Expansion oracle backed by the OpenAI Responses API."""

    def __init__(
        self,
        *,
        config: EngineConfig | None = None,
        api_key: str | None = None,
        client: Any = None,
        sleep: Optional[Sleep] = None,
    ) -> None:
        self._config = config or EngineConfig()
        self._sleep = sleep or asyncio.sleep
        if client is None:
            key = api_key or os.getenv("OPENAI_API_KEY")
            if not key:
                raise LabConfigError(
                    code="E_NO_API_KEY",
                    message="OPENAI_API_KEY is not set",
                    path="OPENAI_API_KEY",
                )
            # call_with_backoff owns rate-limit retries
            client = OpenAI(api_key=key, base_url=self._config.base_url, max_retries=0)
        self._client = client

        self.calls = 0
        self.input_tokens = 0
        self.output_tokens = 0

    async def analyze_initial_problem(self, text: str) -> LabNode:
        prompt = (
            f'The user wants to build an automation lab for this problem: "{text}".\n\n'
            "Create a ROOT node for the main goal and 4-7 immediate children.\n"
            "- REQUIRED children are absolute dependencies (arms, main inputs).\n"
            "- COMPATIBLE children are optional modules, enhancements or software.\n"
            "- Mix hardware (robots, benches) with logic (software, controllers).\n"
            "- Give each child realistic specs such as vendor and model.\n"
            "- Descriptions at most 20 words; spec values at most 5 words."
        )
        try:
            raw = await self._ask("analyze", prompt, INITIAL_ANALYSIS_JSON_SCHEMA)
            return parse_initial_analysis(_loads(raw))
        except (GenerationError, LabConfigError):
            raise
        except Exception as e:
            raise GenerationError(code="E_GENERATION_FAILED", message=str(e)) from e

    async def expand_children(
        self, node: LabNode, known_names: Sequence[str]
    ) -> list[LabNode]:
        """Suggest children for a node.

        Failures are logged and come back as an empty list, the same as a leaf.
        """
        prompt = (
            f'The selected component is "{node.name}" (type: {node.kind.upper()}).\n'
            f"Description: {node.description}\n\n"
            f"The lab ALREADY contains: {json.dumps(list(known_names))}\n\n"
            "Suggest 3-6 NEW sub-components, dependencies or next steps.\n"
            "- Never repeat an item from the existing list.\n"
            "- REQUIRED: what must be connected next (power supply, controller, ...).\n"
            "- COMPATIBLE: what can be connected.\n"
            "- If the component is a leaf, return an empty children array.\n"
            "- Include vendor/model specs; keep descriptions under 20 words."
        )
        try:
            raw = await self._ask("expand", prompt, EXPAND_CHILDREN_JSON_SCHEMA)
            return parse_children(_loads(raw))
        except Exception:
            log_exception(logger, "expand_children failed", node=node.id, name=node.name)
            return []

    async def generate_report(self, tree: LabNode) -> str:
        """Markdown User Requirements Specification for the whole tree."""
        context = json.dumps(tree_to_dict(tree, omit_empty_children=True), indent=2)
        prompt = (
            "Write a User Requirements Specification in Markdown for this lab automation "
            f'system "{tree.name}".\n'
            "Sections: Project Scope; Instrumentation & Equipment (table with name, vendor, "
            "model, M/O criticality where REQUIRED is M and COMPATIBLE is O); Labware & "
            "Consumables; Software & Interfaces; General Requirements (safety, power, data).\n\n"
            f"TREE_JSON:\n{context}"
        )
        try:
            text = await self._ask("report", prompt, None)
        except (GenerationError, LabConfigError):
            raise
        except Exception as e:
            raise GenerationError(code="E_REPORT_FAILED", message=str(e)) from e
        if not text.strip():
            raise GenerationError(code="E_REPORT_EMPTY", message="model returned an empty report")
        return text

    async def _ask(self, role: str, user: str, json_schema: dict[str, Any] | None) -> str:
        cfg = self._config
        return await call_with_backoff(
            lambda: asyncio.to_thread(self._respond, role, user, json_schema),
            attempts=cfg.retry_attempts,
            base_s=cfg.backoff_base_s,
            jitter_s=cfg.backoff_jitter_s,
            sleep=self._sleep,
        )

    def _respond(self, role: str, user: str, json_schema: dict[str, Any] | None) -> str:
        model = model_for_role(role, self._config.model)

        kwargs: dict[str, Any] = {}
        if json_schema is not None:
            kwargs["text"] = {
                "format": {
                    "type": "json_schema",
                    "name": json_schema["name"],
                    "schema": json_schema["schema"],
                    "strict": True,
                }
            }

        resp = self._client.responses.create(
            model=model,
            input=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": user},
            ],
            **kwargs,
        )
        self.calls += 1
        self._accumulate_usage(resp)
        logger.debug("%s call on %s done", role, model)
        return _extract_output_text(resp)

    def _accumulate_usage(self, response: Any) -> None:
        usage = getattr(response, "usage", None)
        if usage is None:
            return

        def get(k: str) -> int:
            if isinstance(usage, dict):
                return int(usage.get(k, 0) or 0)
            return int(getattr(usage, k, 0) or 0)

        self.input_tokens += get("input_tokens")
        self.output_tokens += get("output_tokens")


def _loads(raw_text: str) -> Any:
    try:
        return json.loads(raw_text)
    except ValueError as e:
        snippet = raw_text[:800]
        raise GenerationError(
            code="E_GENERATION_PARSE",
            message=f"Failed to parse model JSON. First 800 chars: {snippet}",
        ) from e


def _extract_output_text(resp: Any) -> str:
    """Extract response text robustly across OpenAI SDK response shapes."""
    raw = getattr(resp, "output_text", None)
    if isinstance(raw, str) and raw.strip():
        return raw

    out = getattr(resp, "output", None)
    if isinstance(out, list):
        texts: list[str] = []
        for item in out:
            content = getattr(item, "content", None)
            if content is None and isinstance(item, dict):
                content = item.get("content")
            if not isinstance(content, list):
                continue
            for c in content:
                t = c.get("text") if isinstance(c, dict) else getattr(c, "text", None)
                if isinstance(t, str) and t.strip():
                    texts.append(t)
        if texts:
            return "\n".join(texts)

    return ""
