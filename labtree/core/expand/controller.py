from __future__ import annotations

import asyncio
import itertools
import uuid
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Iterable, Literal, Optional, Protocol, Sequence

from labtree.core.config import EngineConfig
from labtree.core.errors import GenerationError
from labtree.core.model import LabNode
from labtree.core.tree.cell import Listener, SnapshotCell
from labtree.core.tree.node_store import collect_names, find_node
from labtree.logging import expansion_context, get_logger, set_node

logger = get_logger(__name__)


INITIAL_ANALYSIS_FAILED = "Failed to generate lab design. Please try a clearer description."


class ExpansionOracle(Protocol):
    async def analyze_initial_problem(self, text: str) -> LabNode: ...

    async def expand_children(
        self, node: LabNode, known_names: Sequence[str]
    ) -> list[LabNode]: ...


@dataclass(frozen=True)
class ExpansionTask:
    node_id: str
    depth: int


@dataclass(frozen=True)
class ExpansionFailure:
    node_id: str
    name: str
    error: str


StepOutcome = Literal["expanded", "skipped", "failed"]


@dataclass
class ChainResult:
    """What one expansion chain did, in order."""

    expanded: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failures: list[ExpansionFailure] = field(default_factory=list)
    oracle_calls: int = 0

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass(frozen=True)
class ViewState:
    """Read-only state handed to the presentation layer."""

    tree: Optional[LabNode]
    selected_node_id: Optional[str]
    loading: bool
    auto_expanding: bool
    error: Optional[str]


def _new_uuid() -> str:
    return str(uuid.uuid4())


class ExpansionController:
    """Grows the shared tree one oracle call at a time.

    Every step re-reads the latest snapshot from the cell; nothing captured before
    an await is written back.
    """

    def __init__(
        self,
        oracle: ExpansionOracle,
        *,
        cell: SnapshotCell | None = None,
        config: EngineConfig | None = None,
        new_id: Callable[[], str] = _new_uuid,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._oracle = oracle
        self._cell = cell or SnapshotCell()
        self._config = config or EngineConfig()
        self._new_id = new_id
        self._sleep = sleep
        self._chain_ids = itertools.count(1)
        self._active_chains = 0

        self.selected_node_id: Optional[str] = None
        self.loading = False
        self.last_error: Optional[str] = None

    # Presentation surface

    @property
    def cell(self) -> SnapshotCell:
        return self._cell

    @property
    def snapshot(self) -> Optional[LabNode]:
        return self._cell.get_snapshot()

    @property
    def auto_expanding(self) -> bool:
        return self._active_chains > 0

    def view(self) -> ViewState:
        return ViewState(
            tree=self.snapshot,
            selected_node_id=self.selected_node_id,
            loading=self.loading,
            auto_expanding=self.auto_expanding,
            error=self.last_error,
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self._cell.subscribe(listener)

    def load_tree(self, tree: LabNode) -> None:
        self._cell.publish(tree)
        self.selected_node_id = tree.id
        self.last_error = None

    def reset(self) -> None:
        self._cell.publish(None)
        self.selected_node_id = None
        self.last_error = None

    # Operations

    async def initial_expand(self, problem_text: str) -> ChainResult:
        """Ask for a root plus immediate children, then auto-expand the required ones."""
        if not problem_text.strip():
            return ChainResult()

        self.loading = True
        self.last_error = None
        try:
            try:
                proposed = await self._oracle.analyze_initial_problem(problem_text)
            except Exception as e:
                logger.error("initial analysis failed: %s", e)
                self.last_error = INITIAL_ANALYSIS_FAILED
                raise GenerationError(
                    code="E_INITIAL_ANALYSIS", message=INITIAL_ANALYSIS_FAILED
                ) from e

            root = replace(
                proposed,
                id=self._new_id(),
                kind="root",
                is_generating=False,
                children=tuple(self._fresh(c) for c in proposed.children),
            )
            self._cell.publish(root)
            self.selected_node_id = root.id
            logger.info("initial tree %r with %d children", root.name, len(root.children))

            required = [c for c in root.children if c.kind == "required"]
            known = set(collect_names(root))
            return await self._run_chain(
                [ExpansionTask(node_id=c.id, depth=0) for c in required], known
            )
        finally:
            self.loading = False

    async def on_node_clicked(self, node_id: str) -> Optional[ChainResult]:
        self.selected_node_id = node_id
        tree = self._cell.get_snapshot()
        if tree is None:
            return None
        node = find_node(tree, node_id)
        if node is None or node.has_children:
            return None
        known = set(collect_names(tree))
        return await self.expand(node_id, known, 0)

    async def expand(self, node_id: str, known_names: set[str], depth: int = 0) -> ChainResult:
        """Expand one node, then its new required children depth first, one call at a time.

        known_names is updated in place so later steps in the chain see every
        name added before them.
        """
        return await self._run_chain([ExpansionTask(node_id=node_id, depth=depth)], known_names)

    async def _run_chain(
        self, tasks: Iterable[ExpansionTask], known_names: set[str]
    ) -> ChainResult:
        result = ChainResult()
        # LIFO so each node's subtree finishes before its next sibling starts.
        stack = list(reversed(list(tasks)))
        if not stack:
            return result

        chain = f"c{next(self._chain_ids)}"
        self._active_chains += 1
        try:
            with expansion_context(chain=chain):
                called_last = False
                while stack:
                    task = stack.pop()
                    if called_last:
                        await self._sleep(self._config.step_delay_s)
                    set_node(task.node_id)

                    outcome, required_ids, called_last = await self._step(
                        task, known_names, result
                    )
                    if outcome == "expanded":
                        for child_id in reversed(required_ids):
                            stack.append(ExpansionTask(node_id=child_id, depth=task.depth + 1))
        finally:
            self._active_chains -= 1

        logger.info(
            "chain %s done: %d expanded, %d failed, %d skipped",
            chain,
            len(result.expanded),
            len(result.failures),
            len(result.skipped),
        )
        return result

    async def _step(
        self, task: ExpansionTask, known_names: set[str], result: ChainResult
    ) -> tuple[StepOutcome, list[str], bool]:
        """Run one node through lock -> fetch -> re-resolve -> merge.

        Returns (outcome, ids of new required children, whether the oracle was called).
        """
        if task.depth > self._config.max_depth:
            logger.debug("depth %d over ceiling, leaving %s unexpanded", task.depth, task.node_id)
            result.skipped.append(task.node_id)
            return "skipped", [], False

        locked = self._cell.try_acquire(task.node_id)
        if locked is None:
            result.skipped.append(task.node_id)
            return "skipped", [], False

        result.oracle_calls += 1
        try:
            candidates = await self._oracle.expand_children(locked, sorted(known_names))
        except Exception as e:
            logger.warning("expansion failed for %s (%s): %s", locked.id, locked.name, e)
            self._cell.update_node(task.node_id, lambda n: replace(n, is_generating=False))
            result.failures.append(
                ExpansionFailure(node_id=locked.id, name=locked.name, error=str(e))
            )
            return "failed", [], True

        children = tuple(self._fresh(c) for c in candidates)
        merged = self._cell.update_node(
            task.node_id,
            lambda n: replace(n, is_generating=False, is_expanded=True, children=children),
        )
        if merged is None:
            # Tree was replaced while the call was in flight.
            logger.debug("node %s vanished during expansion", task.node_id)
            result.skipped.append(task.node_id)
            return "skipped", [], True

        known_names.update(c.name for c in children)
        result.expanded.append(task.node_id)
        logger.info("expanded %r with %d children", merged.name, len(children))
        return "expanded", [c.id for c in children if c.kind == "required"], True

    def _fresh(self, candidate: LabNode) -> LabNode:
        kind = candidate.kind
        if kind == "root":
            logger.warning("oracle proposed a root child %r, keeping it as compatible", candidate.name)
            kind = "compatible"
        return replace(
            candidate,
            id=self._new_id(),
            kind=kind,
            children=(),
            is_generating=False,
            is_expanded=False,
        )
