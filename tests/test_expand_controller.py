import asyncio
import itertools

import pytest

from labtree.core.config import EngineConfig
from labtree.core.errors import GenerationError
from labtree.core.expand.controller import INITIAL_ANALYSIS_FAILED, ExpansionController
from labtree.core.model import LabNode
from labtree.core.tree.node_store import collect_names, count_nodes, find_node
from labtree.core.validate.validate_tree import check_tree


def _c(name, kind="required"):
    # Every candidate carries the same untrusted id on purpose.
    return LabNode(id="oracle-id", name=name, kind=kind)


class ScriptedOracle:
    def __init__(self, script=None, *, initial=None, fail_once=(), controller=None):
        self.script = script or {}
        self.initial = initial
        self.fail_once = set(fail_once)
        self.calls = []
        self.known = {}
        self.generating_at_call = {}
        self.controller = controller

    async def analyze_initial_problem(self, text):
        if self.initial is None:
            raise GenerationError(code="E_GENERATION_PARSE", message="bad json")
        return self.initial

    async def expand_children(self, node, known_names):
        self.calls.append(node.name)
        self.known[node.name] = list(known_names)
        if self.controller is not None:
            latest = find_node(self.controller.snapshot, node.id)
            self.generating_at_call[node.name] = latest.is_generating
        await asyncio.sleep(0)
        if node.name in self.fail_once:
            self.fail_once.discard(node.name)
            raise RuntimeError("quota exhausted")
        outcome = self.script.get(node.name, [])
        if callable(outcome):
            return outcome(node)
        return list(outcome)


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)
        await asyncio.sleep(0)


def _controller(oracle, **cfg):
    ids = itertools.count(1)
    sleep = RecordingSleep()
    controller = ExpansionController(
        oracle,
        config=EngineConfig(**cfg),
        new_id=lambda: f"n{next(ids)}",
        sleep=sleep,
    )
    oracle.controller = controller
    return controller, sleep


def _start_tree():
    return LabNode(
        id="root",
        name="Lab",
        kind="root",
        is_expanded=True,
        children=(
            LabNode(id="a", name="Arm", kind="required"),
            LabNode(id="b", name="Bench", kind="required"),
            LabNode(id="c", name="Camera", kind="compatible"),
        ),
    )


def test_lock_is_published_before_oracle_resolves():
    oracle = ScriptedOracle()
    controller, _ = _controller(oracle)
    controller.load_tree(_start_tree())

    asyncio.run(controller.expand("a", set(), 0))

    assert oracle.generating_at_call == {"Arm": True}
    node = find_node(controller.snapshot, "a")
    assert not node.is_generating
    assert node.is_expanded
    assert node.children == ()


def test_concurrent_expand_of_same_node_issues_one_call():
    oracle = ScriptedOracle({"Arm": [_c("Gripper", "compatible")]})
    controller, _ = _controller(oracle)
    controller.load_tree(_start_tree())

    async def both():
        return await asyncio.gather(
            controller.expand("a", set(), 0),
            controller.expand("a", set(), 0),
        )

    first, second = asyncio.run(both())

    assert oracle.calls == ["Arm"]
    assert first.expanded == ["a"]
    assert second.skipped == ["a"]
    assert len(find_node(controller.snapshot, "a").children) == 1


def test_merge_assigns_fresh_ids_and_shares_names_with_later_steps():
    oracle = ScriptedOracle(
        {
            "Arm": [_c("Gripper"), _c("Teach Pendant", "compatible")],
            "Gripper": [],
        }
    )
    controller, _ = _controller(oracle)
    controller.load_tree(_start_tree())
    known = set(collect_names(controller.snapshot))

    asyncio.run(controller.expand("a", known, 0))

    arm = find_node(controller.snapshot, "a")
    ids = [c.id for c in arm.children]
    assert len(set(ids)) == 2
    assert "oracle-id" not in ids
    assert {"Gripper", "Teach Pendant"} <= set(oracle.known["Gripper"])
    assert {"Gripper", "Teach Pendant"} <= known


def test_required_children_expand_depth_first_in_oracle_order():
    oracle = ScriptedOracle(
        {
            "Arm": [_c("Gripper"), _c("Rail"), _c("Pendant", "compatible")],
            "Gripper": [_c("Fingers")],
        }
    )
    controller, sleep = _controller(oracle, step_delay_s=0.3)
    controller.load_tree(_start_tree())

    result = asyncio.run(controller.expand("a", set(), 0))

    assert oracle.calls == ["Arm", "Gripper", "Fingers", "Rail"]
    assert sleep.delays == [0.3, 0.3, 0.3]
    assert result.oracle_calls == 4
    assert result.ok
    # compatible children are never auto-expanded
    pendant = [c for c in find_node(controller.snapshot, "a").children if c.name == "Pendant"][0]
    assert pendant.state == "unexpanded"


def test_initial_expand_cell_culture_scenario():
    initial = LabNode(
        id="oracle-root",
        name="Cell Culture Lab",
        kind="root",
        children=(
            _c("Incubator"),
            _c("Imager", "compatible"),
            _c("Liquid Handler"),
            _c("Barcode Printer", "compatible"),
            _c("LIMS Bridge", "compatible"),
        ),
    )
    oracle = ScriptedOracle(initial=initial)
    controller, sleep = _controller(oracle, step_delay_s=0.3)

    result = asyncio.run(controller.initial_expand("cell culture lab"))

    tree = controller.snapshot
    assert tree.id != "oracle-root"
    assert controller.selected_node_id == tree.id
    assert oracle.calls == ["Incubator", "Liquid Handler"]
    assert sleep.delays == [0.3]
    assert len(result.expanded) == 2
    assert not controller.auto_expanding
    assert not controller.loading
    assert check_tree(tree) == []
    # names of the whole initial tree are sent as context
    assert set(oracle.known["Incubator"]) == set(collect_names(tree))


def test_initial_expand_failure_surfaces_generic_message():
    oracle = ScriptedOracle(initial=None)
    controller, _ = _controller(oracle)

    with pytest.raises(GenerationError) as exc:
        asyncio.run(controller.initial_expand("cell culture lab"))

    assert exc.value.code == "E_INITIAL_ANALYSIS"
    assert controller.last_error == INITIAL_ANALYSIS_FAILED
    assert controller.view().error == INITIAL_ANALYSIS_FAILED
    assert controller.snapshot is None
    assert not controller.loading


def test_initial_expand_blank_text_is_a_noop():
    oracle = ScriptedOracle()
    controller, _ = _controller(oracle)
    result = asyncio.run(controller.initial_expand("   "))
    assert result.oracle_calls == 0
    assert controller.snapshot is None


def test_failed_expansion_releases_lock_and_allows_retry_by_click():
    oracle = ScriptedOracle({"Arm": [_c("Gripper", "compatible")]}, fail_once={"Arm"})
    controller, _ = _controller(oracle)
    controller.load_tree(_start_tree())

    result = asyncio.run(controller.expand("a", set(), 0))

    assert not result.ok
    assert result.failures[0].node_id == "a"
    node = find_node(controller.snapshot, "a")
    assert node.is_generating is False
    assert node.children == ()
    assert node.is_expanded is False

    retry = asyncio.run(controller.on_node_clicked("a"))

    assert retry is not None and retry.expanded == ["a"]
    assert [c.name for c in find_node(controller.snapshot, "a").children] == ["Gripper"]


def test_failure_does_not_abort_sibling_expansions():
    initial = LabNode(id="x", name="Lab", kind="root", children=(_c("Arm"), _c("Bench")))
    oracle = ScriptedOracle(
        {"Arm": [_c("Gripper")], "Bench": [_c("Shelf", "compatible")]},
        initial=initial,
        fail_once={"Arm"},
    )
    controller, _ = _controller(oracle)

    result = asyncio.run(controller.initial_expand("two benches"))

    assert [f.name for f in result.failures] == ["Arm"]
    arm, bench = controller.snapshot.children
    assert result.expanded == [bench.id]
    assert bench.children[0].name == "Shelf"
    assert arm.state == "unexpanded"


def test_depth_ceiling_stops_an_endless_required_chain():
    class Endless(ScriptedOracle):
        async def expand_children(self, node, known_names):
            self.calls.append(node.name)
            await asyncio.sleep(0)
            return [_c(node.name + "+")]

    oracle = Endless()
    controller, _ = _controller(oracle, max_depth=3)
    controller.load_tree(_start_tree())

    result = asyncio.run(controller.expand("a", set(), 0))

    assert len(oracle.calls) == 4
    assert len(result.expanded) == 4
    assert len(result.skipped) == 1
    assert count_nodes(controller.snapshot) == 4 + 4
    deepest = find_node(controller.snapshot, result.skipped[0])
    assert deepest.state == "unexpanded"


def test_click_on_populated_node_does_nothing():
    oracle = ScriptedOracle()
    controller, _ = _controller(oracle)
    controller.load_tree(_start_tree())

    assert asyncio.run(controller.on_node_clicked("root")) is None
    assert controller.selected_node_id == "root"
    assert oracle.calls == []


def test_click_on_unknown_node_is_silent():
    oracle = ScriptedOracle()
    controller, _ = _controller(oracle)
    controller.load_tree(_start_tree())
    assert asyncio.run(controller.on_node_clicked("ghost")) is None


def test_tree_reset_during_call_abandons_merge():
    oracle = ScriptedOracle()
    controller, _ = _controller(oracle)
    controller.load_tree(_start_tree())

    def reset_midway(node):
        controller.reset()
        return [_c("Gripper")]

    oracle.script = {"Arm": reset_midway}
    result = asyncio.run(controller.expand("a", set(), 0))

    assert result.skipped == ["a"]
    assert result.expanded == []
    assert controller.snapshot is None


def test_independent_chains_do_not_lose_each_others_updates():
    oracle = ScriptedOracle(
        {
            "Arm": [_c("Gripper", "compatible"), _c("Rail", "compatible")],
            "Bench": [_c("Shelf", "compatible")],
        }
    )
    controller, _ = _controller(oracle)
    controller.load_tree(_start_tree())

    async def two_clicks():
        return await asyncio.gather(
            controller.on_node_clicked("a"),
            controller.on_node_clicked("b"),
        )

    asyncio.run(two_clicks())

    tree = controller.snapshot
    assert [c.name for c in find_node(tree, "a").children] == ["Gripper", "Rail"]
    assert [c.name for c in find_node(tree, "b").children] == ["Shelf"]
    assert check_tree(tree) == []


def test_every_published_snapshot_keeps_ids_unique():
    snapshots = []
    oracle = ScriptedOracle(
        {
            "Arm": [_c("Gripper"), _c("Rail")],
            "Gripper": [_c("Fingers", "compatible")],
            "Bench": [_c("Shelf")],
        }
    )
    controller, _ = _controller(oracle)
    controller.subscribe(snapshots.append)
    controller.load_tree(_start_tree())

    asyncio.run(controller.on_node_clicked("a"))
    asyncio.run(controller.on_node_clicked("b"))

    assert len(snapshots) > 4
    for snap in snapshots:
        assert check_tree(snap) == []
