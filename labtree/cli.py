from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.tree import Tree

from labtree.core.ai.openai_client import OpenAILabOracle
from labtree.core.config import EngineConfig, load_config
from labtree.core.demos import DEMO_SCENARIOS, load_demo
from labtree.core.errors import (
    GenerationError,
    LabConfigError,
    LabError,
    LabLoadError,
    LabValidationError,
)
from labtree.core.expand.controller import ChainResult, ExpansionController
from labtree.core.io.tree_io import dump_tree_json, dump_tree_yaml, load_tree_file
from labtree.core.model import LabNode
from labtree.core.tree.node_store import count_nodes, find_node
from labtree.core.validate.validate_tree import summarize_tree, validate_tree
from labtree.logging import configure_logging

app = typer.Typer(add_completion=False, no_args_is_help=True)
console = Console()


@app.callback()
def _callback() -> None:
    """labtree: grow lab automation equipment trees with an LLM."""
    return


@app.command("design")
def design(
    problem: str = typer.Argument(..., help="The lab automation problem, in plain words"),
    out: str = typer.Option(..., "--out", help="Where to write the tree (.yaml)"),
    config: Optional[str] = typer.Option(None, "--config", help="YAML file of engine settings"),
    max_depth: Optional[int] = typer.Option(None, "--max-depth", help="Auto-expansion depth ceiling"),
    delay: Optional[float] = typer.Option(None, "--delay", help="Seconds between oracle calls"),
    model: Optional[str] = typer.Option(None, "--model"),
    base_url: Optional[str] = typer.Option(None, "--base-url"),
) -> None:
    """Analyze a problem and auto-expand every required component."""
    if not problem.strip():
        _print_errors(
            [LabValidationError(code="E_EMPTY_PROBLEM", message="problem text is empty", path="problem")]
        )
        raise typer.Exit(code=2)

    cfg = _engine_config(config, max_depth=max_depth, step_delay_s=delay, model=model, base_url=base_url)
    controller = _controller(cfg)

    try:
        result = asyncio.run(controller.initial_expand(problem))
    except GenerationError as e:
        _print_errors([e])
        raise typer.Exit(code=2)

    tree = controller.snapshot
    assert tree is not None
    dump_tree_yaml(tree, out)
    console.print(_render_tree(tree, controller.selected_node_id))
    _print_chain(result)
    typer.echo(f"OK: wrote {out} ({count_nodes(tree)} nodes, expanded={len(result.expanded)})")


@app.command("expand")
def expand(
    path: str = typer.Argument(..., help="Tree file (.yaml/.yml/.json)"),
    node_id: str = typer.Argument(..., help="Id of the node to expand"),
    out: Optional[str] = typer.Option(None, "--out", help="Output file (defaults to PATH)"),
    config: Optional[str] = typer.Option(None, "--config", help="YAML file of engine settings"),
    max_depth: Optional[int] = typer.Option(None, "--max-depth"),
    delay: Optional[float] = typer.Option(None, "--delay"),
    model: Optional[str] = typer.Option(None, "--model"),
    base_url: Optional[str] = typer.Option(None, "--base-url"),
) -> None:
    """Expand one childless node, the same as clicking it."""
    tree = _load_tree_or_exit(path)
    if find_node(tree, node_id) is None:
        _print_errors(
            [
                LabValidationError(
                    code="E_UNKNOWN_NODE", message=f"no node with id {node_id}", file=path, path="node_id"
                )
            ]
        )
        raise typer.Exit(code=2)

    cfg = _engine_config(config, max_depth=max_depth, step_delay_s=delay, model=model, base_url=base_url)
    controller = _controller(cfg)
    controller.load_tree(tree)

    result = asyncio.run(controller.on_node_clicked(node_id))
    if result is None:
        typer.echo(f"NOOP: {node_id} already has children")
        return

    final = controller.snapshot
    assert final is not None
    target = out or path
    dump_tree_yaml(final, target)
    _print_chain(result)
    typer.echo(f"OK: wrote {target} ({count_nodes(final)} nodes, expanded={len(result.expanded)})")
    if not result.ok:
        raise typer.Exit(code=2)


@app.command("show")
def show(
    path: str = typer.Argument(..., help="Tree file (.yaml/.yml/.json)"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Print a tree."""
    _check_format(format)
    tree = _load_tree_or_exit(path)
    if format == "json":
        typer.echo(dump_tree_json(tree))
        return
    console.print(_render_tree(tree, None))


@app.command("validate")
def validate(
    path: str = typer.Argument(..., help="Tree file (.yaml/.yml/.json)"),
    format: str = typer.Option("text", "--format", help="Output format: text|json"),
) -> None:
    """Check a tree file: shape, one root, unique ids."""
    _check_format(format)

    def _emit_json(ok: bool, errors: list[LabError], summary: dict | None, code: int) -> None:
        payload = {
            "tool": "labtree",
            "command": "validate",
            "ok": ok,
            "error_count": len(errors),
            "errors": [
                {
                    "code": e.code,
                    "message": e.message,
                    "file": e.file,
                    "path": e.path,
                    "source": "load" if isinstance(e, LabLoadError) else "validate",
                }
                for e in errors
            ],
            "summary": summary,
        }
        typer.echo(json.dumps(payload, indent=2, sort_keys=True))
        raise typer.Exit(code=code)

    try:
        raw = load_tree_file(path)
    except LabLoadError as e:
        if format == "json":
            _emit_json(False, [e], None, 1)
        _print_errors([e])
        raise typer.Exit(code=1)

    tree, errors = validate_tree(raw)
    if errors or tree is None:
        if format == "json":
            _emit_json(False, list(errors), None, 2)
        _print_errors(list(errors))
        raise typer.Exit(code=2)

    if format == "text":
        typer.echo(summarize_tree(tree))
        return

    _emit_json(True, [], {"node_count": count_nodes(tree), "root": tree.id}, 0)


@app.command("demos")
def demos() -> None:
    """List the bundled demo designs."""
    for key, (title, _) in sorted(DEMO_SCENARIOS.items()):
        typer.echo(f"{key}\t{title}")


@app.command("demo")
def demo(
    name: str = typer.Argument(..., help="Demo key (see `labtree demos`)"),
    out: str = typer.Option(..., "--out"),
) -> None:
    """Write a bundled demo design to a tree file."""
    try:
        tree = load_demo(name)
    except LabLoadError as e:
        _print_errors([e])
        raise typer.Exit(code=2)
    dump_tree_yaml(tree, out)
    typer.echo(f"OK: wrote {out} ({count_nodes(tree)} nodes)")


@app.command("report")
def report(
    path: str = typer.Argument(..., help="Tree file (.yaml/.yml/.json)"),
    out: str = typer.Option(..., "--out", help="Markdown output file"),
    config: Optional[str] = typer.Option(None, "--config"),
    model: Optional[str] = typer.Option(None, "--model"),
    base_url: Optional[str] = typer.Option(None, "--base-url"),
) -> None:
    """Generate a User Requirements Specification from a tree."""
    tree = _load_tree_or_exit(path)
    cfg = _engine_config(config, model=model, base_url=base_url)
    oracle = _oracle(cfg)
    try:
        text = asyncio.run(oracle.generate_report(tree))
    except GenerationError as e:
        _print_errors([e])
        raise typer.Exit(code=2)

    p = Path(out)
    if str(p.parent) not in (".", ""):
        p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8")
    typer.echo(f"OK: wrote {out}")


def _engine_config(config_file: Optional[str], **overrides: object) -> EngineConfig:
    try:
        cfg = load_config(config_file, **overrides)
    except LabConfigError as e:
        _print_errors([e])
        raise typer.Exit(code=2)
    configure_logging(cfg.log_level)
    return cfg


def _oracle(cfg: EngineConfig) -> OpenAILabOracle:
    if not os.getenv("OPENAI_API_KEY"):
        _print_errors(
            [LabConfigError(code="E_NO_API_KEY", message="OPENAI_API_KEY is not set", path="OPENAI_API_KEY")]
        )
        raise typer.Exit(code=2)
    return OpenAILabOracle(config=cfg)


def _controller(cfg: EngineConfig) -> ExpansionController:
    return ExpansionController(_oracle(cfg), config=cfg)


def _load_tree_or_exit(path: str) -> LabNode:
    try:
        raw = load_tree_file(path)
    except LabLoadError as e:
        _print_errors([e])
        raise typer.Exit(code=1)
    tree, errors = validate_tree(raw)
    if errors or tree is None:
        _print_errors(list(errors))
        raise typer.Exit(code=2)
    return tree


def _check_format(format: str) -> None:
    if format not in ("text", "json"):
        _print_errors(
            [
                LabValidationError(
                    code="E_UNKNOWN_FORMAT",
                    message=f"unknown format: {format} (choose one of: text, json)",
                    path="format",
                )
            ]
        )
        raise typer.Exit(code=2)


_KIND_STYLE = {"root": "bold cyan", "required": "bold", "compatible": "dim"}


def _label(node: LabNode, selected: Optional[str]) -> str:
    mark = "*" if node.id == selected else " "
    stock = " [green](in stock)[/green]" if node.in_inventory else ""
    hint = "" if node.children or node.is_expanded or node.kind == "root" else " [yellow]+[/yellow]"
    style = _KIND_STYLE[node.kind]
    return f"{mark}[{style}]{escape(node.name)}[/{style}] ({node.kind}, {node.id}){stock}{hint}"


def _render_tree(tree: LabNode, selected: Optional[str]) -> Tree:
    root = Tree(_label(tree, selected))

    def add(branch: Tree, node: LabNode) -> None:
        for child in node.children:
            add(branch.add(_label(child, selected)), child)

    add(root, tree)
    return root


def _print_chain(result: ChainResult) -> None:
    for f in result.failures:
        typer.echo(f"WARN: expansion failed for {f.name} ({f.node_id}): {f.error}", err=True)


def _print_errors(errors: list[LabError]) -> None:
    errors_sorted = sorted(errors, key=lambda e: (e.file or "", e.path or "", e.code))
    for e in errors_sorted:
        typer.echo(str(e), err=True)


def main() -> None:
    app(prog_name="labtree")


cli = typer.main.get_command(app)

if __name__ == "__main__":
    main()
