"""Logging utilities."""

from __future__ import annotations

import contextlib
import contextvars
import logging
from typing import Any, Iterator

from rich.console import Console
from rich.logging import RichHandler


_chain_var: contextvars.ContextVar[str] = contextvars.ContextVar("labtree_chain", default="-")
_node_var: contextvars.ContextVar[str] = contextvars.ContextVar("labtree_node", default="-")


class _ContextFilter(logging.Filter):
    """Inject expansion context into log records."""

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.chain = _chain_var.get()  # type: ignore[attr-defined]
        record.node = _node_var.get()  # type: ignore[attr-defined]
        return True


@contextlib.contextmanager
def expansion_context(*, chain: str, node: str | None = None) -> Iterator[None]:
    """Temporarily bind the expansion chain (and optionally node) for log records."""

    token_chain = _chain_var.set(chain)
    token_node = _node_var.set(node or _node_var.get())
    try:
        yield
    finally:
        _chain_var.reset(token_chain)
        _node_var.reset(token_node)


def set_node(node_id: str) -> None:
    _node_var.set(node_id)


def configure_logging(level: str = "INFO") -> None:
    """Configure application logging.

    Args:
        level: Logging level name.
    """

    handler = RichHandler(
        console=Console(stderr=True), rich_tracebacks=True, show_time=True, show_level=True
    )
    handler.addFilter(_ContextFilter())

    formatter = logging.Formatter(
        fmt="chain=%(chain)s node=%(node)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(level.upper())
    # configure_logging may run once per CLI command in the same process
    if not any(isinstance(h, RichHandler) for h in root.handlers):
        root.addHandler(handler)
    else:
        for h in root.handlers:
            if isinstance(h, RichHandler):
                if not any(isinstance(f, _ContextFilter) for f in h.filters):
                    h.addFilter(_ContextFilter())
                h.setFormatter(formatter)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_exception(logger: logging.Logger, msg: str, **context: Any) -> None:
    """Log an exception with optional structured context."""

    if context:
        logger.exception("%s | context=%s", msg, context)
    else:
        logger.exception("%s", msg)
