"""
Stage wrapper shared by every rotation node.

A stage that raises a RenewalError does not abort the graph: the error is
recorded in state and the router sends the run to challenge_cleanup, so
published artifacts are removed before the caller sees the failure.
Anything that is not a RenewalError propagates out of graph.invoke() and
is handled by Orchestrator.run().
"""
from __future__ import annotations

import logging
from typing import Callable

from langchain_core.runnables import RunnableConfig

from acmev2.errors import RenewalError
from rotation.context import RotationContext, get_context
from rotation.state import RotationState

logger = logging.getLogger(__name__)

StageFn = Callable[[RotationState, RotationContext], dict]


def stage(name: str, check_deadline: bool = True) -> Callable[[StageFn], Callable[[RotationState, RunnableConfig], dict]]:
    """Turn ``fn(state, ctx) -> dict`` into a graph node named *name*."""

    def decorator(fn: StageFn) -> Callable[[RotationState, RunnableConfig], dict]:
        def node(state: RotationState, config: RunnableConfig) -> dict:
            ctx = get_context(config)
            try:
                if check_deadline:
                    ctx.deadline.check(name)
                return fn(state, ctx)
            except RenewalError as exc:
                logger.error("Stage %s failed: %s", name, exc)
                return {
                    "error": exc,
                    "failed_stage": name,
                    "error_log": state.get("error_log", []) + [f"{name}: {exc}"],
                }

        # Copied by hand: functools.wraps would expose fn's signature, and
        # LangGraph only injects the config when the node declares "config".
        node.__name__ = node.__qualname__ = fn.__name__
        node.__doc__ = fn.__doc__
        return node

    return decorator
