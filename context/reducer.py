"""
Context Reducer — every change to a ConversationContext goes through here.

The context is an immutable value. The execution driver never edits it in
place; it describes what happened as an event and asks `reduce` for the
next value, so observers (message sink, UI, persistence) only ever see
complete states and can diff old vs new cheaply.

Flow:
  SessionStarted → cursor at start node, empty processed set
  CursorMoved    → cursor advanced along an edge (target becomes unprocessed)
  NodeProcessed  → re-entry guard marks the node consumed (before execution)
  VariablesSet   → variables merged
  Suspended / Resumed → awaiting an external event, or not
  Terminated / Failed → cursor cleared, session finished
  SessionReset   → cleared, turn generation bumped to cancel in-flight work
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Union

from models.schemas import ChoiceOption, ConversationContext, SessionStatus, SuspendReason


@dataclass(frozen=True)
class SessionStarted:
    start_node_id: Optional[str]
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CursorMoved:
    node_id: str


@dataclass(frozen=True)
class NodeProcessed:
    node_id: str


@dataclass(frozen=True)
class VariablesSet:
    values: dict[str, Any]


@dataclass(frozen=True)
class Suspended:
    reason: SuspendReason
    choices: tuple[ChoiceOption, ...] = ()


@dataclass(frozen=True)
class Resumed:
    pass


@dataclass(frozen=True)
class Terminated:
    pass


@dataclass(frozen=True)
class Failed:
    reason: str


@dataclass(frozen=True)
class SessionReset:
    pass


ContextEvent = Union[
    SessionStarted, CursorMoved, NodeProcessed, VariablesSet,
    Suspended, Resumed, Terminated, Failed, SessionReset,
]


def initial_context(turn: int = 0) -> ConversationContext:
    return ConversationContext(turn=turn)


def reduce(context: ConversationContext, event: ContextEvent) -> ConversationContext:
    """Return the context that results from applying `event`. Never mutates `context`."""
    if isinstance(event, SessionStarted):
        return ConversationContext(
            variables=dict(event.variables),
            current_node_id=event.start_node_id,
            processed_nodes=frozenset(),
            status=SessionStatus.RUNNING if event.start_node_id else SessionStatus.ENDED,
            turn=context.turn,
        )

    if isinstance(event, CursorMoved):
        return context.model_copy(update={
            "current_node_id": event.node_id,
            "processed_nodes": context.processed_nodes - {event.node_id},
            "status": SessionStatus.RUNNING,
            "awaiting": None,
            "active_choices": (),
        })

    if isinstance(event, NodeProcessed):
        return context.model_copy(update={
            "processed_nodes": context.processed_nodes | {event.node_id},
        })

    if isinstance(event, VariablesSet):
        if not event.values:
            return context
        return context.model_copy(update={
            "variables": {**context.variables, **event.values},
        })

    if isinstance(event, Suspended):
        return context.model_copy(update={
            "status": SessionStatus.SUSPENDED,
            "awaiting": event.reason,
            "active_choices": tuple(event.choices),
        })

    if isinstance(event, Resumed):
        return context.model_copy(update={
            "status": SessionStatus.RUNNING,
            "awaiting": None,
            "active_choices": (),
        })

    if isinstance(event, Terminated):
        return context.model_copy(update={
            "current_node_id": None,
            "status": SessionStatus.ENDED,
            "awaiting": None,
            "active_choices": (),
        })

    if isinstance(event, Failed):
        return context.model_copy(update={
            "current_node_id": None,
            "status": SessionStatus.FAILED,
            "awaiting": None,
            "active_choices": (),
            "error": event.reason,
        })

    if isinstance(event, SessionReset):
        return initial_context(turn=context.turn + 1)

    raise TypeError(f"Unknown context event: {event!r}")
