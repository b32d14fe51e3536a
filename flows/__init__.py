"""
Conversational flow engine.

A flow is a directed graph of typed nodes authored in the visual editor.
The engine walks the graph for one session at a time: the executor runs a
node, the driver applies its result to the session context, delivers its
messages and follows the outgoing edge, pausing whenever the flow waits
for the user or for speech playback.
"""
from flows.errors import (
    FlowEngineError, ConfigurationError, TransientExternalError,
    LimitExceededError, ContractViolation, UnreachableNodeError, GraphValidationError,
)
from flows.routing import resolve_next, matching_edges, declared_ports
from flows.actions import ActionProfile, PROFILES, check_preconditions, get_profile
from flows.executor import NodeExecutor
from flows.driver import ExecutionDriver
from flows.registry import FlowGraphRegistry, parse_graph
from flows.sessions import FlowSessionManager, UnknownFlowError
