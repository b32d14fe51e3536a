"""
Flow Graph Registry — parses, validates and indexes authored flow graphs.

Flows arrive as the editor saved them: a JSON object with `nodes`
(id, type, data) and `edges` (id, source, target, sourceHandle). The
editor has used several names for the same node type over time
("messageNode", "ttsNode", "text-to-speech"...); they are normalised here
so the executor only ever sees canonical NodeType values. Business nodes
("reschedule-appointment", "cancel_appointment"...) become business-action
nodes whose `action` is the original kind.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from pydantic import ValidationError

from flows.actions import DECLARED_PORTS, PROFILES, normalize_action_name
from flows.errors import GraphValidationError
from flows.routing import declared_ports
from models.schemas import Edge, FlowGraph, Node, NodeType, validate_graph

logger = structlog.get_logger()

TYPE_ALIASES: dict[str, NodeType] = {
    "start": NodeType.START,
    "startNode": NodeType.START,
    "message": NodeType.MESSAGE,
    "messageNode": NodeType.MESSAGE,
    "text": NodeType.MESSAGE,
    "ai-response": NodeType.AI_RESPONSE,
    "aiNode": NodeType.AI_RESPONSE,
    "ai": NodeType.AI_RESPONSE,
    "input": NodeType.INPUT,
    "inputNode": NodeType.INPUT,
    "condition": NodeType.CONDITION,
    "conditionNode": NodeType.CONDITION,
    "tts": NodeType.TTS,
    "ttsNode": NodeType.TTS,
    "text-to-speech": NodeType.TTS,
    "stt": NodeType.STT,
    "sttNode": NodeType.STT,
    "speech-to-text": NodeType.STT,
    "end": NodeType.END,
    "endNode": NodeType.END,
    "buttons": NodeType.BUTTONS,
    "buttonsNode": NodeType.BUTTONS,
    "list": NodeType.LIST,
    "listNode": NodeType.LIST,
    "business-action": NodeType.BUSINESS_ACTION,
}


def normalize_node(raw: dict[str, Any]) -> dict[str, Any]:
    """Map an authored node onto its canonical type (unknown types are kept as-is)."""
    raw_type = str(raw.get("type", ""))
    data = dict(raw.get("data") or {})

    node_type: Any = TYPE_ALIASES.get(raw_type)
    if node_type is None and normalize_action_name(raw_type) in PROFILES:
        node_type = NodeType.BUSINESS_ACTION
        data.setdefault("action", normalize_action_name(raw_type))
    if node_type is None:
        node_type = raw_type

    return {"id": str(raw["id"]), "type": node_type, "data": data}


def parse_graph(raw: dict[str, Any], flow_id: str = "") -> FlowGraph:
    """Build a FlowGraph from authored JSON. Raises GraphValidationError."""
    try:
        nodes = [Node.model_validate(normalize_node(n)) for n in raw.get("nodes", [])]
        edges = [
            Edge.model_validate({**e, "id": str(e.get("id", f"e{i}"))})
            for i, e in enumerate(raw.get("edges", []))
        ]
    except (KeyError, ValidationError) as e:
        raise GraphValidationError(flow_id, [str(e)]) from e

    # Validate before constructing so errors carry the flow id.
    errors = validate_graph(FlowGraph.model_construct(nodes=nodes, edges=edges))
    if errors:
        raise GraphValidationError(flow_id, errors)
    return FlowGraph(nodes=nodes, edges=edges)


def lint_graph(graph: FlowGraph) -> list[str]:
    """Non-fatal authoring warnings."""
    warnings = []
    if graph.start_node() is None:
        warnings.append("flow has no start node")
    for node in graph.nodes:
        if node.type == NodeType.BUSINESS_ACTION:
            for port in declared_ports(graph, node.id):
                if port not in DECLARED_PORTS:
                    warnings.append(f"business node '{node.id}' has edge on unknown port '{port}'")
    return warnings


class FlowGraphRegistry:
    """Central registry of executable flow graphs, indexed by flow id."""

    def __init__(self):
        self._graphs: dict[str, FlowGraph] = {}
        self._names: dict[str, str] = {}

    def register(self, flow_id: str, graph: FlowGraph, name: str = ""):
        """Register a single flow graph."""
        for warning in lint_graph(graph):
            logger.warning("flow_graph_lint", flow_id=flow_id, warning=warning)
        self._graphs[flow_id] = graph
        self._names[flow_id] = name or flow_id
        logger.info("flow_graph_registered",
                    flow_id=flow_id, nodes=len(graph.nodes), edges=len(graph.edges))

    def register_raw(self, flow_id: str, raw: dict[str, Any], name: str = "") -> FlowGraph:
        try:
            graph = parse_graph(raw, flow_id)
        except GraphValidationError as e:
            logger.error("invalid_flow_graph", flow_id=flow_id, errors=e.errors)
            raise
        self.register(flow_id, graph, name)
        return graph

    def register_from_config(self, config: list[dict[str, Any]]):
        """
        Load flows from config entries:
            {"id": ..., "name": ..., "graph": {"nodes": [...], "edges": [...]}}
        """
        for raw in config:
            graph_json = raw.get("graph") or raw.get("react_flow_json") or raw
            self.register_raw(raw["id"], graph_json, raw.get("name", ""))
        logger.info("flow_graphs_loaded", count=len(config))

    def get(self, flow_id: str) -> Optional[FlowGraph]:
        return self._graphs.get(flow_id)

    def name(self, flow_id: str) -> str:
        return self._names.get(flow_id, flow_id)

    def list_all(self) -> list[str]:
        return list(self._graphs)

    def unregister(self, flow_id: str):
        self._graphs.pop(flow_id, None)
        self._names.pop(flow_id, None)
