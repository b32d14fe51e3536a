"""
Edge Resolver — picks the next node(s) leaving a node through a port.

Edges are returned in their authored array order; callers take the first
(first match wins). An edge without a source handle is a wildcard and
matches any requested port, which keeps unlabeled graphs working.
An empty result means the branch has nowhere to go.
"""
from __future__ import annotations

import structlog
from typing import Optional

from models.schemas import Edge, FlowGraph

logger = structlog.get_logger()


def matching_edges(graph: FlowGraph, node_id: str, port: Optional[str] = None) -> list[Edge]:
    outgoing = [e for e in graph.edges if e.source == node_id]
    if port is None:
        return outgoing
    return [e for e in outgoing if e.source_handle == port or e.source_handle is None]


def resolve_next(graph: FlowGraph, node_id: str, port: Optional[str] = None) -> list[str]:
    """Target node ids reachable from `node_id` via `port`, in edge order."""
    targets = [e.target for e in matching_edges(graph, node_id, port)]
    logger.debug("edges_resolved", node_id=node_id, port=port, targets=targets)
    return targets


def declared_ports(graph: FlowGraph, node_id: str) -> list[str]:
    """Distinct named handles used by edges leaving `node_id`."""
    ports: list[str] = []
    for e in graph.edges:
        if e.source == node_id and e.source_handle and e.source_handle not in ports:
            ports.append(e.source_handle)
    return ports
