"""Shared test fixtures for the flow engine."""
import pytest
import asyncio
import threading
from typing import Any

from adapters.base import AIResponder, BusinessActionAdapter, SpeechSynthesizer
from adapters.preview import NullCaptureHost, NullSpeechSynthesizer, RecordingMessageSink
from config.settings import EngineConfig
from flows.driver import ExecutionDriver
from flows.executor import NodeExecutor
from flows.registry import parse_graph
from models.schemas import AIResponse, ActionOutcome, ActionOutputs, FlowGraph


def build_graph(nodes: list[dict[str, Any]], edges: list[tuple]) -> FlowGraph:
    """Edges as (source, target) or (source, target, source_handle)."""
    raw_edges = []
    for i, edge in enumerate(edges):
        raw = {"id": f"e{i}", "source": edge[0], "target": edge[1]}
        if len(edge) > 2:
            raw["sourceHandle"] = edge[2]
        raw_edges.append(raw)
    return parse_graph({"nodes": nodes, "edges": raw_edges})


class SlowAIResponder(AIResponder):
    """Blocks inside generate() until released, to test cancellation."""

    def __init__(self, text: str = "late reply"):
        self.text = text
        self.called = asyncio.Event()
        self.release = asyncio.Event()

    async def generate(self, prompt: str) -> AIResponse:
        self.called.set()
        await self.release.wait()
        return AIResponse(text=self.text)


class SlowActionAdapter(BusinessActionAdapter):
    """Blocks inside execute() until released, then reports success."""

    def __init__(self, message: str = "done"):
        self.message = message
        self.called = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, tenant_id, context, node_config) -> ActionOutcome:
        self.called.set()
        await self.release.wait()
        return ActionOutcome(port="success", outputs=ActionOutputs(message=self.message))


class ThreadedSpeechSynthesizer(SpeechSynthesizer):
    """Reports playback complete from a worker thread, like provider SDK callbacks."""

    def __init__(self):
        super().__init__()
        self.spoken: list[str] = []

    async def synthesize(self, text: str) -> None:
        self.spoken.append(text)
        worker = threading.Thread(target=self._finish)
        worker.start()
        worker.join()

    def _finish(self):
        for callback in list(self._subscribers):
            callback()


@pytest.fixture
def engine_config() -> EngineConfig:
    """No pacing delays in tests."""
    return EngineConfig(default_node_delay_ms=0, start_delay_ms=0)


@pytest.fixture
def voice_config() -> EngineConfig:
    return EngineConfig(default_node_delay_ms=0, start_delay_ms=0, voice_mode=True)


@pytest.fixture
def sink() -> RecordingMessageSink:
    return RecordingMessageSink()


@pytest.fixture
def capture_host() -> NullCaptureHost:
    return NullCaptureHost()


@pytest.fixture
def synthesizer() -> NullSpeechSynthesizer:
    return NullSpeechSynthesizer()


@pytest.fixture
def executor(engine_config) -> NodeExecutor:
    return NodeExecutor(config=engine_config)


@pytest.fixture
def greeting_graph() -> FlowGraph:
    """start → "Hola" → ask name → "Hola {{name}}" → end."""
    return build_graph(
        nodes=[
            {"id": "s", "type": "startNode", "data": {"label": "Start"}},
            {"id": "m1", "type": "messageNode", "data": {"message": "Hola"}},
            {"id": "i1", "type": "inputNode",
             "data": {"question": "¿Tu nombre?", "variableName": "$name"}},
            {"id": "m2", "type": "messageNode", "data": {"message": "Hola {{name}}"}},
            {"id": "e", "type": "endNode", "data": {"message": "Adiós"}},
        ],
        edges=[("s", "m1"), ("m1", "i1"), ("i1", "m2"), ("m2", "e")],
    )


@pytest.fixture
def make_driver(sink, capture_host, engine_config):
    """Factory: driver for a graph with recording sink and zero delays."""
    def _make(graph: FlowGraph, executor: NodeExecutor = None, **kwargs) -> ExecutionDriver:
        config = kwargs.pop("config", engine_config)
        return ExecutionDriver(
            graph,
            executor or NodeExecutor(config=config),
            sink,
            capture_host=kwargs.pop("capture_host", capture_host),
            config=config,
            session_id=kwargs.pop("session_id", "s-1"),
            tenant_id=kwargs.pop("tenant_id", "acme"),
            **kwargs,
        )
    return _make
