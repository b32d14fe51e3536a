"""
Flow Session Manager — one ExecutionDriver per (tenant, session).

The manager wires a registered flow graph to the shared executor and
collaborators, keeps every driver's latest context in a ContextStore and
routes inbound events (user replies, transcripts, playback completion) to
the right session. Sessions of different tenants never share a driver.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

from adapters.base import InputCaptureHost, MessageSink, SpeechSynthesizer
from config.settings import EngineConfig
from context.store import ContextStore, session_key
from flows.driver import ExecutionDriver, Sleep
from flows.executor import NodeExecutor
from flows.registry import FlowGraphRegistry
from models.schemas import ConversationContext

logger = structlog.get_logger()


class UnknownFlowError(KeyError):
    pass


class FlowSessionManager:
    """
    Starts and resumes conversation sessions.

    Usage:
        manager = FlowSessionManager(registry, executor, sink, capture_host=host)
        await manager.start_session("acme", "s-1", "reschedule", {"appointmentId": "A1"})
        await manager.submit("acme", "s-1", "next Monday")
    """

    def __init__(
        self,
        registry: FlowGraphRegistry,
        executor: NodeExecutor,
        sink: MessageSink,
        capture_host: Optional[InputCaptureHost] = None,
        synthesizer: Optional[SpeechSynthesizer] = None,
        config: Optional[EngineConfig] = None,
        store: Optional[ContextStore] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.registry = registry
        self.executor = executor
        self.sink = sink
        self.capture_host = capture_host
        self.synthesizer = synthesizer
        self.config = config or executor.config
        self.store = store or ContextStore()
        self._sleep = sleep
        self._drivers: dict[str, ExecutionDriver] = {}
        self._flows: dict[str, str] = {}

    async def start_session(
        self,
        tenant_id: str,
        session_id: str,
        flow_id: str,
        variables: dict[str, Any] = None,
    ) -> ConversationContext:
        """Start a flow for a session. An existing session with the same key is replaced."""
        graph = self.registry.get(flow_id)
        if graph is None:
            logger.error("flow_not_found", flow_id=flow_id, tenant_id=tenant_id)
            raise UnknownFlowError(flow_id)

        key = session_key(tenant_id, session_id)
        if key in self._drivers:
            self._close_driver(key)

        driver = ExecutionDriver(
            graph, self.executor, self.sink,
            capture_host=self.capture_host,
            synthesizer=self.synthesizer,
            config=self.config,
            tenant_id=tenant_id,
            session_id=session_id,
            sleep=self._sleep,
        )
        driver.subscribe(lambda ctx: self.store.save(tenant_id, session_id, ctx))
        self._drivers[key] = driver
        self._flows[key] = flow_id

        logger.info("flow_session_created", tenant_id=tenant_id,
                    session_id=session_id, flow_id=flow_id)
        return await driver.start(variables)

    def get_session(self, tenant_id: str, session_id: str) -> Optional[ExecutionDriver]:
        return self._drivers.get(session_key(tenant_id, session_id))

    def get_context(self, tenant_id: str, session_id: str) -> Optional[ConversationContext]:
        return self.store.get(tenant_id, session_id)

    def flow_of(self, tenant_id: str, session_id: str) -> Optional[str]:
        return self._flows.get(session_key(tenant_id, session_id))

    async def submit(self, tenant_id: str, session_id: str, text: str) -> Optional[ConversationContext]:
        """Route a user reply to its session. Returns None for unknown sessions."""
        driver = self.get_session(tenant_id, session_id)
        if driver is None:
            logger.warning("submit_for_unknown_session",
                           tenant_id=tenant_id, session_id=session_id)
            return None
        return await driver.submit_user_response(text)

    async def submit_transcript(self, tenant_id: str, session_id: str, text: str) -> Optional[ConversationContext]:
        driver = self.get_session(tenant_id, session_id)
        if driver is None:
            logger.warning("transcript_for_unknown_session",
                           tenant_id=tenant_id, session_id=session_id)
            return None
        return await driver.submit_transcript(text)

    async def speech_complete(self, tenant_id: str, session_id: str) -> Optional[ConversationContext]:
        driver = self.get_session(tenant_id, session_id)
        if driver is None:
            return None
        return await driver.on_speech_complete()

    def reset_session(self, tenant_id: str, session_id: str) -> Optional[ConversationContext]:
        driver = self.get_session(tenant_id, session_id)
        if driver is None:
            return None
        return driver.reset()

    def end_session(self, tenant_id: str, session_id: str):
        """Drop the session's driver and stored context."""
        key = session_key(tenant_id, session_id)
        if key in self._drivers:
            self._close_driver(key)
        self._flows.pop(key, None)
        self.store.delete(tenant_id, session_id)
        logger.info("flow_session_ended", tenant_id=tenant_id, session_id=session_id)

    def _close_driver(self, key: str):
        driver = self._drivers.pop(key)
        driver.reset()
        driver.close()

    def list_sessions(self, tenant_id: str = None) -> list[str]:
        keys = list(self._drivers)
        if tenant_id is not None:
            keys = [k for k in keys if k.startswith(f"{tenant_id}:")]
        return keys

    @property
    def count(self) -> int:
        return len(self._drivers)
