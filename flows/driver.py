"""
Execution Driver — turns context changes into node executions for one session.

The driver owns the session's ConversationContext and is the only thing that
changes it (through context.reducer.reduce). It runs nodes one at a time:

  cursor → re-entry guard → pacing delay → mark processed → execute node
    → deliver effects (messages to the sink, input/TTS requests to the host)
    → apply transition:
        Advance / AdvanceVia → resolve edge → move cursor → loop
        Suspend              → stop; wait for submit_user_response /
                               submit_transcript / on_speech_complete
        Terminate            → cursor cleared
        Fail                 → cursor cleared, session failed
    → no outgoing edge: one "end of flow" system message, cursor cleared

Execution for a session is strictly sequential (an asyncio.Lock). Every run
remembers the context's turn generation it started under; reset() bumps the
generation so a run still waiting on a slow adapter drops its result instead
of racing the new state.

Usage:
    driver = ExecutionDriver(graph, executor, sink, capture_host=host)
    await driver.start({"name": "Ana"})
    ...
    await driver.submit_user_response("tomorrow at 10")
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Awaitable, Callable, Optional

from adapters.base import InputCaptureHost, MessageSink, SpeechSynthesizer
from config.settings import EngineConfig
from context.reducer import (
    ContextEvent, CursorMoved, Failed, NodeProcessed, Resumed, SessionReset,
    SessionStarted, Suspended, Terminated, VariablesSet, initial_context, reduce,
)
from flows.errors import UnreachableNodeError
from flows.executor import NodeExecutor, system_message
from flows.routing import resolve_next
from models.schemas import (
    Advance, AdvanceVia, CallKind, ChatMessage, ChoiceOption, ConversationContext,
    ExecutionResult, ExternalCall, Fail, FlowGraph, Node, NodeType, SenderType,
    SessionStatus, Suspend, SuspendReason, Terminate, Transition,
)
from utils.interpolation import clean_variable_name

logger = structlog.get_logger()

Sleep = Callable[[float], Awaitable[None]]
ContextObserver = Callable[[ConversationContext], None]

LIST_PORT_LIMIT = 5  # list nodes only expose ports for their first items


class ExecutionDriver:
    """
    Drives one conversation session through a flow graph.

    Args:
        graph:        The flow graph to execute (read-only)
        executor:     NodeExecutor with AI/business adapters injected
        sink:         MessageSink receiving every emitted message
        capture_host: InputCaptureHost asked for text/voice input
        synthesizer:  SpeechSynthesizer for tts nodes in voice mode
        config:       EngineConfig (delays, voice mode, default texts)
        tenant_id:    Tenant the session runs under (forwarded to business actions)
        session_id:   Session identifier (stamped on emitted messages)
        sleep:        Awaitable used for pacing delays (asyncio.sleep)
    """

    def __init__(
        self,
        graph: FlowGraph,
        executor: NodeExecutor,
        sink: MessageSink,
        capture_host: Optional[InputCaptureHost] = None,
        synthesizer: Optional[SpeechSynthesizer] = None,
        config: Optional[EngineConfig] = None,
        tenant_id: str = "",
        session_id: str = "",
        sleep: Sleep = asyncio.sleep,
    ):
        self.graph = graph
        self.executor = executor
        self.sink = sink
        self.capture_host = capture_host
        self.synthesizer = synthesizer
        self.config = config or executor.config
        self.tenant_id = tenant_id
        self.session_id = session_id
        self._sleep = sleep
        self._context = initial_context()
        self._lock = asyncio.Lock()
        self._observers: list[ContextObserver] = []
        self._node_index = graph.node_index
        self._pending: set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.last_error: Optional[str] = None

        if synthesizer is not None:
            synthesizer.subscribe(self._speech_finished)

    # ── Context ───────────────────────────────────────────────

    @property
    def context(self) -> ConversationContext:
        return self._context

    @property
    def voice_mode(self) -> bool:
        return self.config.voice_mode

    def subscribe(self, observer: ContextObserver):
        """Register a callback receiving every new context value."""
        self._observers.append(observer)

    def _dispatch(self, event: ContextEvent) -> ConversationContext:
        self._context = reduce(self._context, event)
        for observer in self._observers:
            observer(self._context)
        return self._context

    # ══════════════════════════════════════════════════════════
    #  SESSION LIFECYCLE
    # ══════════════════════════════════════════════════════════

    async def start(self, variables: dict[str, Any] = None) -> ConversationContext:
        """Start (or restart) the flow at its start node and run until it waits or ends."""
        start = self.graph.start_node()
        async with self._lock:
            self._dispatch(SessionStarted(start.id if start else None, variables or {}))
            if start is None:
                logger.warning("flow_missing_start_node",
                               session_id=self.session_id, tenant_id=self.tenant_id)
                await self._emit(system_message(self.config.missing_start_message))
                return self._context

            logger.info("flow_session_started", session_id=self.session_id,
                        tenant_id=self.tenant_id, start_node=start.id,
                        variables=sorted((variables or {}).keys()))
            await self._run_locked()
        return self._context

    async def run(self) -> ConversationContext:
        """Execute from the current cursor until suspension or termination."""
        async with self._lock:
            await self._run_locked()
        return self._context

    def restore(self, context: ConversationContext) -> ConversationContext:
        """Adopt a previously saved context (e.g. loaded from a ContextStore)."""
        self._context = context
        for observer in self._observers:
            observer(self._context)
        return self._context

    async def drain(self):
        """Wait for resumptions scheduled by completion callbacks."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def close(self):
        if self.synthesizer is not None:
            self.synthesizer.unsubscribe(self._speech_finished)

    def reset(self) -> ConversationContext:
        """
        Discard the session state. Bumps the turn generation, so any run
        still awaiting an adapter abandons its result.
        """
        previous = self._context
        self._dispatch(SessionReset())
        logger.info("flow_session_reset", session_id=self.session_id,
                    tenant_id=self.tenant_id, abandoned_node=previous.current_node_id,
                    turn=self._context.turn)
        return self._context

    # ══════════════════════════════════════════════════════════
    #  RESUMPTION ENTRY POINTS
    # ══════════════════════════════════════════════════════════

    async def submit_user_response(self, text: str) -> ConversationContext:
        """
        Resume an input/stt/choice node with the user's reply. The reply is
        stored in the node's variable (leading '$' stripped) and the flow
        continues along the matching port.

        A reply that arrives while nodes are still running (e.g. a business
        action in flight) is dropped rather than queued, so it never answers
        a question the user has not seen yet.
        """
        if self._context.status == SessionStatus.RUNNING:
            logger.info("user_response_ignored", session_id=self.session_id,
                        node_id=self._context.current_node_id, status="running",
                        reason="run_in_progress")
            return self._context

        async with self._lock:
            ctx = self._context
            node = self._node_index.get(ctx.current_node_id) if ctx.current_node_id else None
            if node is None or not ctx.is_suspended or ctx.awaiting == SuspendReason.SPEECH_PLAYBACK:
                logger.info("user_response_ignored", session_id=self.session_id,
                            node_id=ctx.current_node_id, status=ctx.status.value,
                            awaiting=ctx.awaiting.value if ctx.awaiting else None)
                return self._context

            var_name = clean_variable_name(getattr(node.data, "variable_name", "") or "")
            if var_name:
                self._dispatch(VariablesSet({var_name: text}))
                logger.info("variable_captured", session_id=self.session_id,
                            node_id=node.id, variable=var_name)

            port = None
            if ctx.awaiting == SuspendReason.CHOICE:
                port = self._match_choice(node, ctx.active_choices, text)

            self._dispatch(Resumed())
            await self._apply_transition(node, AdvanceVia(port=port))
            await self._run_locked()
        return self._context

    async def submit_transcript(self, text: str) -> ConversationContext:
        """Voice reply: echo the transcript as a user message, then resume."""
        await self._emit(ChatMessage(content=text, sender_id=SenderType.USER))
        return await self.submit_user_response(text)

    async def on_speech_complete(self) -> ConversationContext:
        """Playback of a tts node finished; advance past it."""
        async with self._lock:
            ctx = self._context
            node = self._node_index.get(ctx.current_node_id) if ctx.current_node_id else None
            if node is None or ctx.awaiting != SuspendReason.SPEECH_PLAYBACK:
                logger.debug("speech_complete_ignored", session_id=self.session_id,
                             node_id=ctx.current_node_id)
                return self._context
            logger.info("speech_playback_complete", session_id=self.session_id, node_id=node.id)
            self._dispatch(Resumed())
            await self._apply_transition(node, AdvanceVia())
            await self._run_locked()
        return self._context

    def _speech_finished(self):
        # Synthesizers may report completion from inside synthesize(), while
        # this session's lock is still held, or from a provider thread.
        # Either way the resume runs on a separate task on the driver's loop.
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is not None and (self._loop is None or running is self._loop):
            self._schedule_speech_resume()
        elif self._loop is not None:
            self._loop.call_soon_threadsafe(self._schedule_speech_resume)
        else:
            logger.warning("speech_complete_without_loop", session_id=self.session_id)

    def _schedule_speech_resume(self):
        task = asyncio.get_running_loop().create_task(self.on_speech_complete())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _match_choice(self, node: Node, choices: tuple[ChoiceOption, ...], text: str) -> Optional[str]:
        """Port handle-<i> of the option whose text or value equals the reply."""
        if not choices:
            return None
        reply = text.strip().lower()
        limit = LIST_PORT_LIMIT if node.type == NodeType.LIST else len(choices)
        for i, option in enumerate(choices):
            if option.text.lower() == reply or (option.value and option.value.lower() == reply):
                if i < limit:
                    return f"handle-{i}"
                break
        logger.info("choice_not_matched_using_first", session_id=self.session_id,
                    node_id=node.id, reply=text)
        return "handle-0"

    # ══════════════════════════════════════════════════════════
    #  RUN LOOP
    # ══════════════════════════════════════════════════════════

    async def _run_locked(self):
        self._loop = asyncio.get_running_loop()
        steps = 0
        turn = self._context.turn

        while True:
            ctx = self._context
            if ctx.turn != turn:
                logger.info("stale_run_abandoned", session_id=self.session_id, turn=turn)
                return
            if ctx.current_node_id is None or ctx.status != SessionStatus.RUNNING:
                return
            node_id = ctx.current_node_id
            if node_id in ctx.processed_nodes:
                logger.debug("node_already_processed", session_id=self.session_id, node_id=node_id)
                return

            node = self._node_index.get(node_id)
            if node is None:
                logger.error("cursor_node_missing", session_id=self.session_id, node_id=node_id)
                self._dispatch(Terminated())
                return

            if steps >= self.config.max_steps_per_turn:
                logger.warning("step_limit_reached", session_id=self.session_id,
                               node_id=node_id, limit=self.config.max_steps_per_turn)
                await self._emit(system_message(self.config.step_limit_message, node_id))
                self.last_error = "max_steps_exceeded"
                self._dispatch(Failed("max_steps_exceeded"))
                return
            steps += 1

            await self._pace(node)
            if self._context.turn != turn:
                logger.info("stale_run_abandoned", session_id=self.session_id, turn=turn)
                return

            self._dispatch(NodeProcessed(node.id))
            result = await self.executor.execute(
                node, self._context, tenant_id=self.tenant_id, voice_mode=self.voice_mode,
            )

            if self._context.turn != turn:
                logger.info("stale_result_discarded", session_id=self.session_id,
                            node_id=node.id, turn=turn)
                return

            logger.info("node_executed", session_id=self.session_id, node_id=node.id,
                        node_type=node.type_name,
                        transition=type(result.transition).__name__,
                        messages=len(result.messages), metadata=result.metadata)
            await self._apply_result(node, result)

    async def _pace(self, node: Node):
        if node.type == NodeType.START:
            delay_ms = self.config.start_delay_ms
        elif node.data.delay is not None:
            delay_ms = node.data.delay
        else:
            delay_ms = self.config.default_node_delay_ms
        if delay_ms and delay_ms > 0:
            await self._sleep(delay_ms / 1000)

    async def _apply_result(self, node: Node, result: ExecutionResult):
        if (isinstance(result.transition, Suspend)
                and result.transition.reason == SuspendReason.SPEECH_PLAYBACK
                and self.synthesizer is None):
            # Nothing would ever report playback complete; continue as in text mode.
            logger.warning("no_synthesizer_configured",
                           session_id=self.session_id, node_id=node.id)
            result = result.model_copy(update={
                "effects": [e for e in result.effects if not isinstance(e, ExternalCall)],
                "transition": AdvanceVia(),
            })

        if result.context_patch:
            self._dispatch(VariablesSet(result.context_patch))

        for message in result.messages:
            await self._emit(message)

        # A suspension is recorded before the host is asked for input, so a
        # reply or playback completion always finds the session waiting.
        if isinstance(result.transition, Suspend):
            await self._apply_transition(node, result.transition)
            for call in result.calls:
                await self._perform(node, call)
        else:
            for call in result.calls:
                await self._perform(node, call)
            await self._apply_transition(node, result.transition)

    async def _apply_transition(self, node: Node, transition: Transition):
        if isinstance(transition, AdvanceVia):
            targets = resolve_next(self.graph, node.id, transition.port)
            if not targets:
                await self._end_of_flow(node, transition.port)
                return
            await self._apply_transition(node, Advance(next_node_id=targets[0]))

        elif isinstance(transition, Advance):
            self._dispatch(CursorMoved(transition.next_node_id))

        elif isinstance(transition, Suspend):
            self._dispatch(Suspended(transition.reason, tuple(transition.choices)))
            logger.info("flow_suspended", session_id=self.session_id,
                        node_id=node.id, reason=transition.reason.value)

        elif isinstance(transition, Terminate):
            self._dispatch(Terminated())
            logger.info("flow_ended", session_id=self.session_id, node_id=node.id)

        elif isinstance(transition, Fail):
            self.last_error = transition.error
            self._dispatch(Failed(transition.error))
            logger.error("flow_failed", session_id=self.session_id,
                         tenant_id=self.tenant_id, node_id=node.id, error=transition.error)

    async def _end_of_flow(self, node: Node, port: Optional[str]):
        error = UnreachableNodeError(node.id, port)
        logger.info("flow_no_outgoing_edge", session_id=self.session_id, error=str(error))
        if self._context.current_node_id is not None:
            await self._emit(system_message(self.config.end_of_flow_message, node.id))
        self._dispatch(Terminated())

    # ── Effects ───────────────────────────────────────────────

    async def _emit(self, message: ChatMessage):
        if not message.session_id and self.session_id:
            message = message.model_copy(update={"session_id": self.session_id})
        await self.sink.on_message(message)

    async def _perform(self, node: Node, call: ExternalCall):
        if call.kind == CallKind.REQUEST_TEXT_INPUT:
            if self.capture_host is not None:
                await self.capture_host.request_text_input()
        elif call.kind == CallKind.REQUEST_VOICE_INPUT:
            if self.capture_host is not None:
                await self.capture_host.request_voice_input()
        elif call.kind == CallKind.SYNTHESIZE_SPEECH:
            await self.synthesizer.synthesize(call.payload.get("text", ""))
