"""
Node Executor — runs one node of a flow graph against a session context.

The executor is stateless: the node and the current context are passed in,
an ExecutionResult comes out. It never touches the context or the message
sink itself; the execution driver applies the result.

Each node type has its own handler:

  start            → advance
  message          → agent message, advance (or wait for text if wait_for_response)
  ai-response      → ask the AI adapter, store reply in a variable, advance
  input            → ask the question, request text input, suspend
  condition        → take the first declared option's port
  tts              → audio message; in voice mode synthesize and suspend for playback
  stt              → prompt, request voice/text input, suspend
  buttons / list   → message with options; wait for a choice if configured
  business-action  → preconditions, adapter call, route success/failure/needReason
  end              → closing message, terminate
  anything else    → pass through to the next node

Dependencies are injected via the constructor so the executor can be run
with fakes in tests and real adapters in production.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from pydantic import ValidationError

from adapters.base import AIResponder, BusinessActionAdapter
from config.settings import EngineConfig
from flows.actions import (
    DECLARED_PORTS, PORT_FAILURE, PORT_NEED_REASON, PORT_SUCCESS,
    check_preconditions, get_profile, success_patch,
)
from flows.errors import (
    ConfigurationError, ContractViolation, LimitExceededError, TransientExternalError,
)
from models.schemas import (
    AdvanceVia, AIResponseData, ActionOutcome, BusinessActionData, CallKind, ChatMessage,
    ChoiceData, ConditionData, ConversationContext, EndData, ExecutionResult, ExternalCall,
    Fail, InputData, MessageData, Node, NodeType, SenderType, STTData, Suspend,
    SuspendReason, Terminate, TTSData,
)
from utils.interpolation import (
    clean_variable_name, find_placeholders, format_value, interpolate,
)

logger = structlog.get_logger()


def agent_message(content: str, node_id: str = "", **kwargs) -> ChatMessage:
    return ChatMessage(content=content, sender_id=SenderType.AGENT, node_id=node_id, **kwargs)


def system_message(content: str, node_id: str = "", **kwargs) -> ChatMessage:
    return ChatMessage(content=content, sender_id=SenderType.SYSTEM, node_id=node_id, **kwargs)


class NodeExecutor:
    """
    Dispatches a node to its type handler.

    Args:
        ai_responder:   AIResponder for ai-response nodes (None = preview simulation)
        action_adapter: BusinessActionAdapter for business-action nodes
        config:         EngineConfig with default texts
    """

    def __init__(
        self,
        ai_responder: Optional[AIResponder] = None,
        action_adapter: Optional[BusinessActionAdapter] = None,
        config: Optional[EngineConfig] = None,
    ):
        self._ai = ai_responder
        self._actions = action_adapter
        self.config = config or EngineConfig()

    # ══════════════════════════════════════════════════════════
    #  MAIN ENTRY POINT
    # ══════════════════════════════════════════════════════════

    async def execute(
        self,
        node: Node,
        context: ConversationContext,
        tenant_id: str = "",
        voice_mode: bool = False,
    ) -> ExecutionResult:
        """Dispatch to the appropriate node handler."""
        try:
            if node.type == NodeType.START:
                return ExecutionResult(transition=AdvanceVia())
            elif node.type == NodeType.MESSAGE:
                return self._exec_message(node, context)
            elif node.type == NodeType.AI_RESPONSE:
                return await self._exec_ai_response(node, context)
            elif node.type == NodeType.INPUT:
                return self._exec_input(node, context)
            elif node.type == NodeType.CONDITION:
                return self._exec_condition(node, context)
            elif node.type == NodeType.TTS:
                return self._exec_tts(node, context, voice_mode)
            elif node.type == NodeType.STT:
                return self._exec_stt(node, context, voice_mode)
            elif node.type in (NodeType.BUTTONS, NodeType.LIST):
                return self._exec_choice(node, context)
            elif node.type == NodeType.BUSINESS_ACTION:
                return await self._exec_business_action(node, context, tenant_id)
            elif node.type == NodeType.END:
                return self._exec_end(node, context)
            else:
                logger.debug("unrecognized_node_passthrough",
                             node_id=node.id, node_type=node.type_name)
                return ExecutionResult(transition=AdvanceVia(),
                                       metadata={"unrecognized_type": node.type_name})
        except ContractViolation as e:
            logger.error("adapter_contract_violation",
                         node_id=node.id, node_type=node.type_name,
                         port=e.port, declared=list(e.declared))
            return ExecutionResult(
                effects=[system_message(self.config.contract_violation_message, node.id)],
                transition=Fail(error=str(e)),
                metadata={"contract_violation": True, "port": e.port},
            )

    # ── Helpers ───────────────────────────────────────

    def _text_or_default(self, node: Node, text: str, default: str, field: str) -> str:
        if text and text.strip():
            return text
        logger.warning("node_missing_data", node_id=node.id,
                       node_type=node.type_name, field=field)
        return default

    def _render(self, node: Node, text: str, variables: dict[str, Any]) -> str:
        rendered = interpolate(text, variables)
        unresolved = find_placeholders(rendered)
        if unresolved:
            logger.debug("unresolved_variables", node_id=node.id, variables=unresolved)
        return rendered

    # ── MESSAGE ───────────────────────────────────────

    def _exec_message(self, node: Node, ctx: ConversationContext) -> ExecutionResult:
        data: MessageData = node.data
        text = self._text_or_default(node, data.message, self.config.default_message_text, "message")
        effects = [agent_message(self._render(node, text, ctx.variables), node.id)]

        if data.wait_for_response:
            effects.append(ExternalCall(kind=CallKind.REQUEST_TEXT_INPUT))
            return ExecutionResult(effects=effects,
                                   transition=Suspend(reason=SuspendReason.TEXT_INPUT))
        return ExecutionResult(effects=effects, transition=AdvanceVia())

    # ── AI RESPONSE ───────────────────────────────────

    async def _exec_ai_response(self, node: Node, ctx: ConversationContext) -> ExecutionResult:
        data: AIResponseData = node.data
        if not data.prompt.strip():
            logger.warning("node_missing_data", node_id=node.id,
                           node_type=node.type_name, field="prompt")
            return ExecutionResult(
                effects=[agent_message(self.config.default_ai_text, node.id)],
                transition=AdvanceVia(),
            )

        prompt = self._render(node, data.prompt, ctx.variables)
        metadata: dict[str, Any] = {}

        if self._ai is None:
            text = f'[AI response] Simulated reply for: "{prompt}"'
            metadata["preview"] = True
        else:
            try:
                response = await self._ai.generate(prompt)
                text = response.text
            except Exception as e:
                if isinstance(e, (TransientExternalError, ConfigurationError)):
                    logger.warning("ai_response_failed", node_id=node.id,
                                   error=str(e), retryable=e.retryable)
                else:
                    logger.error("ai_response_error", node_id=node.id,
                                 error=str(e), error_type=type(e).__name__)
                return ExecutionResult(
                    effects=[agent_message(self.config.ai_failure_message, node.id)],
                    transition=AdvanceVia(),
                    metadata={"error": str(e)},
                )

        patch = {}
        var_name = clean_variable_name(data.response_variable_name)
        if var_name:
            patch[var_name] = text

        return ExecutionResult(
            effects=[agent_message(text, node.id)],
            transition=AdvanceVia(),
            context_patch=patch,
            metadata=metadata,
        )

    # ── INPUT ─────────────────────────────────────────

    def _exec_input(self, node: Node, ctx: ConversationContext) -> ExecutionResult:
        data: InputData = node.data
        question = self._text_or_default(node, data.question,
                                         self.config.default_input_question, "question")
        return ExecutionResult(
            effects=[
                agent_message(self._render(node, question, ctx.variables), node.id),
                ExternalCall(kind=CallKind.REQUEST_TEXT_INPUT),
            ],
            transition=Suspend(reason=SuspendReason.TEXT_INPUT),
        )

    # ── CONDITION ─────────────────────────────────────

    def _exec_condition(self, node: Node, ctx: ConversationContext) -> ExecutionResult:
        """
        Always takes the first declared option; the condition expression is
        shown but not evaluated.
        """
        data: ConditionData = node.data
        if not data.options:
            return ExecutionResult(transition=AdvanceVia(port="true"))

        first = data.options[0]
        condition = data.condition or "Unconfigured condition"
        note = f"[Condition] {condition} → {first.label or 'Option 1'}"
        return ExecutionResult(
            effects=[system_message(note, node.id)],
            transition=AdvanceVia(port=first.value or "handle-0"),
            metadata={"condition_evaluated": False},
        )

    # ── TTS ───────────────────────────────────────────

    def _exec_tts(self, node: Node, ctx: ConversationContext, voice_mode: bool) -> ExecutionResult:
        data: TTSData = node.data
        text = ""
        var_name = clean_variable_name(data.text_variable_name)
        if var_name and ctx.variables.get(var_name) not in (None, ""):
            text = format_value(ctx.variables[var_name])
        else:
            text = self._render(node, data.text, ctx.variables)
        if not text:
            text = self.config.default_tts_text

        effects = [agent_message(text, node.id, has_audio=True)]
        if voice_mode:
            effects.append(ExternalCall(kind=CallKind.SYNTHESIZE_SPEECH, payload={"text": text}))
            return ExecutionResult(effects=effects,
                                   transition=Suspend(reason=SuspendReason.SPEECH_PLAYBACK))
        return ExecutionResult(effects=effects, transition=AdvanceVia())

    # ── STT ───────────────────────────────────────────

    def _exec_stt(self, node: Node, ctx: ConversationContext, voice_mode: bool) -> ExecutionResult:
        data: STTData = node.data
        prompt = data.prompt or self.config.default_stt_prompt
        kind = CallKind.REQUEST_VOICE_INPUT if voice_mode else CallKind.REQUEST_TEXT_INPUT
        reason = SuspendReason.VOICE_INPUT if voice_mode else SuspendReason.TEXT_INPUT
        return ExecutionResult(
            effects=[agent_message(self._render(node, prompt, ctx.variables), node.id),
                     ExternalCall(kind=kind)],
            transition=Suspend(reason=reason),
        )

    # ── BUTTONS / LIST ────────────────────────────────

    def _exec_choice(self, node: Node, ctx: ConversationContext) -> ExecutionResult:
        data: ChoiceData = node.data
        text = data.message or self.config.default_choice_message
        message = agent_message(
            self._render(node, text, ctx.variables), node.id,
            options=list(data.options),
            metadata={"list_title": data.list_title, "button_text": data.button_text}
            if node.type == NodeType.LIST else {},
        )
        if data.wait_for_response:
            return ExecutionResult(
                effects=[message, ExternalCall(kind=CallKind.REQUEST_TEXT_INPUT)],
                transition=Suspend(reason=SuspendReason.CHOICE, choices=list(data.options)),
            )
        return ExecutionResult(effects=[message], transition=AdvanceVia())

    # ── BUSINESS ACTION ───────────────────────────────

    async def _exec_business_action(
        self, node: Node, ctx: ConversationContext, tenant_id: str,
    ) -> ExecutionResult:
        """
        Run preconditions, call the adapter, and route by the returned port.
        Adapter failures always route to `failure` with a user-facing message.
        """
        data: BusinessActionData = node.data
        profile = get_profile(data.action)
        variables = ctx.variables

        try:
            blocked = check_preconditions(profile, data, variables, node.id)
        except LimitExceededError as e:
            logger.warning("business_action_limit_reached", node_id=node.id,
                           action=profile.name, attempts=e.attempts, limit=e.limit)
            return self._route(node, PORT_FAILURE, data.failure_message or profile.limit_message,
                               variables, metadata={"error": "limit_exceeded"})

        if blocked:
            return self._route(node, blocked.port, blocked.message, variables,
                               metadata={"precondition": blocked.reason})

        if self._actions is None:
            error = ConfigurationError("No business action adapter configured", node.id)
            logger.warning("business_action_unavailable", node_id=node.id,
                           action=profile.name, error=str(error))
            return self._route(node, PORT_FAILURE,
                               data.failure_message or self.config.business_failure_message,
                               variables, metadata={"error": str(error)})

        try:
            raw = await self._actions.execute(tenant_id, dict(variables), data.config_dict())
            outcome = raw if isinstance(raw, ActionOutcome) else ActionOutcome.model_validate(raw)
        except ValidationError as e:
            raise ContractViolation(node.id, "<malformed>", DECLARED_PORTS) from e
        except (TransientExternalError, ConfigurationError) as e:
            logger.warning("business_action_failed", node_id=node.id, action=profile.name,
                           error=str(e), retryable=e.retryable)
            return self._route(node, PORT_FAILURE,
                               data.failure_message or self.config.business_failure_message,
                               variables, metadata={"error": str(e)})
        except Exception as e:
            logger.error("business_action_error", node_id=node.id, action=profile.name,
                         error=str(e), error_type=type(e).__name__)
            return self._route(node, PORT_FAILURE,
                               data.failure_message or self.config.business_failure_message,
                               variables, metadata={"error": str(e)})

        if outcome.port not in DECLARED_PORTS:
            raise ContractViolation(node.id, outcome.port, DECLARED_PORTS)

        outputs = outcome.outputs
        patch = dict(outputs.context_patch)
        if outcome.port == PORT_SUCCESS:
            patch.update(success_patch(profile, data, variables, node.id))
            message = outputs.message or data.success_message or self.config.business_success_message
        elif outcome.port == PORT_NEED_REASON:
            message = outputs.message or profile.need_reason_message
        else:
            message = outputs.message or data.failure_message or self.config.business_failure_message

        logger.info("business_action_completed", node_id=node.id,
                    action=profile.name, port=outcome.port)
        return self._route(node, outcome.port, message, {**variables, **patch},
                           patch=patch, metadata={"action": profile.name})

    def _route(
        self,
        node: Node,
        port: str,
        message: str,
        variables: dict[str, Any],
        patch: dict[str, Any] = None,
        metadata: dict[str, Any] = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            effects=[agent_message(self._render(node, message, variables), node.id)],
            transition=AdvanceVia(port=port),
            context_patch=patch or {},
            metadata={"port": port, **(metadata or {})},
        )

    # ── END ───────────────────────────────────────────

    def _exec_end(self, node: Node, ctx: ConversationContext) -> ExecutionResult:
        data: EndData = node.data
        text = data.message or self.config.default_end_message
        return ExecutionResult(
            effects=[agent_message(self._render(node, text, ctx.variables), node.id)],
            transition=Terminate(),
        )
