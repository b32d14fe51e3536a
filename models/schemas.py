"""
Core data models for the flow engine.
These are the universal types shared across all modules: the authored
flow graph, typed node payloads, the per-session conversation context,
chat messages and the results a node execution produces.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, model_validator


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class NodeType(str, Enum):
    START = "start"
    MESSAGE = "message"
    AI_RESPONSE = "ai-response"
    INPUT = "input"
    CONDITION = "condition"
    TTS = "tts"
    STT = "stt"
    END = "end"
    BUSINESS_ACTION = "business-action"
    BUTTONS = "buttons"
    LIST = "list"


class SenderType(str, Enum):
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class SuspendReason(str, Enum):
    TEXT_INPUT = "text_input"
    VOICE_INPUT = "voice_input"
    SPEECH_PLAYBACK = "speech_playback"
    CHOICE = "choice"


class SessionStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUSPENDED = "suspended"
    ENDED = "ended"
    FAILED = "failed"


class CallKind(str, Enum):
    REQUEST_TEXT_INPUT = "request_text_input"
    REQUEST_VOICE_INPUT = "request_voice_input"
    SYNTHESIZE_SPEECH = "synthesize_speech"


# ──────────────────────────────────────────────────────────────
#  Node payloads — one typed model per node type
# ──────────────────────────────────────────────────────────────

class NodeData(BaseModel):
    """Fields every node payload may carry."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    label: str = ""
    delay: Optional[int] = None                    # pacing delay in ms (None = engine default)


class StartData(NodeData):
    pass


class MessageData(NodeData):
    message: str = ""
    wait_for_response: bool = Field(
        False, validation_alias=AliasChoices("wait_for_response", "waitForResponse"),
    )
    variable_name: str = Field(
        "", validation_alias=AliasChoices("variable_name", "variableName"),
    )


class AIResponseData(NodeData):
    prompt: str = ""
    response_variable_name: str = Field(
        "", validation_alias=AliasChoices("response_variable_name", "responseVariableName"),
    )


class InputData(NodeData):
    question: str = Field("", validation_alias=AliasChoices("question", "prompt"))
    variable_name: str = Field(
        "", validation_alias=AliasChoices("variable_name", "variableName"),
    )


class ConditionOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str = ""
    value: str = ""


class ConditionData(NodeData):
    condition: str = ""
    options: list[ConditionOption] = []


class TTSData(NodeData):
    text: str = ""
    text_variable_name: str = Field(
        "", validation_alias=AliasChoices("text_variable_name", "textVariableName"),
    )


class STTData(NodeData):
    prompt: str = ""
    variable_name: str = Field(
        "", validation_alias=AliasChoices("variable_name", "variableName"),
    )


class EndData(NodeData):
    message: str = ""


class ChoiceOption(BaseModel):
    """One button or list item offered to the user."""
    model_config = ConfigDict(frozen=True)

    text: str
    value: str = ""
    description: str = ""


class ChoiceData(NodeData):
    """Payload shared by buttons and list nodes."""
    message: str = ""
    options: list[ChoiceOption] = Field(
        [], validation_alias=AliasChoices("options", "buttons", "listItems", "list_items"),
    )
    wait_for_response: bool = Field(
        False, validation_alias=AliasChoices("wait_for_response", "waitForResponse"),
    )
    variable_name: str = Field(
        "", validation_alias=AliasChoices("variable_name", "variableName"),
    )
    list_title: str = Field("", validation_alias=AliasChoices("list_title", "listTitle"))
    button_text: str = Field("", validation_alias=AliasChoices("button_text", "buttonText"))


class BusinessActionData(NodeData):
    """
    Configuration of a side-effecting business node (reschedule, cancel, book...).
    Unknown keys are kept and forwarded to the adapter as node configuration.
    """
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")

    action: str = ""                               # action kind, e.g. "reschedule-appointment"
    max_attempts: Optional[int] = Field(
        None,
        validation_alias=AliasChoices(
            "max_attempts", "maxAttempts",
            "max_reschedule_attempts", "max_cancel_attempts", "max_booking_attempts",
        ),
    )
    require_reason: bool = Field(
        False, validation_alias=AliasChoices("require_reason", "requireReason"),
    )
    required_fields: Optional[list[str]] = Field(
        None, validation_alias=AliasChoices("required_fields", "requiredFields"),
    )
    success_message: str = ""
    failure_message: str = ""

    def config_dict(self) -> dict[str, Any]:
        """Full node configuration (declared + extra keys) as handed to adapters."""
        return self.model_dump()


class GenericData(NodeData):
    """Payload of a node type the engine does not recognise."""
    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="allow")


NodePayload = Union[
    StartData, MessageData, AIResponseData, InputData, ConditionData,
    TTSData, STTData, EndData, ChoiceData, BusinessActionData, GenericData,
]

PAYLOAD_TYPES: dict[NodeType, type[NodeData]] = {
    NodeType.START: StartData,
    NodeType.MESSAGE: MessageData,
    NodeType.AI_RESPONSE: AIResponseData,
    NodeType.INPUT: InputData,
    NodeType.CONDITION: ConditionData,
    NodeType.TTS: TTSData,
    NodeType.STT: STTData,
    NodeType.END: EndData,
    NodeType.BUTTONS: ChoiceData,
    NodeType.LIST: ChoiceData,
    NodeType.BUSINESS_ACTION: BusinessActionData,
}


# ──────────────────────────────────────────────────────────────
#  Flow Graph — nodes and edges authored for one flow
# ──────────────────────────────────────────────────────────────

class Node(BaseModel):
    """
    A typed unit of conversation behavior.

    `type` is a NodeType for recognised nodes; any other string is kept
    verbatim and executed as a pass-through.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    type: Union[NodeType, str]
    data: NodePayload = Field(default_factory=GenericData)

    @model_validator(mode="before")
    @classmethod
    def _coerce_payload(cls, values: Any) -> Any:
        if not isinstance(values, dict):
            return values
        raw_type = values.get("type")
        try:
            node_type = NodeType(raw_type)
        except ValueError:
            node_type = None
        data = values.get("data")
        payload_cls = PAYLOAD_TYPES.get(node_type, GenericData) if node_type else GenericData
        if data is None:
            data = {}
        if isinstance(data, dict):
            data = payload_cls.model_validate(data)
        return {**values, "type": node_type or raw_type, "data": data}

    @property
    def is_recognized(self) -> bool:
        return isinstance(self.type, NodeType)

    @property
    def type_name(self) -> str:
        return self.type.value if isinstance(self.type, NodeType) else str(self.type)


class Edge(BaseModel):
    """Directed connection; source_handle None means the default/any port."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = ""
    source: str
    target: str
    source_handle: Optional[str] = Field(
        None, validation_alias=AliasChoices("source_handle", "sourceHandle"),
    )


class FlowGraph(BaseModel):
    """Immutable node/edge set. Node ids are unique and every edge endpoint exists."""
    model_config = ConfigDict(frozen=True)

    nodes: list[Node] = []
    edges: list[Edge] = []

    @model_validator(mode="after")
    def _check_integrity(self) -> "FlowGraph":
        errors = validate_graph(self)
        if errors:
            raise ValueError("; ".join(errors))
        return self

    @property
    def node_index(self) -> dict[str, Node]:
        return {n.id: n for n in self.nodes}

    def node(self, node_id: str) -> Optional[Node]:
        for n in self.nodes:
            if n.id == node_id:
                return n
        return None

    def start_node(self) -> Optional[Node]:
        for n in self.nodes:
            if n.type == NodeType.START:
                return n
        return None


def validate_graph(graph: FlowGraph) -> list[str]:
    """Return a list of integrity errors (empty when the graph is valid)."""
    errors = []
    seen: set[str] = set()
    for n in graph.nodes:
        if n.id in seen:
            errors.append(f"duplicate node id '{n.id}'")
        seen.add(n.id)
    for i, e in enumerate(graph.edges):
        if e.source not in seen:
            errors.append(f"edge[{i}] source '{e.source}' not in nodes")
        if e.target not in seen:
            errors.append(f"edge[{i}] target '{e.target}' not in nodes")
    return errors


# ──────────────────────────────────────────────────────────────
#  Conversation Context — per-session state, replaced on every change
# ──────────────────────────────────────────────────────────────

class ConversationContext(BaseModel):
    """Immutable snapshot of a session. Produce new values via context.reducer.reduce."""
    model_config = ConfigDict(frozen=True)

    variables: dict[str, Any] = {}
    current_node_id: Optional[str] = None
    processed_nodes: frozenset[str] = frozenset()
    status: SessionStatus = SessionStatus.IDLE
    awaiting: Optional[SuspendReason] = None
    active_choices: tuple[ChoiceOption, ...] = ()
    turn: int = 0                                  # cancellation generation
    error: str = ""

    @property
    def is_suspended(self) -> bool:
        return self.status == SessionStatus.SUSPENDED

    @property
    def is_finished(self) -> bool:
        return self.status in (SessionStatus.ENDED, SessionStatus.FAILED)


# ──────────────────────────────────────────────────────────────
#  Effects — what a node execution asks the outside world to do
# ──────────────────────────────────────────────────────────────

class ChatMessage(BaseModel):
    content: str
    sender_id: SenderType = SenderType.AGENT
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    has_audio: bool = False
    options: list[ChoiceOption] = []
    session_id: str = ""
    node_id: str = ""
    metadata: dict[str, Any] = {}


class ExternalCall(BaseModel):
    """Descriptor of a side-effecting call the driver performs on the node's behalf."""
    kind: CallKind
    payload: dict[str, Any] = {}


Effect = Union[ChatMessage, ExternalCall]


# ──────────────────────────────────────────────────────────────
#  Transitions
# ──────────────────────────────────────────────────────────────

class Advance(BaseModel):
    """Move the cursor to an explicit node."""
    next_node_id: str


class AdvanceVia(BaseModel):
    """Move along the first edge matching a port (None = default/any port)."""
    port: Optional[str] = None


class Suspend(BaseModel):
    """Stop and wait for an external event."""
    reason: SuspendReason
    choices: list[ChoiceOption] = []


class Terminate(BaseModel):
    """Session reached an explicit end."""
    pass


class Fail(BaseModel):
    """Fatal engine error for this session."""
    error: str
    message: str = ""


Transition = Union[Advance, AdvanceVia, Suspend, Terminate, Fail]


class ExecutionResult(BaseModel):
    """Outcome of executing one node."""
    effects: list[Effect] = []
    transition: Transition = Field(default_factory=AdvanceVia)
    context_patch: dict[str, Any] = {}
    metadata: dict[str, Any] = {}

    @property
    def messages(self) -> list[ChatMessage]:
        return [e for e in self.effects if isinstance(e, ChatMessage)]

    @property
    def calls(self) -> list[ExternalCall]:
        return [e for e in self.effects if isinstance(e, ExternalCall)]


# ──────────────────────────────────────────────────────────────
#  Adapter payloads
# ──────────────────────────────────────────────────────────────

class AIResponse(BaseModel):
    text: str


class ActionOutputs(BaseModel):
    message: str = ""
    context_patch: dict[str, Any] = Field(
        {}, validation_alias=AliasChoices("context_patch", "contextPatch", "context"),
    )


class ActionOutcome(BaseModel):
    """What a business-action adapter returns. `port` is checked against the node's declared ports."""
    port: str = Field(validation_alias=AliasChoices("port", "nextNodeId", "next_node_id"))
    outputs: ActionOutputs = Field(default_factory=ActionOutputs)
