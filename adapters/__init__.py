"""Collaborator interfaces and their HTTP / preview implementations."""
from adapters.base import (
    AIResponder,
    SpeechSynthesizer,
    InputCaptureHost,
    BusinessActionAdapter,
    MessageSink,
)
from adapters.http import HttpBackendClient, HttpAIResponder, HttpBusinessActionAdapter
from adapters.preview import (
    PreviewAIResponder,
    RecordingMessageSink,
    CallbackMessageSink,
    NullCaptureHost,
    NullSpeechSynthesizer,
)

__all__ = [
    "AIResponder", "SpeechSynthesizer", "InputCaptureHost",
    "BusinessActionAdapter", "MessageSink",
    "HttpBackendClient", "HttpAIResponder", "HttpBusinessActionAdapter",
    "PreviewAIResponder", "RecordingMessageSink", "CallbackMessageSink",
    "NullCaptureHost", "NullSpeechSynthesizer",
]
