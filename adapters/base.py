"""
Collaborator contracts consumed by the flow engine.

The engine core performs no I/O of its own. Everything that talks to a
provider, a backend or a user interface is injected through one of these
interfaces, so the engine can be exercised with fakes in tests and wired
to real transports in production:

- AIResponder           — text generation for ai-response nodes
- SpeechSynthesizer     — text-to-speech; completion is signalled back
- InputCaptureHost      — asks the host UI/channel for text or voice input
- BusinessActionAdapter — side-effecting business operations
- MessageSink           — the only channel through which messages leave the engine
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Awaitable, Callable, Union

from models.schemas import ActionOutcome, AIResponse, ChatMessage

logger = structlog.get_logger()

CompletionCallback = Callable[[], Union[Awaitable[None], None]]


class AIResponder(abc.ABC):
    """Generates a reply for an ai-response node."""

    @abc.abstractmethod
    async def generate(self, prompt: str) -> AIResponse:
        """
        Raises:
            TransientExternalError: provider unreachable, rate limited, 5xx
            ConfigurationError:     provider misconfigured (bad key, bad model)
        """
        ...


class SpeechSynthesizer(abc.ABC):
    """
    Synthesizes and plays speech. Playback completion is reported to every
    subscriber; the execution driver subscribes so a tts node in voice mode
    only advances once the audio has finished.
    """

    def __init__(self):
        self._subscribers: list[CompletionCallback] = []

    def subscribe(self, callback: CompletionCallback):
        self._subscribers.append(callback)

    def unsubscribe(self, callback: CompletionCallback):
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    async def notify_complete(self):
        for callback in list(self._subscribers):
            result = callback()
            if result is not None:
                await result

    @abc.abstractmethod
    async def synthesize(self, text: str) -> None:
        ...


class InputCaptureHost(abc.ABC):
    """The host surface that collects user replies (chat box, microphone)."""

    @abc.abstractmethod
    async def request_text_input(self) -> None:
        ...

    @abc.abstractmethod
    async def request_voice_input(self) -> None:
        ...


class BusinessActionAdapter(abc.ABC):
    """Performs a business operation (e.g. rescheduling an appointment)."""

    @abc.abstractmethod
    async def execute(
        self,
        tenant_id: str,
        context: dict[str, Any],
        node_config: dict[str, Any],
    ) -> ActionOutcome:
        """
        Returns an ActionOutcome whose port is one of the node's declared
        ports ("success", "failure", "needReason").

        Raises:
            TransientExternalError: backend unreachable or failed
            ConfigurationError:     action misconfigured
        """
        ...


class MessageSink(abc.ABC):
    """Receives every message the engine emits, in order."""

    @abc.abstractmethod
    async def on_message(self, message: ChatMessage) -> None:
        ...
