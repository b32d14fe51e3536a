"""
Preview adapters for running flows without a backend.

Used by the flow editor's preview and by tests: messages are recorded or
forwarded to a callback, AI replies are simulated and speech "plays"
instantly.
"""
from __future__ import annotations

import inspect
import structlog
from typing import Any, Callable

from adapters.base import AIResponder, InputCaptureHost, MessageSink, SpeechSynthesizer
from models.schemas import AIResponse, ChatMessage, SenderType

logger = structlog.get_logger()


class PreviewAIResponder(AIResponder):
    async def generate(self, prompt: str) -> AIResponse:
        return AIResponse(text=f'[AI response] Simulated reply for: "{prompt}"')


class RecordingMessageSink(MessageSink):
    """Keeps every emitted message in order."""

    def __init__(self):
        self.messages: list[ChatMessage] = []

    async def on_message(self, message: ChatMessage) -> None:
        self.messages.append(message)

    @property
    def contents(self) -> list[str]:
        return [m.content for m in self.messages]

    def by_sender(self, sender: SenderType) -> list[ChatMessage]:
        return [m for m in self.messages if m.sender_id == sender]

    def clear(self):
        self.messages.clear()


class CallbackMessageSink(MessageSink):
    """Forwards messages to a plain or async callable."""

    def __init__(self, callback: Callable[[ChatMessage], Any]):
        self.callback = callback

    async def on_message(self, message: ChatMessage) -> None:
        result = self.callback(message)
        if inspect.isawaitable(result):
            await result


class NullCaptureHost(InputCaptureHost):
    """Counts input requests; the reply arrives through the driver's submit methods."""

    def __init__(self):
        self.text_requests = 0
        self.voice_requests = 0

    async def request_text_input(self) -> None:
        self.text_requests += 1

    async def request_voice_input(self) -> None:
        self.voice_requests += 1


class NullSpeechSynthesizer(SpeechSynthesizer):
    """Records the texts and reports playback complete immediately."""

    def __init__(self):
        super().__init__()
        self.spoken: list[str] = []

    async def synthesize(self, text: str) -> None:
        self.spoken.append(text)
        logger.debug("preview_speech_synthesized", chars=len(text))
        await self.notify_complete()
