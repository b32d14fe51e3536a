"""Tests for the preview (backend-less) adapters."""
import pytest

from adapters.preview import (
    CallbackMessageSink, NullSpeechSynthesizer, PreviewAIResponder, RecordingMessageSink,
)
from flows.executor import NodeExecutor
from models.schemas import ChatMessage, ConversationContext, Node, SenderType


class TestPreviewAdapters:

    @pytest.mark.asyncio
    async def test_preview_ai_matches_executor_simulation(self, engine_config):
        node = Node.model_validate({"id": "a", "type": "ai-response", "data": {"prompt": "hi"}})
        ctx = ConversationContext()
        simulated = await NodeExecutor(config=engine_config).execute(node, ctx)
        preview = await NodeExecutor(ai_responder=PreviewAIResponder(),
                                     config=engine_config).execute(node, ctx)
        assert simulated.messages[0].content == preview.messages[0].content

    @pytest.mark.asyncio
    async def test_recording_sink(self):
        sink = RecordingMessageSink()
        await sink.on_message(ChatMessage(content="a"))
        await sink.on_message(ChatMessage(content="b", sender_id=SenderType.SYSTEM))
        assert sink.contents == ["a", "b"]
        assert [m.content for m in sink.by_sender(SenderType.SYSTEM)] == ["b"]

    @pytest.mark.asyncio
    async def test_callback_sink_sync_and_async(self):
        received = []

        async def async_cb(message):
            received.append(("async", message.content))

        await CallbackMessageSink(lambda m: received.append(("sync", m.content))).on_message(
            ChatMessage(content="x"))
        await CallbackMessageSink(async_cb).on_message(ChatMessage(content="y"))
        assert received == [("sync", "x"), ("async", "y")]

    @pytest.mark.asyncio
    async def test_synthesizer_notifies_subscribers(self):
        synthesizer = NullSpeechSynthesizer()
        calls = []

        async def on_done():
            calls.append("async")

        synthesizer.subscribe(lambda: calls.append("sync"))
        synthesizer.subscribe(on_done)
        await synthesizer.synthesize("hello")
        assert synthesizer.spoken == ["hello"]
        assert calls == ["sync", "async"]

        synthesizer.unsubscribe(on_done)
        await synthesizer.synthesize("again")
        assert calls == ["sync", "async", "sync"]
