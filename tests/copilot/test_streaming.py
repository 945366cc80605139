"""Tests for ResponseStreamer delivery paths."""

from __future__ import annotations

import pytest

from chat_copilot.models import (
    BotResponsePrompt,
    ChatMessageType,
    Citation,
    PromptAssembly,
    PromptBlock,
    PromptStage,
    TurnContext,
    empty_token_usage,
)
from chat_copilot.streaming import ResponseStreamer


class FailingBroadcaster:
    async def broadcast(self, group_id, event, *payload):
        raise ConnectionError("socket closed")


@pytest.fixture
def streamer(completion, messages, broadcaster, token_counter, prompts):
    return ResponseStreamer(completion, messages, broadcaster, token_counter, prompts)


@pytest.fixture
def turn():
    return TurnContext(chat_id="chat-1", user_id="u-1", user_name="Alice", message="hi")


@pytest.fixture
def assembly():
    assembly = PromptAssembly()
    assembly.add(PromptBlock(role="system", content="You are Copilot.", stage=PromptStage.PERSONA, tokens=7))
    assembly.add(PromptBlock(role="user", content="hi", stage=PromptStage.HISTORY, tokens=5))
    return assembly


class TestStream:
    async def test_emits_create_then_updates(self, streamer, broadcaster, turn, assembly):
        await streamer.stream(turn, assembly, BotResponsePrompt())

        assert broadcaster.names() == [
            "ReceiveMessage",
            "ReceiveMessageUpdate",
            "ReceiveMessageUpdate",
            "ReceiveMessageUpdate",
            "ReceiveMessageUpdate",
        ]
        contents = [payload[0]["content"] for _, _, payload in broadcaster.events]
        assert contents == ["", "Cats ", "Cats like ", "Cats like fish.", "Cats like fish."]

    async def test_persists_final_message(self, streamer, messages, turn, assembly):
        message = await streamer.stream(turn, assembly, BotResponsePrompt(user_intent="food"))

        stored = await messages.find_by_id(message.id)
        assert stored.content == "Cats like fish."
        assert stored.author_id == "Bot"
        assert '"userIntent":"food"' in stored.prompt

    async def test_sends_assembly_to_model(self, streamer, completion, turn, assembly):
        await streamer.stream(turn, assembly, BotResponsePrompt())

        assert completion.stream_calls == [assembly.to_messages()]

    async def test_records_usage(self, streamer, turn, assembly, token_counter):
        message = await streamer.stream(turn, assembly, BotResponsePrompt())

        assert turn.token_usage["metaPromptTemplate"] == 12
        assert turn.token_usage["responseCompletion"] == token_counter.count("Cats like fish.")
        assert message.token_usage == turn.token_usage

    async def test_empty_chunks_skipped(self, completion, streamer, broadcaster, turn, assembly):
        completion.chunks = ["", "Hello", ""]

        message = await streamer.stream(turn, assembly, BotResponsePrompt())

        assert message.content == "Hello"
        assert broadcaster.names().count("ReceiveMessageUpdate") == 2

    async def test_citations_attached(self, streamer, turn, assembly):
        citation = Citation(link="doc-1", source_name="cats.pdf", snippet="Cats eat fish.")

        message = await streamer.stream(turn, assembly, BotResponsePrompt(), [citation])

        assert message.citations == [citation]


class TestRespondDirectly:
    async def test_same_event_shape_as_stream(self, streamer, broadcaster, turn):
        await streamer.respond_directly(turn, "I am sorry the plan did not meet your goals.")

        assert broadcaster.names() == ["ReceiveMessage", "ReceiveMessageUpdate"]
        _, _, (created,) = broadcaster.events[0]
        _, _, (final,) = broadcaster.events[-1]
        assert created["content"] == final["content"]
        assert created["id"] == final["id"]

    async def test_converges_with_stream(self, completion, messages, broadcaster, token_counter, prompts, assembly):
        completion.chunks = ["Cats like fish."]
        streamed = ResponseStreamer(completion, messages, broadcaster, token_counter, prompts)
        stream_turn = TurnContext(chat_id="chat-1", user_id="u-1")
        await streamed.stream(stream_turn, assembly, BotResponsePrompt())
        stream_events = [(event, payload[0]["content"]) for _, event, payload in broadcaster.events]

        broadcaster.events.clear()
        direct_turn = TurnContext(chat_id="chat-1", user_id="u-1")
        await streamed.respond_directly(direct_turn, "Cats like fish.")
        direct_events = [(event, payload[0]["content"]) for _, event, payload in broadcaster.events]

        assert stream_events[0][0] == direct_events[0][0] == "ReceiveMessage"
        assert stream_events[-1] == direct_events[-1] == ("ReceiveMessageUpdate", "Cats like fish.")

    async def test_explicit_usage_overrides_turn(self, streamer, turn):
        turn.record_usage("audienceExtraction", 40)

        message = await streamer.respond_directly(turn, "no model call", token_usage=empty_token_usage())

        assert set(message.token_usage.values()) == {0}

    async def test_plan_kind_persisted(self, streamer, messages, turn):
        message = await streamer.respond_directly(turn, "{}", kind=ChatMessageType.PLAN)

        stored = await messages.find_by_id(message.id)
        assert stored.kind == ChatMessageType.PLAN


class TestBroadcastFailures:
    async def test_failures_are_logged_not_raised(self, completion, messages, token_counter, prompts, turn, assembly, log_messages):
        streamer = ResponseStreamer(completion, messages, FailingBroadcaster(), token_counter, prompts)

        message = await streamer.stream(turn, assembly, BotResponsePrompt())

        assert message.content == "Cats like fish."
        assert (await messages.find_by_id(message.id)).content == "Cats like fish."
        warnings = log_messages("WARNING")
        assert warnings
        assert all("Failed to broadcast" in w for w in warnings)


class TestTokenUsageUpdate:
    async def test_republishes_message(self, streamer, broadcaster, messages, turn):
        message = await streamer.respond_directly(turn, "hello")
        broadcaster.events.clear()

        await streamer.update_token_usage(message, {"responseCompletion": 3})

        stored = await messages.find_by_id(message.id)
        assert stored.token_usage == {"responseCompletion": 3}
        assert broadcaster.names() == ["ReceiveMessageUpdate"]
        assert broadcaster.events[0][2][0]["tokenUsage"] == {"responseCompletion": 3}
