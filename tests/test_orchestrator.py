"""Turn orchestration: setup ordering, streaming, finalization and failures."""

import asyncio
import json

import pytest

from formfind.config import ModelRegistry, Settings
from formfind.content_parts import parts_text
from formfind.service.auth import AuthContext
from formfind.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConfigurationError,
    ConflictError,
    TurnSetupError,
)
from formfind.service.gateway import ModelGateway
from formfind.service.model_backend import MockBackend
from formfind.service.orchestrator import (
    TurnOrchestrator,
    TurnRequest,
    TurnState,
    build_history,
    most_recent_user_message,
)
from formfind.service.ownership import OwnershipGuard
from formfind.service.titles import TitleGenerator, truncate_title
from formfind.service.turn_gate import TurnGate
from formfind.storage.memory import MemoryStore
from formfind.storage.models import LegacyMessage


class Harness:
    def __init__(self, tmp_path, scripts=None, *, delay=0.0, **settings):
        self.store = MemoryStore(fs_root=str(tmp_path))
        self.backend = MockBackend(scripts, delay=delay)
        self.gateway = ModelGateway(ModelRegistry.for_tests(), {"mock": self.backend})
        self.gate = TurnGate(None, wait_seconds=0.1, poll_interval=0.01)
        self.settings = Settings(
            stream_smoothing_delay_ms=0, directive_text="DIRECTIVE", **settings
        )
        self.orchestrator = TurnOrchestrator(
            self.store,
            self.gateway,
            OwnershipGuard(self.store),
            self.gate,
            TitleGenerator(self.gateway),
            self.settings,
        )
        owner = self.store.create_user("owner@example.com")
        other = self.store.create_user("other@example.com")
        self.owner = AuthContext(user_id=owner.id)
        self.other = AuthContext(user_id=other.id)

    async def run(self, identity, request):
        turn = await self.orchestrator.begin(identity, request)
        return turn, await collect_lines(self.orchestrator.stream(turn))


async def collect_lines(stream):
    """Wire lines; a finish segment arrives as two lines in one chunk."""
    chunks = [chunk async for chunk in stream]
    return "".join(chunks).splitlines(keepends=True)


def _request(chat_id="c1", text="Design a walnut chair", *, msg_id="u1", selector="chat-model", history=()):
    messages = list(history) + [
        {"id": msg_id, "role": "user", "parts": [{"type": "text", "text": text}]}
    ]
    return TurnRequest(chat_id=chat_id, messages=messages, selected_chat_model=selector)


def _streamed_text(lines):
    return "".join(json.loads(line[2:]) for line in lines if line.startswith("0:"))


class TestHelpers:
    def test_most_recent_user_message(self):
        messages = [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "reply"},
            {"role": "user", "content": "second"},
            {"role": "assistant", "content": "tail"},
        ]
        assert most_recent_user_message(messages)["content"] == "second"
        assert most_recent_user_message([{"role": "assistant"}]) is None

    def test_directive_only_on_short_histories_and_never_in_place(self):
        messages = [{"id": "u1", "role": "user", "content": "make a lamp"}]
        history = build_history(messages, "RULES")
        assert parts_text(history[0]["parts"]) == "RULES\n\nUser says: make a lamp"
        assert messages[0]["content"] == "make a lamp"

        long = [
            {"role": "user", "content": "a"},
            {"role": "assistant", "content": "b"},
            {"role": "user", "content": "c"},
        ]
        history = build_history(long, "RULES")
        assert "RULES" not in "".join(parts_text(m["parts"]) for m in history)

    def test_attachments_from_experimental_field(self):
        messages = [
            {
                "role": "user",
                "content": "look",
                "experimental_attachments": [{"url": "https://x/a.png", "contentType": "image/png"}],
            }
        ]
        history = build_history(messages, "D")
        assert history[0]["attachments"] == [{"url": "https://x/a.png", "contentType": "image/png"}]


class TestNewChatTurn:
    async def test_creates_chat_and_persists_both_messages(self, tmp_path):
        h = Harness(tmp_path)
        turn, lines = await h.run(h.owner, _request())

        chat = h.store.get_chat("c1")
        assert chat.user_id == h.owner.user_id
        assert chat.title == "Furniture design request"

        step_start = json.loads(lines[0][2:])
        assert lines[0].startswith("f:")
        assert lines[-1].startswith("d:")

        stored = h.store.get_messages_by_chat_id("c1")
        assert [m.role for m in stored] == ["user", "assistant"]
        assert stored[0].id == "u1"
        assert parts_text(stored[0].parts) == "Design a walnut chair"
        assert stored[1].id == step_start["messageId"] == turn.assistant_message_id
        assert parts_text(stored[1].parts) == _streamed_text(lines)
        assert turn.state is TurnState.PERSISTED
        assert not h.gate.is_held("c1")

    async def test_directive_reaches_gateway_but_is_not_persisted(self, tmp_path):
        h = Harness(tmp_path)
        await h.run(h.owner, _request())
        chat_calls = [msgs for model, msgs in h.backend.calls if model == "chat"]
        assert parts_text(chat_calls[0][-1]["parts"]).startswith("DIRECTIVE\n\nUser says: ")
        stored_user = h.store.get_messages_by_chat_id("c1")[0]
        assert "DIRECTIVE" not in parts_text(stored_user.parts)

    async def test_user_message_durable_before_generation(self, tmp_path):
        h = Harness(tmp_path)
        seen = []
        original = h.backend.stream

        def spying_stream(model_id, messages):
            if model_id == "chat":
                seen.append([m.id for m in h.store.get_messages_by_chat_id("c1")])
            return original(model_id, messages)

        h.backend.stream = spying_stream
        await h.run(h.owner, _request())
        assert seen == [["u1"]]

    async def test_title_falls_back_to_truncation(self, tmp_path):
        h = Harness(tmp_path, {"title": [RuntimeError("title model down")]})
        text = "Please design a mid-century modern sideboard with tapered walnut legs"
        await h.run(h.owner, _request(text=text))
        title = h.store.get_chat("c1").title
        assert title.endswith("...")
        assert len(title) <= 53


class TestSetupFailures:
    async def test_foreign_chat_rejected_before_any_write(self, tmp_path):
        h = Harness(tmp_path)
        await h.run(h.owner, _request())
        before = len(h.store.get_messages_by_chat_id("c1"))
        with pytest.raises(AuthenticationError):
            await h.orchestrator.begin(h.other, _request(msg_id="intruder"))
        assert len(h.store.get_messages_by_chat_id("c1")) == before
        assert not h.gate.is_held("c1")

    async def test_no_user_message(self, tmp_path):
        h = Harness(tmp_path)
        request = TurnRequest(
            chat_id="c1",
            messages=[{"role": "assistant", "content": "hi"}],
            selected_chat_model="chat-model",
        )
        with pytest.raises(BadRequestError) as excinfo:
            await h.orchestrator.begin(h.owner, request)
        assert excinfo.value.message == "No user message found"

    async def test_unknown_selector_fails_before_writes(self, tmp_path):
        h = Harness(tmp_path)
        with pytest.raises(ConfigurationError):
            await h.orchestrator.begin(h.owner, _request(selector="gpt-nonexistent"))
        assert h.store.get_chat("c1") is None

    async def test_anonymous_is_rejected(self, tmp_path):
        h = Harness(tmp_path)
        with pytest.raises(AuthenticationError):
            await h.orchestrator.begin(None, _request())

    async def test_user_message_write_failure_is_generic_404(self, tmp_path):
        h = Harness(tmp_path)

        def failing_save(messages):
            raise RuntimeError("disk full")

        h.store.save_messages = failing_save
        with pytest.raises(TurnSetupError) as excinfo:
            await h.orchestrator.begin(h.owner, _request())
        assert excinfo.value.status_code == 404
        assert excinfo.value.message == "An error occurred while processing your request!"
        assert [model for model, _ in h.backend.calls] == ["title"]
        assert not h.gate.is_held("c1")

    async def test_concurrent_turn_on_same_chat_conflicts(self, tmp_path):
        h = Harness(tmp_path)
        first = await h.orchestrator.begin(h.owner, _request())
        with pytest.raises(ConflictError):
            await h.orchestrator.begin(h.owner, _request(msg_id="u2"))
        await h.orchestrator.abandon(first)
        assert not h.gate.is_held("c1")


class TestGenerationOutcomes:
    async def test_generation_error_becomes_terminal_error_line(self, tmp_path):
        h = Harness(tmp_path, {"chat": [{"type": "text", "text": "partial "}, RuntimeError("model exploded")]})
        turn, lines = await h.run(h.owner, _request())
        assert lines[-1] == '3:"Error: model exploded"\n'
        assert [m.role for m in h.store.get_messages_by_chat_id("c1")] == ["user"]
        assert turn.state is TurnState.FAILED

    async def test_missing_assistant_entry_skips_persistence(self, tmp_path):
        h = Harness(
            tmp_path,
            {
                "chat": [
                    {"type": "text", "text": "tool output only"},
                    {"type": "finish", "messages": [{"id": "t1", "role": "tool", "content": "x"}]},
                ]
            },
        )
        turn, lines = await h.run(h.owner, _request())
        assert _streamed_text(lines) == "tool output only"
        assert lines[-1].startswith("d:")
        assert [m.role for m in h.store.get_messages_by_chat_id("c1")] == ["user"]
        assert turn.state is TurnState.FAILED

    async def test_trailing_assistant_id_is_used(self, tmp_path):
        h = Harness(
            tmp_path,
            {
                "chat": [
                    {"type": "text", "text": "answer"},
                    {
                        "type": "finish",
                        "messages": [
                            {"id": "a-first", "role": "assistant", "content": "draft"},
                            {"id": "a-final", "role": "assistant", "content": "answer"},
                        ],
                    },
                ]
            },
        )
        turn, _ = await h.run(h.owner, _request())
        assert turn.assistant_message_id == "a-final"
        assert h.store.get_messages_by_chat_id("c1")[-1].id == "a-final"

    async def test_assistant_write_failure_does_not_break_stream(self, tmp_path):
        h = Harness(tmp_path)
        turn = await h.orchestrator.begin(h.owner, _request())

        def failing_save(messages):
            raise RuntimeError("db gone")

        h.store.save_messages = failing_save
        lines = await collect_lines(h.orchestrator.stream(turn))
        assert lines[-1].startswith("d:")
        assert turn.state is TurnState.FAILED
        assert not h.gate.is_held("c1")

    async def test_timeout_emits_error_and_persists_nothing(self, tmp_path):
        h = Harness(tmp_path, turn_timeout_seconds=0.05)
        turn = await h.orchestrator.begin(h.owner, _request())
        h.backend.delay = 0.2
        lines = await collect_lines(h.orchestrator.stream(turn))
        assert lines[-1] == '3:"Error: turn timed out after 0.05s"\n'
        assert [m.role for m in h.store.get_messages_by_chat_id("c1")] == ["user"]

    async def test_error_after_unterminated_word_keeps_streamed_text(self, tmp_path):
        h = Harness(tmp_path, {"chat": [{"type": "text", "text": "Here is a chair"}, RuntimeError("boom")]})
        _, lines = await h.run(h.owner, _request())
        assert _streamed_text(lines) == "Here is a chair"
        assert lines[-1] == '3:"Error: boom"\n'

    async def test_slow_title_model_counts_against_turn_timeout(self, tmp_path):
        h = Harness(tmp_path, delay=0.3, turn_timeout_seconds=0.05)
        text = "Design a walnut chair"
        loop = asyncio.get_running_loop()
        started = loop.time()
        turn = await h.orchestrator.begin(h.owner, _request(text=text))
        assert loop.time() - started < 0.25
        assert h.store.get_chat("c1").title == truncate_title(text)
        lines = await collect_lines(h.orchestrator.stream(turn))
        assert lines[-1] == '3:"Error: turn timed out after 0.05s"\n'
        assert [m.role for m in h.store.get_messages_by_chat_id("c1")] == ["user"]
        assert not h.gate.is_held("c1")

    async def test_client_disconnect_persists_nothing(self, tmp_path):
        h = Harness(tmp_path)
        turn = await h.orchestrator.begin(h.owner, _request())
        stream = h.orchestrator.stream(turn)
        first = await stream.__anext__()
        assert first.startswith("f:")
        await stream.aclose()
        assert [m.role for m in h.store.get_messages_by_chat_id("c1")] == ["user"]
        assert turn.state is TurnState.FAILED
        assert not h.gate.is_held("c1")

    async def test_existing_chat_with_legacy_history(self, tmp_path):
        h = Harness(tmp_path)
        h.store.save_chat("c1", h.owner.user_id, "Existing")
        h.store.legacy_messages["c1"] = [
            LegacyMessage(id="l1", chat_id="c1", role="user", content="old question"),
            LegacyMessage(id="l2", chat_id="c1", role="assistant", content="old answer"),
        ]
        history = [
            {"id": "l1", "role": "user", "content": "old question"},
            {"id": "l2", "role": "assistant", "content": "old answer"},
        ]
        turn, _ = await h.run(h.owner, _request(history=history, msg_id="u3"))
        assert turn.created_chat is False
        assert h.store.get_chat("c1").title == "Existing"
        stored = h.store.get_messages_by_chat_id("c1")
        assert [m.id for m in stored][:3] == ["l1", "l2", "u3"]
        chat_calls = [msgs for model, msgs in h.backend.calls if model == "chat"]
        assert "DIRECTIVE" not in parts_text(chat_calls[0][-1]["parts"])


async def test_second_turn_waits_for_first(tmp_path):
    h = Harness(tmp_path)
    h.gate.wait_seconds = 2.0
    first = await h.orchestrator.begin(h.owner, _request())

    async def finish_first():
        await asyncio.sleep(0.05)
        [line async for line in h.orchestrator.stream(first)]

    finisher = asyncio.create_task(finish_first())
    second = await h.orchestrator.begin(h.owner, _request(msg_id="u2"))
    await finisher
    [line async for line in h.orchestrator.stream(second)]
    roles = [m.role for m in h.store.get_messages_by_chat_id("c1")]
    assert roles == ["user", "assistant", "user", "assistant"]
