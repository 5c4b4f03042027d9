import tempfile
from pathlib import Path

import pytest

from chat_core.domain.exceptions import (
    DuplicateMessageError,
    InvalidInputError,
    MessageTooLongError,
    ModelError,
    ModelErrorKind,
    QuotaExceededError,
    ThreadNotFoundError,
)
from chat_core.domain.models import ExchangeRequest
from chat_core.infrastructure.cache.idempotency import IdempotencyCache
from chat_core.infrastructure.storage.json_store import JsonThreadStore
from chat_core.providers.gateway import ModelGateway
from chat_core.services.exchange import ExchangeCoordinator, segment_words, token_frames
from chat_core.services.quota import DAILY_LIMIT


class FakeModel:
    name = "fake"

    def __init__(self, reply="Sure, here is an answer.", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    def generate(self, model, history, prompt):
        self.calls.append((model, list(history), prompt))
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def env():
    with tempfile.TemporaryDirectory() as d:
        store = JsonThreadStore(root=Path(d) / ".storage")
        model = FakeModel()
        cache = IdempotencyCache()
        coordinator = ExchangeCoordinator(
            store=store,
            gateway=ModelGateway(model, ["primary", "secondary"]),
            idempotency=cache,
            delay_ms=0,
        )
        yield store, model, cache, coordinator


def test_send_appends_user_then_assistant(env):
    store, model, cache, coordinator = env
    result = coordinator.handle_send("u1", ExchangeRequest(text="Hello there", client_message_id="k1"))
    roles = [m.role for m in result.messages]
    assert roles == ["user", "assistant"]
    assert result.user_message.id == "k1"
    assert result.assistant_message.content == "Sure, here is an answer."
    assert result.title == "Hello there"
    assert result.remaining == DAILY_LIMIT - 1
    assert store.get_thread(result.thread.id, "u1").title == "Hello there"
    assert cache.state_of("k1") == "handled"


def test_send_to_existing_thread_passes_history(env):
    store, model, cache, coordinator = env
    first = coordinator.handle_send("u1", ExchangeRequest(text="First question"))
    second = coordinator.handle_send("u1", ExchangeRequest(text="Follow up", thread_id=first.thread.id))
    assert second.thread.id == first.thread.id
    assert [m.role for m in second.messages] == ["user", "assistant", "user", "assistant"]
    assert second.title == "First question"
    _, history, prompt = model.calls[-1]
    assert [h.role for h in history] == ["user", "model"]
    assert prompt == "Follow up"


def test_duplicate_key_rejected(env):
    store, model, cache, coordinator = env
    result = coordinator.handle_send("u1", ExchangeRequest(text="hi", client_message_id="dup"))
    with pytest.raises(DuplicateMessageError):
        coordinator.handle_send("u1", ExchangeRequest(text="hi", thread_id=result.thread.id, client_message_id="dup"))
    thread = store.get_thread(result.thread.id, "u1")
    assert [m.role for m in thread.messages].count("assistant") == 1
    assert len(model.calls) == 1


@pytest.mark.parametrize("text", ["", "   ", "\n\t"])
def test_empty_input_rejected(env, text):
    _, model, _, coordinator = env
    with pytest.raises(InvalidInputError):
        coordinator.handle_send("u1", ExchangeRequest(text=text))
    assert model.calls == []


def test_too_long_input_rejected(env):
    _, model, _, coordinator = env
    coordinator.handle_send("u1", ExchangeRequest(text="x" * 10_000))
    with pytest.raises(MessageTooLongError):
        coordinator.handle_send("u1", ExchangeRequest(text="x" * 10_001))
    assert len(model.calls) == 1


def test_quota_decreases_and_blocks_21st_send(env):
    store, model, cache, coordinator = env
    remaining = []
    for i in range(DAILY_LIMIT):
        remaining.append(coordinator.handle_send("u1", ExchangeRequest(text=f"message {i}")).remaining)
    assert remaining == list(range(DAILY_LIMIT - 1, -1, -1))
    calls_before = len(model.calls)
    with pytest.raises(QuotaExceededError) as info:
        coordinator.handle_send("u1", ExchangeRequest(text="one more", client_message_id="late"))
    assert info.value.code == "DAILY_MESSAGE_LIMIT"
    assert len(model.calls) == calls_before
    assert cache.state_of("late") == "handled"
    assert coordinator.quota.remaining("u1") == 0
    # 其他用户不受影响
    assert coordinator.handle_send("u2", ExchangeRequest(text="hello")).remaining == DAILY_LIMIT - 1


def test_foreign_thread_not_found(env):
    store, model, cache, coordinator = env
    theirs = coordinator.handle_send("u1", ExchangeRequest(text="private"))
    with pytest.raises(ThreadNotFoundError):
        coordinator.handle_send("u2", ExchangeRequest(text="peek", thread_id=theirs.thread.id, client_message_id="k"))
    assert cache.state_of("k") == "handled"
    assert len(store.get_thread(theirs.thread.id, "u1").messages) == 2


def test_rate_limit_fallback_is_invisible(env):
    store, _, _, _ = env

    class PrimaryLimited(FakeModel):
        def generate(self, model, history, prompt):
            self.calls.append((model, list(history), prompt))
            if model == "primary":
                raise ModelError(ModelErrorKind.RATE_LIMITED, "429", model=model)
            return "secondary says hi"

    model = PrimaryLimited()
    coordinator = ExchangeCoordinator(
        store=store,
        gateway=ModelGateway(model, ["primary", "secondary"]),
        idempotency=IdempotencyCache(),
        delay_ms=0,
    )
    result = coordinator.handle_send("u1", ExchangeRequest(text="hi"))
    assert result.assistant_message.content == "secondary says hi"
    assert [c[0] for c in model.calls] == ["primary", "secondary"]


def test_transient_model_failure_keeps_user_message_and_releases_key(env):
    store, model, cache, coordinator = env
    model.error = ModelError(ModelErrorKind.RATE_LIMITED, "429")
    with pytest.raises(ModelError) as info:
        coordinator.handle_send("u1", ExchangeRequest(text="will fail", client_message_id="k1"))
    assert info.value.code == "LLM_TIMEOUT"
    assert cache.state_of("k1") == "released"
    [summary] = store.list_threads("u1")
    thread = store.get_thread(summary.id, "u1")
    assert [(m.role, m.content) for m in thread.messages] == [("user", "will fail")]
    assert coordinator.quota.remaining("u1") == DAILY_LIMIT

    # 同一个键在上游恢复后可以重试
    model.error = None
    result = coordinator.handle_send("u1", ExchangeRequest(text="will fail", thread_id=thread.id, client_message_id="k2"))
    assert [m.role for m in result.messages] == ["user", "user", "assistant"]


def test_retry_same_key_after_transient_failure(env):
    _, model, cache, coordinator = env
    model.error = ModelError(ModelErrorKind.TIMEOUT, "slow")
    with pytest.raises(ModelError):
        coordinator.handle_send("u1", ExchangeRequest(text="hello", client_message_id="again"))
    model.error = None
    result = coordinator.handle_send("u1", ExchangeRequest(text="hello", client_message_id="again"))
    assert result.assistant_message.content == model.reply


def test_same_key_retry_in_existing_thread_reuses_user_message(env):
    store, model, cache, coordinator = env
    first = coordinator.handle_send("u1", ExchangeRequest(text="start", client_message_id="k0"))
    thread_id = first.thread.id

    model.error = ModelError(ModelErrorKind.TIMEOUT, "slow")
    with pytest.raises(ModelError):
        coordinator.handle_send("u1", ExchangeRequest(text="hello", thread_id=thread_id, client_message_id="k1"))
    model.error = None
    result = coordinator.handle_send("u1", ExchangeRequest(text="hello", thread_id=thread_id, client_message_id="k1"))

    ids = [m.id for m in result.messages]
    assert len(ids) == len(set(ids))
    assert [(m.role, m.content) for m in result.messages][2:] == [("user", "hello"), ("assistant", model.reply)]
    assert result.user_message.id == "k1"
    _, history, prompt = model.calls[-1]
    assert [h.content for h in history] == ["start", model.reply]
    assert prompt == "hello"


def test_same_key_retry_without_thread_reuses_first_thread(env):
    store, model, cache, coordinator = env
    model.error = ModelError(ModelErrorKind.UNKNOWN, "upstream 500")
    with pytest.raises(ModelError):
        coordinator.handle_send("u1", ExchangeRequest(text="hello", client_message_id="k1"))
    model.error = None
    result = coordinator.handle_send("u1", ExchangeRequest(text="hello", client_message_id="k1"))

    [summary] = store.list_threads("u1")
    assert summary.id == result.thread.id
    assert [(m.id, m.role) for m in result.messages][0] == ("k1", "user")
    assert [m.role for m in result.messages] == ["user", "assistant"]
    assert cache.state_of("k1") == "handled"


def test_same_key_retry_after_thread_deleted_starts_new_thread(env):
    store, model, cache, coordinator = env
    model.error = ModelError(ModelErrorKind.TIMEOUT, "slow")
    with pytest.raises(ModelError):
        coordinator.handle_send("u1", ExchangeRequest(text="hello", client_message_id="k1"))
    store.delete_all_threads("u1")
    model.error = None
    result = coordinator.handle_send("u1", ExchangeRequest(text="hello", client_message_id="k1"))
    assert [m.role for m in result.messages] == ["user", "assistant"]
    assert len(store.list_threads("u1")) == 1


def test_fatal_model_failure_consumes_key(env):
    _, model, cache, coordinator = env
    model.error = ModelError(ModelErrorKind.SAFETY_BLOCKED, "blocked")
    with pytest.raises(ModelError) as info:
        coordinator.handle_send("u1", ExchangeRequest(text="bad", client_message_id="k1"))
    assert info.value.code == "SERVER_ERROR"
    assert cache.state_of("k1") == "handled"


def test_segment_words_round_trip():
    text = "Hello there, friend"
    assert segment_words(text, 2) == ["Hello there, ", "friend"]
    assert segment_words(text, 3) == ["Hello there, friend"]
    long_text = "  The quick\nbrown fox  jumps over\tthe lazy dog. "
    pieces = segment_words(long_text, 3)
    assert "".join(pieces) == long_text
    assert pieces[0] == "  The quick\nbrown "
    assert segment_words("", 3) == []
    assert segment_words("   ", 3) == ["   "]


def test_token_frames_end_with_single_done():
    sleeps = []
    frames = list(token_frames("one two three four five", size=3, delay_ms=15, sleep=sleeps.append))
    assert frames == [
        {"type": "token", "content": "one two three "},
        {"type": "token", "content": "four five"},
        {"type": "done"},
    ]
    assert sleeps == [0.015, 0.015]


def test_stream_send_validates_before_frames(env):
    _, model, _, coordinator = env
    with pytest.raises(InvalidInputError):
        coordinator.stream_send("u1", ExchangeRequest(text=" "))
    model.reply = "a b c d"
    result, frames = coordinator.stream_send("u1", ExchangeRequest(text="go"))
    frames = list(frames)
    assert frames[-1] == {"type": "done"}
    assert "".join(f["content"] for f in frames[:-1]) == "a b c d"
    assert result.remaining == DAILY_LIMIT - 1
