import threading
import time

import pytest

from app.conversation import SYSTEM_PROMPT, ConversationService, SessionLocks
from app.errors import (
    InsufficientCreditsError,
    StoreError,
    StoreUnavailableError,
    UpstreamError,
    ValidationError,
)
from conftest import FakeLLM


def test_generation_charges_one_credit_and_stores_both_turns(backend, llm):
    service = ConversationService(backend, llm)
    result = service.generate_content("What causes a fever?", "s1")

    assert result.reply == "Drink fluids and rest."
    assert result.credits_left == 6
    assert result.post_action.ok
    turns = backend.history.get_history("s1")
    assert [(t.role, t.content) for t in turns] == [
        ("user", SYSTEM_PROMPT),
        ("user", "What causes a fever?"),
        ("model", "Drink fluids and rest."),
    ]


def test_model_sees_the_new_user_turn(service, llm):
    service.generate_content("first", "s1")
    service.generate_content("second", "s1")
    sent = llm.calls[-1]
    assert [t.content for t in sent[1:]] == ["first", "Drink fluids and rest.", "second"]


@pytest.mark.parametrize("prompt,session_id", [("", "s1"), ("hi", ""), (None, "s1"), ("hi", None)])
def test_missing_fields(service, prompt, session_id):
    with pytest.raises(ValidationError):
        service.generate_content(prompt, session_id)


def test_no_credits_means_no_call_and_no_turns(backend, llm):
    service = ConversationService(backend, llm)
    backend.ledger.increment("s1", 1, create_missing=True)
    service.generate_content("one", "s1")
    before = backend.history.get_history("s1")

    with pytest.raises(InsufficientCreditsError):
        service.generate_content("two", "s1")
    assert len(llm.calls) == 1
    assert backend.history.get_history("s1") == before
    assert backend.ledger.get_balance("s1") == 0


def test_empty_reply_is_an_upstream_error(sql_backend):
    service = ConversationService(sql_backend, FakeLLM(reply=""))
    with pytest.raises(UpstreamError):
        service.generate_content("hello", "s1")
    assert sql_backend.ledger.get_balance("s1") == 7
    assert [t.role for t in sql_backend.history.get_history("s1")] == ["user", "user"]


def test_upstream_exception_propagates(sql_backend):
    service = ConversationService(sql_backend, FakeLLM(reply=UpstreamError("boom")))
    with pytest.raises(UpstreamError):
        service.generate_content("hello", "s1")
    assert sql_backend.ledger.get_balance("s1") == 7


def test_post_action_failures_do_not_fail_the_request(sql_backend, llm, monkeypatch):
    def broken(session_id, text):
        raise StoreError("disk full")

    monkeypatch.setattr(sql_backend.history, "append_model_turn", broken)
    result = ConversationService(sql_backend, llm).generate_content("hello", "s1")

    assert result.reply == "Drink fluids and rest."
    assert result.post_action.credit_deducted is True
    assert result.post_action.reply_stored is False
    assert result.post_action.errors == ["disk full"]
    assert result.credits_left == 6


def test_history_window_keeps_system_instruction(sql_backend, llm):
    service = ConversationService(sql_backend, llm, history_turn_limit=2)
    service.generate_content("q1", "s1")
    service.generate_content("q2", "s1")
    sent = llm.calls[-1]
    assert sent[0].content == SYSTEM_PROMPT
    assert [t.content for t in sent[1:]] == ["Drink fluids and rest.", "q2"]
    assert len(sql_backend.history.get_history("s1")) == 5


def test_add_credits(service):
    service.get_credits("s1")
    assert service.add_credits("s1", 3) == 10


def test_add_credits_validation(service):
    with pytest.raises(ValidationError):
        service.add_credits("s1", 0)
    with pytest.raises(ValidationError):
        service.add_credits("", 5)


def test_coupons_need_the_database(mem_backend, llm):
    service = ConversationService(mem_backend, llm)
    with pytest.raises(StoreUnavailableError):
        service.generate_coupon(10, "Monthly")
    with pytest.raises(StoreUnavailableError):
        service.redeem_coupon("ABCDEF12", "s1", "Monthly")


def test_redeem_requires_all_fields(service):
    with pytest.raises(ValidationError):
        service.redeem_coupon("ABCDEF12", "s1", "")


class EchoLLM(FakeLLM):
    """Answers the latest user turn, slowly enough for concurrent requests to overlap."""

    def generate(self, turns):
        self.calls.append(list(turns))
        time.sleep(0.05)
        return f"answer to {turns[-1].content}"


def test_concurrent_generations_keep_turn_pairs(backend):
    service = ConversationService(backend, EchoLLM())
    barrier = threading.Barrier(2)

    def ask(prompt):
        barrier.wait()
        service.generate_content(prompt, "s1")

    threads = [threading.Thread(target=ask, args=(p,)) for p in ("qa", "qb")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    turns = backend.history.get_history("s1")[1:]
    assert [t.role for t in turns] == ["user", "model", "user", "model"]
    for question, answer in zip(turns[::2], turns[1::2]):
        assert answer.content == f"answer to {question.content}"
    assert backend.ledger.get_balance("s1") == 5
    assert len(service.locks) == 0


def test_session_locks_are_released():
    locks = SessionLocks()
    with locks.hold("s1"):
        with locks.hold("s2"):
            assert len(locks) == 2
        assert len(locks) == 1
    assert len(locks) == 0
