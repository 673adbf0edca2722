import logging
from types import SimpleNamespace

import pytest

from app.credit_ledger import MAX_CREDITS, account_identity, positive_amount
from app.errors import NotFoundError, StoreError, ValidationError
from db.database import Base


def test_new_session_gets_default_balance(backend):
    assert backend.ledger.get_balance("s1") == 7
    account = backend.ledger.get_account("s1")
    assert account.credits == 7
    assert account.is_user_account is False
    assert account.user_id is None


def test_balance_is_created_once(backend):
    backend.ledger.get_balance("s1")
    backend.ledger.decrement("s1")
    assert backend.ledger.get_balance("s1") == 6


def test_user_prefix_marks_account(backend):
    backend.ledger.get_balance("user-42")
    account = backend.ledger.get_account("user-42")
    assert account.is_user_account is True
    assert account.user_id == "42"


def test_decrement_stops_at_zero(backend):
    backend.ledger.increment("s1", 1, create_missing=True)
    assert backend.ledger.decrement("s1") is True
    assert backend.ledger.decrement("s1") is False
    assert backend.ledger.get_balance("s1") == 0
    assert backend.ledger.has_sufficient_balance("s1") is False


def test_decrement_missing_account_is_a_no_op(backend):
    assert backend.ledger.decrement("ghost") is False
    assert backend.ledger.get_account("ghost") is None


def test_increment_requires_existing_account(backend):
    with pytest.raises(NotFoundError):
        backend.ledger.increment("ghost", 5)


def test_increment_can_create_account(backend):
    assert backend.ledger.increment("user-9", 10, create_missing=True) == 10
    assert backend.ledger.increment("user-9", 5) == 15
    assert backend.ledger.get_account("user-9").user_id == "9"


def test_mutations_touch_last_updated(backend):
    backend.ledger.get_balance("s1")
    before = backend.ledger.get_account("s1").last_updated
    backend.ledger.increment("s1", 3)
    assert backend.ledger.get_account("s1").last_updated >= before


def test_account_identity():
    assert account_identity("user-abc") == (True, "abc")
    assert account_identity("anon-1") == (False, None)


@pytest.mark.parametrize("value", [None, 0, -3, 0.4, "5", True, float("nan"), float("inf"), 1e30, MAX_CREDITS + 1])
def test_positive_amount_rejects(value):
    with pytest.raises(ValidationError):
        positive_amount(value, "bad amount")


def test_positive_amount_truncates():
    assert positive_amount(5.9, "bad amount") == 5


class RacingSession:
    """Misses the account on the first read, as if another request created it meanwhile."""

    def __init__(self, db):
        self.db = db
        self.first_read = True

    def query(self, *entities):
        if self.first_read:
            self.first_read = False
            return SimpleNamespace(filter_by=lambda **kw: SimpleNamespace(scalar=lambda: None))
        return self.db.query(*entities)

    def __getattr__(self, name):
        return getattr(self.db, name)


def test_get_balance_reads_account_created_concurrently(sql_backend, monkeypatch):
    ledger = sql_backend.ledger
    ledger.increment("s1", 3, create_missing=True)
    factory = ledger.session_factory
    monkeypatch.setattr(ledger, "session_factory", lambda: RacingSession(factory()))

    assert ledger.get_balance("s1") == 3


def test_get_balance_store_error_returns_default(sql_backend, caplog):
    Base.metadata.drop_all(bind=sql_backend.engine)

    with caplog.at_level(logging.ERROR, logger="app.credit_ledger"):
        assert sql_backend.ledger.get_balance("s1") == 7
    assert "Error getting credits for s1" in caplog.text


def test_store_errors_surface_on_mutations(sql_backend):
    Base.metadata.drop_all(bind=sql_backend.engine)
    with pytest.raises(StoreError):
        sql_backend.ledger.decrement("s1")
    with pytest.raises(StoreError):
        sql_backend.ledger.increment("s1", 1, create_missing=True)
