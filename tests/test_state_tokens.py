import time

import pytest

from wso2auth.config import AuthType
from wso2auth.service.errors import StateMismatchError
from wso2auth.service.session_state import SessionState
from wso2auth.service.state_tokens import StateTokenStore, random_token


@pytest.fixture
def session():
    return SessionState("sid", is_new=True)


@pytest.fixture
def store():
    return StateTokenStore(ttl_seconds=600)


def test_random_token_is_128_bit_hex():
    token = random_token()
    assert len(token) == 32
    int(token, 16)
    assert random_token() != token


class TestIssue:
    def test_issue_stores_pending_request(self, store, session):
        """The issued state, destination and auth type are kept in the session."""
        request = store.issue(session, auth_type=AuthType.OPERATOR, destination="/servizi")

        pending = session.peek_auth_request()
        assert pending is not None
        assert pending.state == request.state
        assert pending.destination == "/servizi"
        assert pending.auth_type == "operator"
        assert pending.nonce is None
        assert session.modified

    def test_issue_replaces_pending_request(self, store, session):
        """Only one authorization flow is in flight per session."""
        first = store.issue(session)
        second = store.issue(session)

        assert first.state != second.state
        assert session.peek_auth_request().state == second.state

    def test_issue_with_nonce(self, store, session):
        request = store.issue(session, with_nonce=True)
        assert request.nonce and len(request.nonce) == 32

    def test_empty_destination_is_not_stored(self, store, session):
        request = store.issue(session, destination="")
        assert request.destination is None


class TestConsume:
    def test_matching_state_returns_request(self, store, session):
        """A matching state verifies and hands back the pending request."""
        issued = store.issue(session, destination="/a")

        consumed = store.consume(session, issued.state)

        assert consumed.state == issued.state
        assert consumed.destination == "/a"
        assert session.peek_auth_request() is None

    def test_replay_fails(self, store, session):
        """A consumed state can never verify again."""
        issued = store.issue(session)
        store.consume(session, issued.state)

        with pytest.raises(StateMismatchError) as excinfo:
            store.consume(session, issued.state)
        assert excinfo.value.detail["reason"] == "missing"

    def test_mismatch_still_consumes_pending(self, store, session):
        """A wrong state burns the pending request so it cannot be retried."""
        issued = store.issue(session)

        with pytest.raises(StateMismatchError) as excinfo:
            store.consume(session, "f" * 32)
        assert excinfo.value.detail["reason"] == "mismatch"
        assert not store.verify(session, issued.state)

    def test_empty_returned_state_fails(self, store, session):
        store.issue(session)
        with pytest.raises(StateMismatchError) as excinfo:
            store.consume(session, "")
        assert excinfo.value.detail["reason"] == "empty"

    def test_expired_request_fails(self, session):
        """Requests older than the TTL are rejected."""
        store = StateTokenStore(ttl_seconds=10)
        issued = store.issue(session)
        pending = session.peek_auth_request()
        pending.created_at = time.time() - 60
        session.set_auth_request(pending)

        with pytest.raises(StateMismatchError) as excinfo:
            store.consume(session, issued.state)
        assert excinfo.value.detail["reason"] == "expired"

    def test_verify_returns_bool(self, store, session):
        issued = store.issue(session)
        assert store.verify(session, issued.state) is True
        assert store.verify(session, issued.state) is False
