"""
Tests for the retrying role-sync adapter.

Covers retry classification, backoff timing (including retry-after hints)
and the one-attempt-row / one-audit-row recording contract.
"""

import pytest

from membersync.errors import ErrorKind
from membersync.integrations.discord.exceptions import (
    RoleRateLimitError,
    RoleTransientError,
    RoleValidationError,
)
from membersync.models.audit_event import (
    AuditCategory,
    AuditEvent,
    AuditOutcome,
    RoleChangeAttempt,
)
from membersync.services.audit_trail import AuditTrail
from membersync.services.role_sync import RoleSyncAdapter
from membersync.services.tier_state_machine import RoleAction, RoleIntent


@pytest.fixture
def adapter(database, role_client, sleeper):
    return RoleSyncAdapter(
        database,
        role_client,
        AuditTrail(database),
        max_attempts=3,
        base_delay_seconds=1.0,
        max_delay_seconds=30.0,
        sleep=sleeper,
    )


def _attempt_rows(database):
    with database.session_scope() as session:
        return session.query(RoleChangeAttempt).all()


def _audit_rows(database, category):
    with database.session_scope() as session:
        return session.query(AuditEvent).filter(AuditEvent.category == category).all()


class TestRetryPolicy:
    def test_success_first_try(self, adapter, role_client, sleeper):
        result = adapter.apply("m1", "discord-1", "role-paid", RoleAction.GRANT)

        assert result.success is True
        assert result.attempts == 1
        assert role_client.calls == [("grant", "discord-1", "role-paid")]
        assert sleeper.delays == []

    def test_transient_errors_are_retried_with_backoff(self, adapter, role_client, sleeper):
        role_client.script = [RoleTransientError(status_code=502), RoleTransientError(status_code=503)]

        result = adapter.apply("m1", "discord-1", "role-paid", RoleAction.GRANT)

        assert result.success is True
        assert result.attempts == 3
        assert sleeper.delays == [1.0, 2.0]

    def test_retry_after_hint_wins_when_larger(self, adapter, role_client, sleeper):
        role_client.script = [RoleRateLimitError(retry_after=5.0)]

        result = adapter.apply("m1", "discord-1", "role-paid", RoleAction.REVOKE)

        assert result.success is True
        assert sleeper.delays == [5.0]

    def test_retry_after_smaller_than_backoff_uses_backoff(self, adapter, role_client, sleeper):
        role_client.script = [RoleTransientError(), RoleRateLimitError(retry_after=0.5)]

        adapter.apply("m1", "discord-1", "role-paid", RoleAction.GRANT)

        assert sleeper.delays == [1.0, 2.0]

    def test_validation_error_is_not_retried(self, adapter, role_client, sleeper):
        role_client.script = [RoleValidationError("Unknown Member", status_code=404)]

        result = adapter.apply("m1", "discord-1", "role-paid", RoleAction.GRANT)

        assert result.success is False
        assert result.attempts == 1
        assert result.error_kind == ErrorKind.VALIDATION
        assert len(role_client.calls) == 1
        assert sleeper.delays == []

    def test_unexpected_client_error_is_a_failed_attempt(self, adapter, role_client, sleeper, database):
        role_client.script = [ValueError("Expecting value: line 1 column 1 (char 0)")]

        result = adapter.apply("m1", "discord-1", "role-paid", RoleAction.REVOKE)

        assert result.success is False
        assert result.attempts == 1
        assert result.error_kind == ErrorKind.UNEXPECTED
        assert result.error_kind.retryable is False
        assert sleeper.delays == []
        with database.session_scope() as session:
            attempt = session.query(RoleChangeAttempt).one()
            assert attempt.outcome == "failed"
            assert "Expecting value" in attempt.error_detail

    def test_exhaustion_returns_failure(self, adapter, role_client, sleeper):

        role_client.default_error = RoleRateLimitError(retry_after=None)

        result = adapter.apply("m1", "discord-1", "role-paid", RoleAction.GRANT)

        assert result.success is False
        assert result.attempts == 3
        assert result.error_kind == ErrorKind.TRANSIENT_EXTERNAL
        assert len(role_client.calls) == 3
        # No sleep after the final attempt
        assert sleeper.delays == [1.0, 2.0]

    def test_backoff_is_capped(self, database, role_client, sleeper):
        adapter = RoleSyncAdapter(
            database,
            role_client,
            AuditTrail(database),
            max_attempts=4,
            base_delay_seconds=10.0,
            max_delay_seconds=15.0,
            sleep=sleeper,
        )
        role_client.default_error = RoleTransientError()

        adapter.apply("m1", "discord-1", "role-paid", RoleAction.GRANT)

        assert sleeper.delays == [10.0, 15.0, 15.0]

    def test_invalid_attempt_budget(self, database, role_client):
        with pytest.raises(ValueError):
            RoleSyncAdapter(database, role_client, AuditTrail(database), max_attempts=0)


class TestRecording:
    def test_one_attempt_row_and_one_audit_row_on_success(self, adapter, role_client, database):
        role_client.script = [RoleTransientError()]

        adapter.apply("m1", "discord-1", "role-paid", RoleAction.GRANT)

        attempts = _attempt_rows(database)
        assert len(attempts) == 1
        assert attempts[0].outcome == "success"
        assert attempts[0].attempt_count == 2
        assert attempts[0].action == "grant"

        audits = _audit_rows(database, AuditCategory.ROLE_GRANT)
        assert len(audits) == 1
        assert audits[0].outcome == AuditOutcome.SUCCESS

    def test_failure_is_recorded(self, adapter, role_client, database):
        role_client.default_error = RoleTransientError(status_code=500)

        adapter.apply("m1", "discord-1", "role-paid", RoleAction.REVOKE)

        attempts = _attempt_rows(database)
        assert len(attempts) == 1
        assert attempts[0].outcome == "failed"
        assert attempts[0].attempt_count == 3
        assert attempts[0].error_detail

        audits = _audit_rows(database, AuditCategory.ROLE_REVOKE)
        assert len(audits) == 1
        assert audits[0].outcome == AuditOutcome.FAILURE
        assert audits[0].payload["error_kind"] == ErrorKind.TRANSIENT_EXTERNAL.value

    def test_apply_intents_continues_after_failure(self, adapter, role_client):
        role_client.script = [RoleValidationError("nope", status_code=403)]

        results = adapter.apply_intents(
            "m1",
            "discord-1",
            [RoleIntent(RoleAction.GRANT, "role-a"), RoleIntent(RoleAction.GRANT, "role-b")],
        )

        assert [r.success for r in results] == [False, True]
