"""PostgresStore logic that does not need a live database."""

import contextlib
from datetime import timedelta
from types import SimpleNamespace

import psycopg
import pytest
from psycopg import errors

from studyauth.logging import get_logger
from studyauth.storage.errors import ConstraintViolation, StorageUnavailable
from studyauth.storage.models import OTPChallenge, OTPOutcome, utcnow
from studyauth.storage.postgres import PostgresStore


class StubCursor:
    def __init__(self, rows=None, rowcount=0):
        self.rows = rows or []
        self.rowcount = rowcount

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class StubConnection:
    def __init__(self, responses):
        self.responses = responses
        self.statements = []

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        result = self.responses.pop(0) if self.responses else StubCursor()
        if isinstance(result, Exception):
            raise result
        return result

    @contextlib.contextmanager
    def transaction(self):
        yield


class StubPool:
    def __init__(self, responses=None, error=None):
        self.conn = StubConnection(responses or [])
        self.error = error

    @contextlib.contextmanager
    def connection(self):
        if self.error:
            raise self.error
        yield self.conn


def _store(responses=None, error=None):
    store = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://stub"
    store.logger = get_logger("tests.postgres")
    store.pool = StubPool(responses, error)
    return store


def _unique_violation(constraint):
    class _Violation(errors.UniqueViolation):
        diag = SimpleNamespace(constraint_name=constraint)

    return _Violation("duplicate key value violates unique constraint")


def _user_row(**overrides):
    row = {
        "id": "u-1",
        "username": "erin",
        "email": "erin@example.com",
        "phone": None,
        "password_hash": "hash",
        "role": "instructor",
        "is_active": True,
        "email_verified": False,
        "email_verified_at": None,
        "last_login_at": None,
        "created_at": utcnow(),
        "updated_at": None,
    }
    row.update(overrides)
    return row


class TestRowMapping:
    def test_user_row(self):
        store = _store([StubCursor([_user_row()])])
        user = store.get_user_by_email("erin@example.com")

        assert user.id == "u-1"
        assert user.role == "instructor"
        sql, params = store.pool.conn.statements[0]
        assert sql == "SELECT * FROM app_user WHERE email = %s"
        assert params == ("erin@example.com",)

    def test_missing_role_defaults_to_student(self):
        store = _store([StubCursor([_user_row(role=None)])])
        assert store.get_user("u-1").role == "student"

    def test_missing_user(self):
        assert _store([StubCursor([])]).get_user("nope") is None

    def test_challenge_row(self):
        now = utcnow()
        row = {
            "id": "c-1",
            "channel": "phone",
            "destination": "+14155550100",
            "purpose": "login",
            "code_hash": "h",
            "created_at": now,
            "expires_at": now + timedelta(minutes=5),
            "attempt_count": 2,
            "max_attempts": 5,
            "consumed": False,
            "consumed_at": None,
        }
        challenge = _store([StubCursor([row])]).get_otp_challenge("+14155550100", "login")
        assert challenge.attempt_count == 2
        assert challenge.channel == "phone"


class TestUniqueness:
    @pytest.mark.parametrize(
        "constraint, field",
        [
            ("app_user_email_key", "email"),
            ("app_user_username_key", "username"),
            ("app_user_phone_key", "phone"),
            ("something_else", "unknown"),
        ],
    )
    def test_violation_names_field(self, constraint, field):
        store = _store([_unique_violation(constraint)])
        with pytest.raises(ConstraintViolation) as excinfo:
            store.create_user("erin", email="erin@example.com")
        assert excinfo.value.field == field

    def test_missing_user_for_session(self):
        store = _store([errors.ForeignKeyViolation("missing user")])
        with pytest.raises(ConstraintViolation):
            store.create_session("ghost", "a1", utcnow() + timedelta(hours=1))


class TestRevocation:
    def test_first_insert_reports_true(self):
        store = _store([StubCursor(rowcount=1), StubCursor(rowcount=0)])
        expires = utcnow() + timedelta(minutes=5)
        assert store.revoke_token("t1", expires) is True
        assert store.revoke_token("t1", expires) is False


class TestOTPCheck:
    def test_mismatch_writes_attempt_back(self):
        challenge = OTPChallenge.new(
            "phone", "+14155550100", "login", "right", ttl_seconds=300, max_attempts=3
        )
        row = dict(vars(challenge))
        store = _store([StubCursor([row]), StubCursor(rowcount=1)])

        outcome, updated = store.check_otp_challenge("+14155550100", "login", "wrong")

        assert outcome == OTPOutcome.MISMATCH
        assert updated.attempt_count == 1
        select_sql, _ = store.pool.conn.statements[0]
        update_sql, params = store.pool.conn.statements[1]
        assert select_sql.endswith("FOR UPDATE")
        assert update_sql.startswith("UPDATE otp_challenge")
        assert params[0] == 1

    def test_missing_row(self):
        store = _store([StubCursor([])])
        outcome, challenge = store.check_otp_challenge("+14155550100", "login", "h")
        assert outcome == OTPOutcome.NOT_FOUND
        assert challenge is None


def test_purge_counts_each_table():
    store = _store([StubCursor(rowcount=n) for n in (1, 2, 3, 4)])
    assert store.purge_expired() == {
        "sessions": 1,
        "revoked_tokens": 2,
        "user_revocations": 3,
        "otp_challenges": 4,
    }


def test_connection_failure_becomes_unavailable():
    store = _store(error=psycopg.OperationalError("connection refused"))
    with pytest.raises(StorageUnavailable):
        store.get_user("u-1")
