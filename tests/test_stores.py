"""SQL-layer tests for the PostgreSQL stores against a mocked connection."""

from contextlib import contextmanager
from unittest.mock import MagicMock

import psycopg2
import pytest
from cryptography.fernet import Fernet

from ingestion.core.cursor_store import SyncCursorStore
from ingestion.core.document_store import DocumentStore
from ingestion.email.credentials import CredentialStore
from ingestion.email.errors import CredentialsError, PersistenceError
from ingestion.utils.crypto import decrypt, encrypt


def _db(fetchone=None, fetchall=None, execute_error=None):
    cur = MagicMock()
    if fetchone is not None:
        cur.fetchone.side_effect = fetchone
    if fetchall is not None:
        cur.fetchall.return_value = fetchall
    if execute_error is not None:
        cur.execute.side_effect = execute_error
    conn = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cur
    db = MagicMock()

    @contextmanager
    def get_connection():
        yield conn

    db.get_connection = get_connection
    return db, cur, conn


@pytest.fixture
def encryption_key(monkeypatch):
    key = Fernet.generate_key().decode()
    monkeypatch.setenv("CREDENTIALS_ENCRYPTION_KEY", key)
    return key


def test_crypto_round_trip(encryption_key):
    token = encrypt("1//refresh-token")
    assert token != "1//refresh-token"
    assert decrypt(token) == "1//refresh-token"


def test_crypto_requires_key(monkeypatch):
    monkeypatch.delenv("CREDENTIALS_ENCRYPTION_KEY", raising=False)
    with pytest.raises(RuntimeError):
        encrypt("x")


def test_credentials_are_stored_encrypted(encryption_key):
    db, cur, conn = _db()
    CredentialStore(db).save("user-1", "gmail", "1//refresh", "bob@example.com")

    params = cur.execute.call_args.args[1]
    assert params[:3] == ("user-1", "gmail", "bob@example.com")
    assert params[3] != "1//refresh"
    assert decrypt(params[3]) == "1//refresh"
    conn.commit.assert_called_once()


def test_get_token_missing_row_is_none(encryption_key):
    db, _, _ = _db(fetchone=[None])
    assert CredentialStore(db).get_token("user-1", "gmail") is None


def test_get_token_with_wrong_key_raises_credentials_error(encryption_key):
    foreign = Fernet(Fernet.generate_key()).encrypt(b"1//refresh").decode()
    db, _, _ = _db(fetchone=[{"encrypted_token": foreign}])

    with pytest.raises(CredentialsError):
        CredentialStore(db).get_token("user-1", "gmail")


def test_list_user_ids_filters_disabled_sync():
    db, cur, _ = _db(fetchall=[{"user_id": "a"}, {"user_id": "b"}])

    assert CredentialStore(db).list_user_ids("gmail") == ["a", "b"]
    assert "COALESCE(s.sync_enabled, TRUE)" in cur.execute.call_args.args[0]


def test_document_upsert_wraps_database_errors():
    db, _, _ = _db(execute_error=psycopg2.OperationalError("server closed the connection"))

    with pytest.raises(PersistenceError, match="m-1"):
        DocumentStore(db).upsert("user-1", "email", "m-1", "body", [0.1, 0.2], {"category": "personal"})


def test_document_upsert_is_keyed_on_source():
    db, cur, _ = _db(fetchone=[{"id": 42}])

    doc_id = DocumentStore(db).upsert("user-1", "email", "m-1", "body", [1, 2], {})

    assert doc_id == "42"
    sql, params = cur.execute.call_args.args
    assert "ON CONFLICT (user_id, source_type, source_id)" in sql
    assert params[5] == [1.0, 2.0]


def test_existing_ids_short_circuits_empty_input():
    db, cur, _ = _db()
    assert DocumentStore(db).existing_ids("user-1", "email", []) == set()
    cur.execute.assert_not_called()


def _cursor_row(token, **overrides):
    row = {
        "user_id": "user-1",
        "source_name": "gmail",
        "cursor_token": token,
        "sync_enabled": True,
        "last_sync_at": None,
        "emails_synced": 3,
        "error_count": 0,
        "last_error": None,
        "last_error_at": None,
    }
    row.update(overrides)
    return row


def test_record_success_compares_expected_token(caplog):
    db, cur, _ = _db(fetchone=[_cursor_row("H150")])

    stored = SyncCursorStore(db).record_success(
        "user-1", "gmail", "H105", expected_token="H100", synced_count=1
    )

    sql, params = cur.execute.call_args.args
    assert "IS NOT DISTINCT FROM %(expected)s" in sql
    assert params["expected"] == "H100"
    assert params["token"] == "H105"
    assert stored.cursor_token == "H150"
    assert "moved concurrently" in caplog.text


def test_record_failure_without_counting():
    db, cur, _ = _db(fetchone=[_cursor_row("H100", last_error="quota")])

    SyncCursorStore(db).record_failure("user-1", "gmail", "quota", count_error=False)

    params = cur.execute.call_args.args[1]
    assert params["increment"] == 0
    assert params["disable"] is False
