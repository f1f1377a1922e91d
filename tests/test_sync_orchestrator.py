"""Tests for EmailSyncOrchestrator cursor handling and failure policy."""

import pytest

from ingestion.email.client_cache import GmailClientCache
from ingestion.email.errors import (
    CredentialsError,
    FatalFetchError,
    InvalidCursorError,
    RateLimitedError,
    TransientFetchError,
)
from ingestion.email.models import ChangeBatch
from ingestion.email.orchestrator import RECONNECT_MESSAGE

from tests.fakes import FakeFetcher, SyncHarness
from tests.gmail_fixtures import make_message


def _cursor(harness, user_id="user-1"):
    return harness.cursors.get(user_id, "gmail")


def test_first_sync_bootstraps_without_backfill(harness):
    result = harness.orchestrator.sync("user-1")

    assert result.success
    assert result.is_first_sync
    assert result.processed == 0
    assert result.to_response()["syncType"] == "initial"
    assert _cursor(harness).cursor_token == "H100"
    assert harness.fetcher.bootstrap_calls == 1
    assert harness.fetcher.fetch_calls == []
    assert harness.documents.rows == {}


def test_incremental_sync_processes_new_and_skips_read(harness, unread_message, read_message):
    harness.cursors.seed("user-1", "H100")
    harness.fetcher.changes["H100"] = ChangeBatch(new_cursor="H105", item_ids=["m-new", "m-read"])
    harness.fetcher.messages.update({"m-new": unread_message, "m-read": read_message})

    result = harness.orchestrator.sync("user-1")

    assert result.success
    assert (result.processed, result.skipped, result.failed) == (1, 1, 0)
    assert result.to_response()["syncType"] == "incremental"
    cursor = _cursor(harness)
    assert cursor.cursor_token == "H105"
    assert cursor.emails_synced == 1
    stored = harness.documents.rows[("user-1", "email", "m-new")]
    assert stored["metadata"]["category"] == "personal"
    assert stored["content"].startswith("Subject: Hello")
    assert len(stored["embedding"]) == 4


def test_replayed_items_are_not_duplicated(harness, unread_message):
    harness.cursors.seed("user-1", "H100")
    harness.fetcher.changes["H100"] = ChangeBatch(new_cursor="H105", item_ids=["m-new"])
    harness.fetcher.changes["H105"] = ChangeBatch(new_cursor="H106", item_ids=["m-new"])
    harness.fetcher.messages["m-new"] = unread_message

    first = harness.orchestrator.sync("user-1")
    second = harness.orchestrator.sync("user-1")

    assert first.processed == 1
    assert second.processed == 0
    assert second.skipped == 1
    assert harness.documents.count("user-1", "email") == 1
    assert harness.fetcher.item_calls == ["m-new"]
    assert _cursor(harness).cursor_token == "H106"


def test_invalid_cursor_rebootstraps(harness):
    harness.cursors.seed("user-1", "H1")
    harness.fetcher.changes["H1"] = InvalidCursorError("history id too old", status=404)
    harness.fetcher.bootstrap = "H200"

    result = harness.orchestrator.sync("user-1")

    assert result.success
    assert result.is_first_sync
    assert _cursor(harness).cursor_token == "H200"
    assert _cursor(harness).error_count == 0


def test_force_full_sync_discards_cursor(harness):
    harness.cursors.seed("user-1", "H100")
    harness.fetcher.bootstrap = "H300"

    result = harness.orchestrator.sync("user-1", force_full_sync=True)

    assert result.is_first_sync
    assert harness.fetcher.fetch_calls == []
    assert _cursor(harness).cursor_token == "H300"


def test_cursor_not_advanced_when_every_item_fails(harness, unread_message):
    harness.cursors.seed("user-1", "H100")
    harness.fetcher.changes["H100"] = ChangeBatch(new_cursor="H105", item_ids=["m-new"])
    harness.fetcher.messages["m-new"] = unread_message
    harness.documents.fail_all = True

    result = harness.orchestrator.sync("user-1")

    assert not result.success
    assert result.error_kind == "persistence"
    assert (result.processed, result.failed, result.skipped) == (0, 1, 1)
    cursor = _cursor(harness)
    assert cursor.cursor_token == "H100"
    assert cursor.error_count == 1
    assert "failed to persist" in cursor.last_error


def test_partial_failure_still_advances(harness):
    harness.cursors.seed("user-1", "H100")
    harness.fetcher.changes["H100"] = ChangeBatch(new_cursor="H105", item_ids=["m-a", "m-b"])
    harness.fetcher.messages.update({"m-a": make_message("m-a"), "m-b": make_message("m-b")})
    harness.documents.fail_ids = {"m-a"}

    result = harness.orchestrator.sync("user-1")

    assert result.success
    assert (result.processed, result.failed) == (1, 1)
    assert _cursor(harness).cursor_token == "H105"


def test_vanished_message_is_skipped(harness, unread_message):
    harness.cursors.seed("user-1", "H100")
    harness.fetcher.changes["H100"] = ChangeBatch(new_cursor="H105", item_ids=["m-gone", "m-new"])
    harness.fetcher.messages["m-new"] = unread_message

    result = harness.orchestrator.sync("user-1")

    assert result.success
    assert (result.processed, result.skipped) == (1, 1)
    assert _cursor(harness).cursor_token == "H105"


def test_transient_item_fetch_aborts_without_advancing(harness, unread_message):
    harness.cursors.seed("user-1", "H100")
    harness.fetcher.changes["H100"] = ChangeBatch(new_cursor="H105", item_ids=["m-new", "m-broken"])
    harness.fetcher.messages.update({
        "m-new": unread_message,
        "m-broken": TransientFetchError("backend error", status=503),
    })

    result = harness.orchestrator.sync("user-1")

    assert not result.success
    assert result.error_kind == "transient"
    assert _cursor(harness).cursor_token == "H100"
    assert _cursor(harness).error_count == 1


def test_no_credentials_is_reported_without_touching_cursor(harness):
    harness.credentials.tokens.clear()

    result = harness.orchestrator.sync("user-1")

    assert result.error == "no credentials"
    assert result.to_response()["success"] is False
    assert harness.factory_calls == []
    assert _cursor(harness) is None


def test_unreadable_credentials_ask_for_reconnect(harness):
    harness.credentials.raise_on_get = CredentialsError("invalid token")

    result = harness.orchestrator.sync("user-1")

    assert result.error == RECONNECT_MESSAGE
    assert result.error_kind == "configuration"
    assert _cursor(harness).error_count == 1


def test_rate_limit_does_not_count_as_error(harness):
    harness.cursors.seed("user-1", "H100", error_count=2)
    harness.fetcher.changes["H100"] = RateLimitedError("quota", status=429)

    result = harness.orchestrator.sync("user-1")

    assert result.error_kind == "rate_limited"
    cursor = _cursor(harness)
    assert cursor.error_count == 2
    assert cursor.last_error == "quota"
    assert cursor.sync_enabled
    assert cursor.cursor_token == "H100"


def test_revoked_authorization_disables_sync(harness):
    cache = GmailClientCache()
    cache.put("user-1", "refresh-1", object())
    harness.orchestrator.client_cache = cache
    harness.cursors.seed("user-1", "H100")
    harness.fetcher.changes["H100"] = FatalFetchError("invalid_grant", status=401)

    result = harness.orchestrator.sync("user-1")

    assert result.error_kind == "fatal"
    assert "reconnect account" in result.error
    cursor = _cursor(harness)
    assert cursor.sync_enabled is False
    assert cursor.error_count == 1
    assert len(cache) == 0
    assert harness.orchestrator.list_syncable_users() == []


def test_bootstrap_failure_is_recorded(harness):
    harness.fetcher.bootstrap = TransientFetchError("timeout")

    result = harness.orchestrator.sync("user-1")

    assert not result.success
    assert result.is_first_sync
    assert _cursor(harness).cursor_token is None
    assert _cursor(harness).error_count == 1


def test_unexpected_exception_is_contained(harness):
    harness.cursors.seed("user-1", "H100")
    harness.fetcher.changes["H100"] = RuntimeError("boom")

    result = harness.orchestrator.sync("user-1")

    assert result.error == "sync failed: boom"
    assert _cursor(harness).error_count == 1


def test_success_resets_error_state_and_reenables(harness):
    harness.cursors.seed("user-1", "H100", sync_enabled=False, error_count=3, last_error="old")

    result = harness.orchestrator.sync("user-1")

    assert result.success
    cursor = _cursor(harness)
    assert cursor.sync_enabled
    assert cursor.error_count == 0
    assert cursor.last_error is None


def test_concurrent_cursor_move_is_not_overwritten(harness, unread_message):
    class RacingFetcher(FakeFetcher):
        def fetch_changes(self, cursor):
            # another run stores its cursor while this one is fetching
            harness.cursors.seed("user-1", "H150", emails_synced=5)
            return ChangeBatch(new_cursor="H105", item_ids=["m-new"])

    harness.fetcher = RacingFetcher(messages={"m-new": unread_message})
    harness.cursors.seed("user-1", "H100")

    result = harness.orchestrator.sync("user-1")

    assert result.processed == 1
    cursor = _cursor(harness)
    assert cursor.cursor_token == "H150"
    assert cursor.emails_synced == 6


def test_sync_status(harness):
    status = harness.orchestrator.get_sync_status("user-1")
    assert status["hasCredentials"] is True
    assert status["firstSyncCompleted"] is False
    assert status["lastSyncAt"] is None

    harness.orchestrator.sync("user-1")
    status = harness.orchestrator.get_sync_status("user-1")

    assert status["firstSyncCompleted"] is True
    assert status["syncEnabled"] is True
    assert status["lastSyncAt"] is not None
    assert status["errorCount"] == 0


def test_run_cycle_aggregates_and_skips_disabled_users():
    harness = SyncHarness()
    harness.credentials.save("user-2", "gmail", "refresh-2")
    harness.credentials.save("user-3", "gmail", "refresh-3")
    harness.cursors.seed("user-3", "H1", sync_enabled=False)
    harness.cursors.seed("user-2", "H100")
    harness.fetcher.changes["H100"] = ChangeBatch(new_cursor="H101", item_ids=["m-1"])
    harness.fetcher.messages["m-1"] = make_message("m-1")

    stats = harness.orchestrator.run_cycle()

    assert stats["totalUsers"] == 2
    assert stats["emailsProcessed"] == 1
    assert stats["errors"] == 0
    assert [r["userId"] for r in stats["results"]] == ["user-1...", "user-2..."]


def test_run_cycle_counts_failures_per_user(harness):
    stats = harness.orchestrator.run_cycle(["user-1", "ghost"])

    assert stats["totalUsers"] == 2
    assert stats["errors"] == 1
    assert stats["results"][1]["error"] == "no credentials"


def test_setup_and_stop_watch(harness):
    response = harness.orchestrator.setup_watch("user-1")

    assert response["historyId"] == "H900"
    assert response["expiration"] == "2026-01-01T00:00:00+00:00"
    assert harness.fetcher.watch_calls == [("projects/demo/topics/gmail", ["INBOX"])]
    assert harness.orchestrator.watch_enabled("user-1")

    harness.orchestrator.stop_watch("user-1")

    assert harness.fetcher.stopped
    assert not harness.orchestrator.watch_enabled("user-1")


def test_setup_watch_requires_topic(harness):
    harness.orchestrator.pubsub_topic = None
    with pytest.raises(ValueError, match="topic"):
        harness.orchestrator.setup_watch("user-1")


def test_connect_account_reenables_and_resolves_email(harness):
    harness.cursors.seed("user-9", "H1", sync_enabled=False)

    harness.orchestrator.connect_account("user-9", "refresh-9", "Carol@Example.com")

    assert harness.orchestrator.is_sync_enabled("user-9")
    assert harness.orchestrator.resolve_user("carol@example.com") == "user-9"
    assert harness.credentials.get_token("user-9", "gmail") == "refresh-9"
