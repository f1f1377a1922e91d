"""HTTP tests for the JSON API using Flask's test client."""

import base64
import json
from types import SimpleNamespace

import pytest
from flask import Flask

from ingestion.email.errors import FatalFetchError
from ingestion.email.models import ChangeBatch
from sync_manager.jobs.tracker import JobTracker
from sync_manager.scheduler_manager import SchedulerManager
from sync_manager.web.routes import WebRoutes, decode_push_payload

from tests.fakes import DeferredExecutor, FakeJobStore, InlineExecutor, SyncHarness
from tests.gmail_fixtures import make_message

USER = {"X-User-Id": "user-1"}


class FakeCatalog:
    def list_active(self):
        return [{"template_pack_id": "starter", "name": "Starter Pack", "description": "Tasks"}]


@pytest.fixture
def env():
    harness = SyncHarness()
    config = SimpleNamespace(
        CRON_SECRET="cron-secret",
        SYNC_WORKERS=1,
        EMAIL_SYNC_INTERVAL_MINUTES=360,
        SCHEDULER_POLL_SECONDS_BUSY=5,
        SCHEDULER_POLL_SECONDS_IDLE=30,
    )
    scheduler = SchedulerManager(config, harness.orchestrator, executor=InlineExecutor())
    tracker = JobTracker(FakeJobStore(), executor=DeferredExecutor())
    tracker.register_kind("template", lambda job, progress: {
        "templatePackId": job.params["templatePackId"],
        "installedIds": {"parent_page_id": "p-1"},
    })
    services = SimpleNamespace(
        orchestrator=harness.orchestrator,
        scheduler_manager=scheduler,
        job_tracker=tracker,
        template_catalog=FakeCatalog(),
    )
    app = Flask(__name__)
    WebRoutes(app, config, services)
    return SimpleNamespace(client=app.test_client(), harness=harness, tracker=tracker, scheduler=scheduler)


def _push(email="bob@example.com", history_id=12345):
    data = base64.b64encode(json.dumps({"emailAddress": email, "historyId": history_id}).encode()).decode()
    return {"message": {"data": data, "messageId": "1"}, "subscription": "projects/demo/subscriptions/gmail"}


# ----------------------------------------------------------------------
# sync

def test_sync_requires_user(env):
    assert env.client.post("/api/sync/gmail").status_code == 401


def test_manual_sync_first_run(env):
    response = env.client.post("/api/sync/gmail", headers=USER)

    assert response.status_code == 200
    body = response.get_json()
    assert body["success"] is True
    assert body["syncType"] == "initial"
    assert body["emailsProcessed"] == 0
    assert body["lastSyncAt"] is not None


def test_manual_incremental_sync_counts(env, unread_message, read_message):
    env.harness.cursors.seed("user-1", "H100")
    env.harness.fetcher.changes["H100"] = ChangeBatch(new_cursor="H105", item_ids=["m-new", "m-read"])
    env.harness.fetcher.messages.update({"m-new": unread_message, "m-read": read_message})

    body = env.client.post("/api/sync/gmail", headers=USER, json={}).get_json()

    assert body["emailsProcessed"] == 1
    assert body["emailsSkipped"] == 1
    assert body["syncType"] == "incremental"


def test_manual_sync_without_credentials(env):
    response = env.client.post("/api/sync/gmail", headers={"X-User-Id": "nobody"})

    assert response.status_code == 400
    assert "not connected" in response.get_json()["error"]


def test_manual_sync_failure_returns_500(env):
    env.harness.cursors.seed("user-1", "H100")
    env.harness.fetcher.changes["H100"] = FatalFetchError("invalid_grant", status=401)

    response = env.client.post("/api/sync/gmail", headers=USER)

    assert response.status_code == 500
    assert response.get_json()["success"] is False


def test_manual_sync_conflict_when_in_flight(env):
    env.scheduler._claim("user-1", "webhook")

    response = env.client.post("/api/sync/gmail", headers=USER)

    assert response.status_code == 409


def test_force_full_sync_must_be_boolean(env):
    env.harness.cursors.seed("user-1", "H050")

    for value in ("false", "0", 1, None):
        response = env.client.post("/api/sync/gmail", headers=USER, json={"forceFullSync": value})
        assert response.status_code == 400

    assert env.harness.cursors.get("user-1", "gmail").cursor_token == "H050"
    assert env.harness.fetcher.bootstrap_calls == 0


def test_force_full_sync_true_bootstraps(env):
    env.harness.cursors.seed("user-1", "H050")

    body = env.client.post("/api/sync/gmail", headers=USER, json={"forceFullSync": True}).get_json()

    assert body["syncType"] == "initial"
    assert env.harness.cursors.get("user-1", "gmail").cursor_token == "H100"


def test_sync_status(env):
    env.client.post("/api/sync/gmail", headers=USER)

    body = env.client.get("/api/sync/gmail", headers=USER).get_json()

    assert body["hasCredentials"] is True
    assert body["firstSyncCompleted"] is True
    assert body["syncInProgress"] is False


def test_save_credentials(env):
    response = env.client.put(
        "/api/sync/gmail/credentials",
        headers={"X-User-Id": "user-7"},
        json={"refreshToken": "refresh-7", "emailAddress": "dana@example.com"},
    )

    assert response.status_code == 200
    assert env.harness.credentials.get_token("user-7", "gmail") == "refresh-7"
    assert env.client.put("/api/sync/gmail/credentials", headers=USER, json={}).status_code == 400


def test_save_notion_credentials(env):
    response = env.client.put("/api/onboarding/notion/credentials", headers=USER, json={"accessToken": "secret_abc"})

    assert response.status_code == 200
    assert env.harness.credentials.get_token("user-1", "notion") == "secret_abc"
    assert env.client.put("/api/onboarding/notion/credentials", headers=USER, json={}).status_code == 400


def test_watch_setup_and_stop(env):
    response = env.client.post("/api/sync/gmail/watch", headers=USER)

    assert response.status_code == 200
    assert response.get_json()["historyId"] == "H900"

    assert env.client.delete("/api/sync/gmail/watch", headers=USER).status_code == 200
    assert not env.harness.orchestrator.watch_enabled("user-1")


def test_watch_without_topic_is_bad_request(env):
    env.harness.orchestrator.pubsub_topic = None
    assert env.client.post("/api/sync/gmail/watch", headers=USER).status_code == 400


# ----------------------------------------------------------------------
# webhook

def test_webhook_rejects_malformed_payload(env):
    response = env.client.post("/api/webhooks/gmail", json={"message": {"data": "!!!"}})
    assert response.status_code == 400
    assert env.client.post("/api/webhooks/gmail", data="not json").status_code == 400


def test_webhook_unknown_mailbox_is_ignored(env):
    body = env.client.post("/api/webhooks/gmail", json=_push(email="stranger@example.com")).get_json()
    assert body["status"] == "ignored"


def test_webhook_ignored_when_watch_disabled(env):
    body = env.client.post("/api/webhooks/gmail", json=_push()).get_json()
    assert body["status"] == "ignored"
    assert env.harness.fetcher.bootstrap_calls == 0


def test_webhook_triggers_background_sync(env):
    env.harness.settings.update_watch("user-1", "gmail", enabled=True, topic_name="projects/demo/topics/gmail")
    env.harness.cursors.seed("user-1", "H100")
    env.harness.fetcher.changes["H100"] = ChangeBatch(new_cursor="H200", item_ids=["m-1"])
    env.harness.fetcher.messages["m-1"] = make_message("m-1")

    response = env.client.post("/api/webhooks/gmail", json=_push(email="BOB@example.com"))

    assert response.status_code == 200
    assert response.get_json() == {"status": "processing", "historyId": "12345"}
    assert env.harness.cursors.get("user-1", "gmail").cursor_token == "H200"
    assert env.harness.documents.count("user-1", "email") == 1


def test_webhook_errors_are_acknowledged(env):
    def broken_resolve(email_address):
        raise RuntimeError("database unavailable")

    env.harness.orchestrator.resolve_user = broken_resolve
    response = env.client.post("/api/webhooks/gmail", json=_push())

    assert response.status_code == 200
    assert response.get_json()["status"] == "error"


def test_webhook_health(env):
    body = env.client.get("/api/webhooks/gmail").get_json()
    assert body["status"] == "active"


def test_decode_bare_notification():
    assert decode_push_payload({"emailAddress": "a@b.c", "historyId": 7}) == ("a@b.c", "7")
    with pytest.raises(ValueError):
        decode_push_payload({"emailAddress": "a@b.c"})
    with pytest.raises(ValueError):
        decode_push_payload(None)


# ----------------------------------------------------------------------
# cron

def test_cron_requires_secret(env):
    assert env.client.get("/api/cron/ingest-gmail").status_code == 401
    assert env.client.get("/api/cron/ingest-gmail", headers={"Authorization": "Bearer wrong"}).status_code == 401


def test_cron_runs_cycle(env):
    response = env.client.get("/api/cron/ingest-gmail", headers={"Authorization": "Bearer cron-secret"})

    assert response.status_code == 200
    stats = response.get_json()["stats"]
    assert stats["totalUsers"] == 1
    assert stats["errors"] == 0


def test_cron_skips_user_with_sync_in_flight(env):
    env.harness.cursors.seed("user-1", "H100")
    env.scheduler._claim("user-1", "webhook")

    response = env.client.get("/api/cron/ingest-gmail", headers={"Authorization": "Bearer cron-secret"})

    stats = response.get_json()["stats"]
    assert stats["usersInFlight"] == 1
    assert stats["results"][0]["skipped"] is True
    assert env.harness.fetcher.fetch_calls == []
    assert env.scheduler.is_syncing("user-1")


# ----------------------------------------------------------------------
# jobs

def test_install_template_lifecycle(env):
    first = env.client.post("/api/onboarding/install-template", headers=USER, json={"templatePackId": "starter"})

    assert first.status_code == 202
    started = first.get_json()
    assert started["status"] == "in_progress"
    assert started["alreadyInstalled"] is False
    assert started["pollEndpoint"] == "/api/jobs/template"

    again = env.client.post("/api/onboarding/install-template", headers=USER, json={"templatePackId": "starter"})
    assert again.status_code == 200
    assert again.get_json()["jobId"] == started["jobId"]

    env.tracker.executor.run_all()

    status = env.client.get("/api/onboarding/install-template", headers=USER).get_json()
    assert status["installed"] is True
    assert status["status"] == "completed"
    assert status["progress"] == 100
    assert status["installedIds"] == {"parent_page_id": "p-1"}

    repeat = env.client.post("/api/onboarding/install-template", headers=USER, json={"templatePackId": "starter"})
    assert repeat.status_code == 200
    assert repeat.get_json()["alreadyInstalled"] is True


def test_install_template_requires_pack_id(env):
    response = env.client.post("/api/onboarding/install-template", headers=USER, json={})
    assert response.status_code == 400


def test_install_template_when_executor_is_down(env):
    class ShutDownExecutor:
        def submit(self, fn, *args, **kwargs):
            raise RuntimeError("cannot schedule new futures after shutdown")

    env.tracker.executor = ShutDownExecutor()

    response = env.client.post("/api/onboarding/install-template", headers=USER, json={"templatePackId": "starter"})

    assert response.status_code == 503
    assert env.client.get("/api/jobs/template", headers=USER).get_json()["status"] == "failed"


def test_job_status_before_start(env):
    body = env.client.get("/api/jobs/template", headers=USER).get_json()
    assert body == {"installed": False, "status": "not_started"}


def test_unknown_job_kind(env):
    assert env.client.post("/api/jobs/reindex", headers=USER, json={}).status_code == 404
    assert env.client.get("/api/jobs/reindex", headers=USER).status_code == 404


def test_list_templates(env):
    body = env.client.get("/api/onboarding/templates").get_json()
    assert body["templates"][0]["template_pack_id"] == "starter"


def test_scheduler_status(env):
    body = env.client.get("/admin/scheduler_status").get_json()
    assert body["running"] is False
    assert body["in_flight"] == []
