"""
Web routes module for the mailbox sync service.

This module contains the Flask JSON API: manual sync and status, push
notification ingress, the cron trigger, and job registration/polling.
"""

import base64
import binascii
import hmac
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple

from flask import Flask, request, jsonify

from ingestion.email.errors import CredentialsError, FetchError
from ingestion.email.models import NO_CREDENTIALS_ERROR
from ..core.config import Config
from ..core.models import Job, JOB_COMPLETED, JOB_FAILED
from ..jobs.tracker import JobNotFoundError
from ..jobs.template_installer import NOTION_SERVICE

logger = logging.getLogger(__name__)

TEMPLATE_JOB_KIND = "template"


def header_user_resolver() -> Optional[str]:
    """Default caller identity: the ``X-User-Id`` header set by the auth proxy."""
    user_id = request.headers.get("X-User-Id", "").strip()
    return user_id or None


def decode_push_payload(body: Any) -> Tuple[str, str]:
    """Extract ``(emailAddress, historyId)`` from a Pub/Sub push envelope.

    Accepts the envelope ``{"message": {"data": base64(json)}}`` or the bare
    notification JSON.

    Raises:
        ValueError: The payload does not contain a usable notification.
    """
    if not isinstance(body, dict):
        raise ValueError("payload must be a JSON object")
    message = body.get("message")
    if isinstance(message, dict):
        data = message.get("data")
        if not data:
            raise ValueError("message.data missing")
        try:
            notification = json.loads(base64.b64decode(data + "=" * (-len(data) % 4)).decode("utf-8"))
        except (binascii.Error, ValueError, UnicodeDecodeError) as exc:
            raise ValueError(f"message.data is not base64 JSON: {exc}") from exc
    else:
        notification = body
    if not isinstance(notification, dict):
        raise ValueError("notification must be a JSON object")
    email_address = notification.get("emailAddress")
    history_id = notification.get("historyId")
    if not email_address or not history_id:
        raise ValueError("emailAddress and historyId are required")
    return str(email_address), str(history_id)


def job_status_payload(job: Optional[Job], stale: bool = False) -> Dict[str, Any]:
    if job is None:
        return {"installed": False, "status": "not_started"}
    payload: Dict[str, Any] = {
        "jobId": job.job_id,
        "installed": job.status == JOB_COMPLETED,
        "status": job.status,
        "progress": job.progress,
        "startedAt": job.started_at.isoformat() if job.started_at else None,
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }
    if job.status == JOB_COMPLETED:
        payload["result"] = job.result
        payload["installedIds"] = (job.result or {}).get("installedIds", {})
    if job.status == JOB_FAILED:
        payload["error"] = job.error
    if stale:
        payload["stale"] = True
    return payload


class WebRoutes:
    """
    Manages Flask routes for the mailbox sync service.
    """

    def __init__(
        self,
        app: Flask,
        config: Config,
        sync_manager: Any,
        user_resolver: Optional[Callable[[], Optional[str]]] = None,
    ) -> None:
        """
        Initialize web routes.

        Args:
            app: Flask application instance
            config: Application configuration
            sync_manager: Application object exposing ``orchestrator``,
                ``scheduler_manager``, ``job_tracker`` and ``template_catalog``
            user_resolver: Returns the authenticated user id for the current request
        """
        self.app = app
        self.config = config
        self.sync_manager = sync_manager
        self.user_resolver = user_resolver or header_user_resolver
        self._register_routes()
        logger.info("Web routes initialized")

    def _current_user(self) -> Optional[str]:
        return self.user_resolver()

    @staticmethod
    def _unauthorized():
        return jsonify({"error": "Unauthorized"}), 401

    def _register_routes(self) -> None:
        """Register Flask routes for the JSON API."""

        # ------------------------------------------------------------------
        # Manual sync and status

        @self.app.route('/api/sync/gmail', methods=['POST'])
        def sync_gmail():
            """Run an incremental (or forced full) sync for the caller."""
            user_id = self._current_user()
            if not user_id:
                return self._unauthorized()
            body = request.get_json(silent=True) or {}
            force_full_sync = body.get("forceFullSync", False)
            if not isinstance(force_full_sync, bool):
                return jsonify({"success": False, "error": "forceFullSync must be a boolean"}), 400
            result = self.sync_manager.scheduler_manager.run_sync_now(user_id, force_full_sync=force_full_sync)
            if result is None:
                return jsonify({"success": False, "error": "sync already in progress"}), 409
            if result.error == NO_CREDENTIALS_ERROR:
                return jsonify({
                    "success": False,
                    "error": "Gmail not connected. Please connect your Gmail account first.",
                }), 400
            return jsonify(result.to_response()), (200 if result.success else 500)

        @self.app.route('/api/sync/gmail', methods=['GET'])
        def sync_gmail_status():
            user_id = self._current_user()
            if not user_id:
                return self._unauthorized()
            status = self.sync_manager.orchestrator.get_sync_status(user_id)
            status["syncInProgress"] = self.sync_manager.scheduler_manager.is_syncing(user_id)
            return jsonify(status)

        @self.app.route('/api/sync/gmail/credentials', methods=['PUT'])
        def save_gmail_credentials():
            """Store a refresh token obtained by the external OAuth flow."""
            user_id = self._current_user()
            if not user_id:
                return self._unauthorized()
            body = request.get_json(silent=True) or {}
            refresh_token = body.get("refreshToken")
            if not refresh_token:
                return jsonify({"error": "refreshToken is required"}), 400
            self.sync_manager.orchestrator.connect_account(user_id, refresh_token, body.get("emailAddress"))
            return jsonify({"success": True})

        @self.app.route('/api/sync/gmail/watch', methods=['POST'])
        def start_gmail_watch():
            user_id = self._current_user()
            if not user_id:
                return self._unauthorized()
            try:
                watch = self.sync_manager.orchestrator.setup_watch(user_id)
            except (ValueError, CredentialsError) as exc:
                return jsonify({"success": False, "error": str(exc)}), 400
            except FetchError as exc:
                logger.error("Gmail watch setup failed for %s: %s", user_id[:8], exc)
                return jsonify({"success": False, "error": str(exc)}), 502
            return jsonify({"success": True, **watch})

        @self.app.route('/api/sync/gmail/watch', methods=['DELETE'])
        def stop_gmail_watch():
            user_id = self._current_user()
            if not user_id:
                return self._unauthorized()
            try:
                self.sync_manager.orchestrator.stop_watch(user_id)
            except (FetchError, CredentialsError) as exc:
                logger.error("Gmail watch stop failed for %s: %s", user_id[:8], exc)
                return jsonify({"success": False, "error": str(exc)}), 502
            return jsonify({"success": True})

        # ------------------------------------------------------------------
        # Push notification ingress

        @self.app.route('/api/webhooks/gmail', methods=['POST'])
        def gmail_webhook():
            """Acknowledge a Gmail push notification and sync in the background."""
            try:
                email_address, history_id = decode_push_payload(request.get_json(silent=True))
            except ValueError as exc:
                logger.warning("Rejected Gmail webhook payload: %s", exc)
                return jsonify({"error": "Invalid notification format"}), 400

            try:
                orchestrator = self.sync_manager.orchestrator
                user_id = orchestrator.resolve_user(email_address)
                if not user_id:
                    logger.info("Gmail notification for unknown mailbox ignored")
                    return jsonify({"status": "ignored", "reason": "unknown user"})
                if not orchestrator.watch_enabled(user_id) or not orchestrator.is_sync_enabled(user_id):
                    return jsonify({"status": "ignored", "reason": "watch disabled"})
                future = self.sync_manager.scheduler_manager.submit_sync(user_id, trigger="webhook")
                logger.info(
                    "Gmail notification for %s at history %s: %s",
                    user_id[:8], history_id, "sync started" if future else "sync already running",
                )
                return jsonify({"status": "processing", "historyId": history_id})
            except Exception as exc:
                # always acknowledge so the push service does not redeliver forever
                logger.exception("Gmail webhook handling failed")
                return jsonify({"status": "error", "message": str(exc)})

        @self.app.route('/api/webhooks/gmail', methods=['GET'])
        def gmail_webhook_health():
            return jsonify({
                "service": "Gmail Webhook",
                "status": "active",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            })

        # ------------------------------------------------------------------
        # Cron trigger

        @self.app.route('/api/cron/ingest-gmail', methods=['GET'])
        def cron_ingest_gmail():
            expected = f"Bearer {self.config.CRON_SECRET}"
            provided = request.headers.get("Authorization", "")
            if not self.config.CRON_SECRET or not hmac.compare_digest(provided, expected):
                return self._unauthorized()
            stats = self.sync_manager.scheduler_manager.run_cycle(trigger="cron")
            return jsonify({"success": True, "stats": stats})

        # ------------------------------------------------------------------
        # Jobs

        def register_job(kind: str, params: Dict[str, Any]):
            user_id = self._current_user()
            if not user_id:
                return self._unauthorized()
            tracker = self.sync_manager.job_tracker
            try:
                handle = tracker.start(user_id, kind, params)
            except JobNotFoundError:
                return jsonify({"error": f"Unknown job kind: {kind}"}), 404
            except RuntimeError as exc:
                logger.error("Could not start %s job for %s: %s", kind, user_id[:8], exc)
                return jsonify({"error": "Job could not be scheduled"}), 503
            job = handle.job
            payload = {
                "jobId": job.job_id,
                "status": "in_progress" if job.is_active else job.status,
                "progress": job.progress,
                "alreadyInstalled": handle.already_installed,
                "pollEndpoint": f"/api/jobs/{kind}",
            }
            if handle.created:
                payload["message"] = "Job started in background"
                return jsonify(payload), 202
            if handle.already_installed:
                payload["result"] = job.result
                return jsonify(payload)
            payload["message"] = "Job already in progress"
            return jsonify(payload)

        def get_job(kind: str):
            user_id = self._current_user()
            if not user_id:
                return self._unauthorized()
            tracker = self.sync_manager.job_tracker
            if not tracker.has_kind(kind):
                return jsonify({"error": f"Unknown job kind: {kind}"}), 404
            job = tracker.get_status(user_id, kind)
            return jsonify(job_status_payload(job, stale=bool(job and tracker.is_stale(job))))

        @self.app.route('/api/jobs/<kind>', methods=['POST'])
        def start_job(kind: str):
            return register_job(kind, request.get_json(silent=True) or {})

        @self.app.route('/api/jobs/<kind>', methods=['GET'])
        def job_status(kind: str):
            return get_job(kind)

        @self.app.route('/api/onboarding/notion/credentials', methods=['PUT'])
        def save_notion_credentials():
            """Store the Notion access token used by template provisioning."""
            user_id = self._current_user()
            if not user_id:
                return self._unauthorized()
            body = request.get_json(silent=True) or {}
            access_token = body.get("accessToken")
            if not access_token:
                return jsonify({"error": "accessToken is required"}), 400
            self.sync_manager.orchestrator.credential_store.save(user_id, NOTION_SERVICE, access_token)
            return jsonify({"success": True})

        @self.app.route('/api/onboarding/install-template', methods=['POST'])
        def install_template():
            body = request.get_json(silent=True) or {}
            template_pack_id = body.get("templatePackId")
            if not template_pack_id:
                return jsonify({"error": "templatePackId is required"}), 400
            return register_job(TEMPLATE_JOB_KIND, {"templatePackId": template_pack_id})

        @self.app.route('/api/onboarding/install-template', methods=['GET'])
        def install_template_status():
            return get_job(TEMPLATE_JOB_KIND)

        @self.app.route('/api/onboarding/templates', methods=['GET'])
        def list_templates():
            return jsonify({"templates": self.sync_manager.template_catalog.list_active()})

        # ------------------------------------------------------------------
        # Diagnostics

        @self.app.route('/admin/scheduler_status')
        def scheduler_status():
            return jsonify(self.sync_manager.scheduler_manager.scheduler_status())
