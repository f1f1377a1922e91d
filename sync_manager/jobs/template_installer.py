"""
Notion template provisioning job.

Clones a catalog template (a parent page, its databases and its pages) into
the user's Notion workspace. Progress written to the job row:

* 10 when work starts
* 20 once the parent page exists
* 20-60 while databases are created
* 60-90 while pages are created
* 100 on completion (written by the tracker)

A database or page that fails to create is logged and skipped; failing to
find or create the parent page fails the whole job.
"""

import logging
import re
from typing import Any, Callable, Dict, List, Optional

import requests

from ..core.models import Job

logger = logging.getLogger(__name__)

NOTION_SERVICE = "notion"


class TemplateInstallError(Exception):
    """The template cannot be installed at all."""


class NotionAPIError(Exception):
    """A Notion REST call failed."""

    def __init__(self, message: str, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


def slugify(text: str) -> str:
    """``"Task Manager" -> "task_manager"``"""
    return re.sub(r"[^a-z0-9_]", "", re.sub(r"\s+", "_", text.lower()))


def _title(text: str) -> List[Dict[str, Any]]:
    return [{"type": "text", "text": {"content": text}}]


class NotionClient:
    """Minimal Notion REST client for page and database creation."""

    def __init__(
        self,
        access_token: str,
        *,
        base_url: str = "https://api.notion.com/v1",
        version: str = "2022-06-28",
        timeout: int = 30,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Notion-Version": version,
            "Content-Type": "application/json",
        })

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NotionAPIError(f"Notion request {path} failed: {exc}") from exc
        if response.status_code >= 400:
            try:
                message = response.json().get("message") or response.text
            except ValueError:
                message = response.text
            raise NotionAPIError(f"Notion {path} returned {response.status_code}: {message}", response.status_code)
        return response.json()

    def find_first_page(self) -> Optional[str]:
        data = self._post("/search", {"filter": {"property": "object", "value": "page"}, "page_size": 1})
        results = data.get("results") or []
        return results[0]["id"] if results else None

    def create_page(
        self,
        parent_page_id: str,
        title: str,
        *,
        icon: Optional[str] = None,
        children: Optional[List[Dict[str, Any]]] = None,
    ) -> str:
        payload: Dict[str, Any] = {
            "parent": {"type": "page_id", "page_id": parent_page_id},
            "properties": {"title": {"title": [{"text": {"content": title}}]}},
        }
        if icon:
            payload["icon"] = {"type": "emoji", "emoji": icon}
        if children:
            payload["children"] = children
        return self._post("/pages", payload)["id"]

    def create_database(
        self,
        parent_page_id: str,
        title: str,
        properties: Dict[str, Any],
        *,
        icon: Optional[str] = None,
    ) -> str:
        payload: Dict[str, Any] = {
            "parent": {"type": "page_id", "page_id": parent_page_id},
            "title": _title(title),
            "properties": properties,
        }
        if icon:
            payload["icon"] = {"type": "emoji", "emoji": icon}
        return self._post("/databases", payload)["id"]


class TemplateCatalog:
    """Read access to ``template_catalog``."""

    def __init__(self, db_manager: Any) -> None:
        self.db_manager = db_manager

    def get_active(self, template_pack_id: str) -> Optional[Dict[str, Any]]:
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT template_pack_id, name, description, template_structure
                    FROM template_catalog
                    WHERE template_pack_id = %s AND is_active
                    """,
                    (template_pack_id,),
                )
                row = cur.fetchone()
        return dict(row) if row else None

    def list_active(self) -> List[Dict[str, Any]]:
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT template_pack_id, name, description
                    FROM template_catalog
                    WHERE is_active
                    ORDER BY display_order, template_pack_id
                    """
                )
                return [dict(row) for row in cur.fetchall()]


class TemplateInstaller:
    """Work function for the ``template`` job kind.

    Args:
        catalog: Template lookup (``get_active``).
        credential_store: Source of the user's Notion access token.
        client_factory: Builds a :class:`NotionClient` from an access token.
    """

    def __init__(
        self,
        catalog: Any,
        credential_store: Any,
        client_factory: Callable[[str], NotionClient] = NotionClient,
    ) -> None:
        self.catalog = catalog
        self.credential_store = credential_store
        self.client_factory = client_factory

    def __call__(self, job: Job, report_progress: Callable[[int], None]) -> Dict[str, Any]:
        template_pack_id = job.params.get("templatePackId")
        if not template_pack_id:
            raise TemplateInstallError("templatePackId is required")

        template = self.catalog.get_active(template_pack_id)
        if template is None:
            raise TemplateInstallError(f"template '{template_pack_id}' not found or inactive")
        token = self.credential_store.get_token(job.user_id, NOTION_SERVICE)
        if not token:
            raise TemplateInstallError("Notion account not connected")

        logger.info("Installing template %s for %s", template_pack_id, job.user_id[:8])
        report_progress(10)
        notion = self.client_factory(token)
        structure = template.get("template_structure") or {}
        installed_ids: Dict[str, str] = {}

        anchor_page = notion.find_first_page()
        if anchor_page is None:
            raise TemplateInstallError("no pages found in the Notion workspace; create one page first")
        parent_page_id = notion.create_page(anchor_page, template["name"])
        installed_ids["parent_page_id"] = parent_page_id
        report_progress(20)

        databases = structure.get("databases") or []
        for index, database in enumerate(databases, start=1):
            name = database.get("name", f"Database {index}")
            try:
                db_id = notion.create_database(
                    parent_page_id, name, database.get("properties") or {}, icon=database.get("icon")
                )
                installed_ids[f"db_{slugify(name)}"] = db_id
            except NotionAPIError as exc:
                logger.error("Skipping database %s for template %s: %s", name, template_pack_id, exc)
            report_progress(round(20 + 40 * index / len(databases)))

        pages = structure.get("pages") or []
        for index, page in enumerate(pages, start=1):
            name = page.get("name", f"Page {index}")
            try:
                page_id = notion.create_page(
                    parent_page_id, name, icon=page.get("icon"), children=page.get("content") or []
                )
                installed_ids[f"page_{slugify(name)}"] = page_id
            except NotionAPIError as exc:
                logger.error("Skipping page %s for template %s: %s", name, template_pack_id, exc)
            report_progress(round(60 + 30 * index / len(pages)))

        logger.info(
            "Template %s installed for %s: %d item(s) created",
            template_pack_id, job.user_id[:8], len(installed_ids),
        )
        return {
            "templatePackId": template_pack_id,
            "installedIds": installed_ids,
            "notionWorkspaceUrl": f"https://notion.so/{parent_page_id.replace('-', '')}",
            "totalCreated": len(installed_ids),
        }
