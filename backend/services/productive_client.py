"""Productive API client: paginated fetches, comment enrichment, downloads."""

import asyncio
import logging
import re
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional
from urllib.parse import unquote, urlparse

import httpx

from config import settings
from errors import FetchExhaustedError
from models.productive import (
    Comment,
    CommentBundle,
    DownloadedFile,
    EnrichedComment,
    Person,
    Task,
    WorkflowStatus,
)
from services.cooldown import CooldownGate, cooldown_gate
from services.text_format import format_comment, html_to_plain_text

logger = logging.getLogger(__name__)

LogSink = Callable[[str, str], None]

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)
_FILENAME_STAR = re.compile(r"filename\*\s*=\s*(?:[\w-]+)?''([^;]+)", flags=re.IGNORECASE)
_FILENAME = re.compile(r'filename\s*=\s*"?([^";]+)"?', flags=re.IGNORECASE)


def _default_log(message: str, log_type: str = "info") -> None:
    if log_type == "error":
        logger.error(message)
    elif log_type == "warning":
        logger.warning(message)
    else:
        logger.info(message)


def looks_like_html(content_type: Optional[str], content: bytes) -> bool:
    """True when a 'file' download is really an HTML page (e.g. a login redirect)."""
    if content_type and "text/html" in content_type.lower():
        return True
    head = content[:512].lstrip().lower()
    return head.startswith(b"<!doctype html") or head.startswith(b"<html")


def filename_from_response(content_disposition: Optional[str], url: str) -> Optional[str]:
    """Filename from Content-Disposition, else the last URL path segment."""
    if content_disposition:
        match = _FILENAME_STAR.search(content_disposition)
        if match:
            return unquote(match.group(1).strip().strip('"'))
        match = _FILENAME.search(content_disposition)
        if match:
            return match.group(1).strip()
    segment = urlparse(url).path.rstrip("/").rsplit("/", 1)[-1]
    return unquote(segment) or None


class ProductiveClient:
    """Client for the Productive JSON:API.

    One instance per export job. All requests pass through the shared
    cooldown gate; the person cache lives on the instance so it is scoped
    to a single job's processing pass.
    """

    def __init__(
        self,
        api_token: str,
        organization_id: str,
        gate: Optional[CooldownGate] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_token = api_token
        self.organization_id = organization_id
        self.base_url = settings.productive_api_url.rstrip("/")
        self.gate = gate or cooldown_gate
        self.timeout = httpx.Timeout(settings.http_timeout_seconds)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._people: Dict[str, Person] = {}

    def _headers(self) -> dict:
        return {
            "X-Auth-Token": self.api_token,
            "X-Organization-Id": self.organization_id,
            "Content-Type": "application/vnd.api+json",
        }

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    # ========== Paginated fetch engine ==========

    async def fetch_all_pages(
        self,
        url: str,
        page_size: int,
        resource: str,
        log: Optional[LogSink] = None,
    ) -> List[dict]:
        """Fetch every page of a JSON:API collection.

        ``total_pages`` is re-read from every response since it can change
        during a long fetch. Each page gets ``fetch_max_retries`` attempts;
        every attempt first awaits the global cooldown gate, so a failure
        anywhere pauses the next attempt for the full cooldown window.
        """
        log = log or _default_log
        client = await self._get_client()
        max_retries = settings.fetch_max_retries
        all_data: List[dict] = []
        current_page = 1
        total_pages = 1

        while current_page <= total_pages:
            params = {"page[number]": current_page, "page[size]": page_size}
            retries = max_retries

            while True:
                await self.gate.wait(log)
                try:
                    response = await client.get(url, params=params, headers=self._headers())
                except httpx.HTTPError as e:
                    self.gate.mark_error()
                    retries -= 1
                    log(
                        f"Network error fetching {resource} page {current_page}: {e}. "
                        f"Retrying after {settings.cooldown_seconds:.0f}s cooldown...",
                        "error",
                    )
                    if retries == 0:
                        raise FetchExhaustedError(
                            f"Failed after {max_retries} retries: {e}",
                            resource=resource,
                            page=current_page,
                        ) from e
                    continue

                if not response.is_success:
                    self.gate.mark_error()
                    retries -= 1
                    log(
                        f"API error fetching {resource} page {current_page}: "
                        f"{response.status_code} {response.reason_phrase}. "
                        f"Retrying after {settings.cooldown_seconds:.0f}s cooldown...",
                        "error",
                    )
                    if retries == 0:
                        raise FetchExhaustedError(
                            f"API Error after {max_retries} retries: "
                            f"{response.status_code} {response.reason_phrase}",
                            resource=resource,
                            page=current_page,
                            status_code=response.status_code,
                        )
                    continue

                try:
                    payload = response.json()
                    if not isinstance(payload, dict):
                        raise ValueError("expected a JSON object")
                except ValueError as e:
                    self.gate.mark_error()
                    retries -= 1
                    log(
                        f"Invalid response fetching {resource} page {current_page}: {e}. "
                        f"Retrying after {settings.cooldown_seconds:.0f}s cooldown...",
                        "error",
                    )
                    if retries == 0:
                        raise FetchExhaustedError(
                            f"Invalid response after {max_retries} retries: {e}",
                            resource=resource,
                            page=current_page,
                            status_code=response.status_code,
                        ) from e
                    continue

                page_data = payload.get("data") or []
                all_data.extend(page_data)
                total_pages = (payload.get("meta") or {}).get("total_pages") or 1
                log(
                    f"Fetched {resource} page {current_page}/{total_pages} "
                    f"({len(page_data)} items, {len(all_data)} total)",
                    "info",
                )
                break

            current_page += 1
            if current_page <= total_pages:
                await asyncio.sleep(settings.page_delay_seconds)

        return all_data

    # ========== Resources ==========

    async def fetch_project_tasks(self, project_id: str, log: Optional[LogSink] = None) -> List[Task]:
        url = (
            f"{self.base_url}/tasks?filter[project_id]={project_id}"
            "&include=assignee,creator,last_actor,task_list,parent_task,workflow_status"
        )
        raw = await self.fetch_all_pages(url, settings.task_page_size, "tasks", log)
        return [Task.from_api_response(item) for item in raw]

    async def fetch_workflow_statuses(self, log: Optional[LogSink] = None) -> Dict[str, WorkflowStatus]:
        raw = await self.fetch_all_pages(
            f"{self.base_url}/workflow_statuses", settings.task_page_size, "workflow statuses", log
        )
        statuses = [WorkflowStatus.from_api_response(item) for item in raw]
        return {status.id: status for status in statuses}

    async def fetch_person_details(self, person_id: str, log: Optional[LogSink] = None) -> Person:
        """Resolve a person, cached per client. Failures degrade to 'Unknown'."""
        cached = self._people.get(person_id)
        if cached is not None:
            return cached

        log = log or _default_log
        client = await self._get_client()
        await self.gate.wait(log)
        try:
            response = await client.get(f"{self.base_url}/people/{person_id}", headers=self._headers())
            response.raise_for_status()
            person = Person.from_api_response(response.json().get("data") or {})
        except (httpx.HTTPError, ValueError) as e:
            self.gate.mark_error()
            log(f"Could not resolve person {person_id}: {e}", "warning")
            person = Person.unknown(person_id)

        self._people[person_id] = person
        return person

    async def fetch_task_comments(self, task_id: str, log: Optional[LogSink] = None) -> CommentBundle:
        """Fetch a task's comments with authors resolved, oldest first."""
        url = f"{self.base_url}/comments?filter[task_id]={task_id}"
        raw = await self.fetch_all_pages(
            url, settings.comment_page_size, f"comments for task {task_id}", log
        )
        if not raw:
            return CommentBundle()

        comments = [Comment.from_api_response(item) for item in raw]
        # sorted() is stable, so equal timestamps keep fetch order
        comments = sorted(comments, key=lambda c: c.created or _EPOCH)

        enriched = []
        for comment in comments:
            if comment.creator_id:
                author = await self.fetch_person_details(comment.creator_id, log)
            else:
                author = Person.unknown()
            body_text = html_to_plain_text(comment.body)
            enriched.append(
                EnrichedComment(
                    comment=comment,
                    author=author,
                    body_text=body_text,
                    display=format_comment(author, comment.created, body_text),
                )
            )
        return CommentBundle(comments=enriched)

    # ========== Downloads ==========

    def _is_productive_host(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        return host == "productive.io" or host.endswith(".productive.io")

    async def download_url_buffer(self, url: str, log: Optional[LogSink] = None) -> Optional[DownloadedFile]:
        """Download a binary attachment. Never raises; returns None on failure."""
        log = log or _default_log
        productive_host = self._is_productive_host(url)
        try:
            client = await self._get_client()
            await self.gate.wait(log)
            headers = {"X-Auth-Token": self.api_token} if productive_host else {}
            response = await client.get(url, headers=headers)
            if not response.is_success:
                if productive_host:
                    self.gate.mark_error()
                log(f"Download failed for {url}: {response.status_code}", "warning")
                return None
        except httpx.HTTPError as e:
            if productive_host:
                self.gate.mark_error()
            log(f"Download failed for {url}: {e}", "warning")
            return None

        content = response.content
        content_type = response.headers.get("content-type")
        if looks_like_html(content_type, content):
            log(f"Download of {url} returned an HTML page instead of a file, skipping", "warning")
            return None

        return DownloadedFile(
            content=content,
            content_type=content_type.split(";")[0].strip() if content_type else None,
            filename=filename_from_response(response.headers.get("content-disposition"), url),
        )
