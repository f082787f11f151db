"""Linear GraphQL client: idempotent issue replication and batched mutations."""

import asyncio
import json
import logging
import re
import time
from typing import Dict, List, Optional

import httpx

from config import settings
from errors import AuthenticationError, ExporterError, GraphQLError, RateLimitError
from models.linear import GraphQLOperation, LinearIssue, LinearState
from models.productive import DownloadedFile
from services.text_format import strip_markdown_links

logger = logging.getLogger(__name__)


def _is_auth_error(errors: list) -> bool:
    return any(
        ((error.get("extensions") or {}).get("code") or "").upper() == "AUTHENTICATION_ERROR"
        for error in errors
    )


def _is_rate_limited(errors: list, status_code: int) -> bool:
    if status_code == 429:
        return True
    for error in errors:
        code = ((error.get("extensions") or {}).get("code") or "").upper()
        if code == "RATELIMITED" or "Rate limit exceeded" in (error.get("message") or ""):
            return True
    return False


def _describe_errors(errors: list) -> str:
    parts = []
    for error in errors:
        text = error.get("message") or "Unknown error"
        if error.get("path"):
            text += f" (path: {'.'.join(str(p) for p in error['path'])})"
        if error.get("extensions"):
            text += f" [{json.dumps(error['extensions'])}]"
        parts.append(text)
    return "; ".join(parts)


def rate_limit_wait_seconds(headers: httpx.Headers, errors: list, now: Optional[float] = None) -> float:
    """Seconds to wait before the single rate-limit retry.

    Prefers the ``X-RateLimit-Requests-Reset`` header (epoch millis), then the
    duration reported in the error extensions, then the configured default.
    """
    reset_header = headers.get("X-RateLimit-Requests-Reset")
    if reset_header:
        try:
            reset_ms = int(reset_header)
            now_ms = (now if now is not None else time.time()) * 1000
            return max(0.0, (reset_ms - now_ms) / 1000)
        except ValueError:
            pass
    for error in errors:
        meta = ((error.get("extensions") or {}).get("meta") or {}).get("rateLimitResult") or {}
        duration = meta.get("duration")
        if duration:
            return float(duration) / 1000
    return settings.linear_rate_limit_default_seconds


def build_batch_mutation(operations: List[GraphQLOperation]) -> tuple:
    """Combine aliased operations into one mutation with renamed variables."""
    definitions = []
    fields = []
    variables = {}
    for op in operations:
        body = op.field
        for name, (gql_type, value) in op.variables.items():
            unique = f"{op.alias}_{name}"
            body = re.sub(rf"\${name}\b", f"${unique}", body)
            definitions.append(f"${unique}: {gql_type}")
            variables[unique] = value
        fields.append(f"{op.alias}: {body}")

    header = f"({', '.join(definitions)})" if definitions else ""
    query = f"mutation Batch{header} {{\n  " + "\n  ".join(fields) + "\n}"
    return query, variables


def build_single_mutation(op: GraphQLOperation) -> tuple:
    definitions = [f"${name}: {gql_type}" for name, (gql_type, _) in op.variables.items()]
    header = f"({', '.join(definitions)})" if definitions else ""
    query = f"mutation{header} {{ {op.alias}: {op.field} }}"
    return query, {name: value for name, (_, value) in op.variables.items()}


class LinearClient:
    """Client for the Linear GraphQL API.

    Uses a shared httpx.AsyncClient for connection pooling.
    """

    def __init__(
        self,
        api_key: str,
        team_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key
        self.team_id = team_id
        self.url = settings.linear_api_url
        self.timeout = httpx.Timeout(settings.http_timeout_seconds)
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        # Rate limit monitoring
        self.rate_limit_hits = 0
        self._request_count = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create shared HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def graphql(self, query: str, variables: Optional[dict] = None, _retry: int = 0) -> dict:
        """Run a GraphQL request; a rate-limited request is retried exactly once."""
        client = await self._get_client()
        self._request_count += 1
        response = await client.post(
            self.url,
            json={"query": query, "variables": variables or {}},
            headers={"Authorization": self.api_key, "Content-Type": "application/json"},
        )
        if response.status_code in (401, 403):
            raise AuthenticationError(
                f"Linear authentication failed: {response.status_code} {response.reason_phrase}"
            )

        try:
            payload = response.json()
        except ValueError:
            if response.status_code == 429:
                payload = {}
            else:
                raise GraphQLError(
                    f"Invalid response from Linear: {response.status_code} {response.reason_phrase}",
                    status_code=response.status_code,
                )

        errors = payload.get("errors") or []
        if errors or response.status_code == 429:
            if _is_rate_limited(errors, response.status_code):
                self.rate_limit_hits += 1
                wait = rate_limit_wait_seconds(response.headers, errors)
                if _retry < 1:
                    logger.warning(
                        f"Linear rate limit exceeded. Waiting {wait / 60:.1f} minutes "
                        f"({wait:.0f} seconds) before retry..."
                    )
                    await asyncio.sleep(wait)
                    return await self.graphql(query, variables, _retry=_retry + 1)
                raise RateLimitError("Linear rate limit exceeded after retry", retry_after=wait)
            if _is_auth_error(errors):
                raise AuthenticationError(f"Linear authentication failed: {_describe_errors(errors)}")
            raise GraphQLError(
                f"GraphQL errors: {_describe_errors(errors)}",
                errors=errors,
                status_code=response.status_code,
            )

        return payload.get("data") or {}

    async def batch_operations(self, operations: List[GraphQLOperation]) -> Dict[str, Optional[dict]]:
        """Run aliased mutations in one request, falling back to one-by-one.

        Returns alias -> field result (None for an operation that failed in
        the fallback path).
        """
        if not operations:
            return {}
        if len(operations) == 1:
            op = operations[0]
            query, variables = build_single_mutation(op)
            data = await self.graphql(query, variables)
            return {op.alias: data.get(op.alias)}

        query, variables = build_batch_mutation(operations)
        try:
            data = await self.graphql(query, variables)
            return {op.alias: data.get(op.alias) for op in operations}
        except (GraphQLError, httpx.HTTPError) as e:
            logger.warning(f"Batch operations failed, falling back to individual calls: {e}")

        results: Dict[str, Optional[dict]] = {}
        for op in operations:
            query, variables = build_single_mutation(op)
            try:
                data = await self.graphql(query, variables)
                results[op.alias] = data.get(op.alias)
            except (GraphQLError, httpx.HTTPError) as e:
                logger.error(f"Individual operation {op.alias} failed: {e}")
                results[op.alias] = None
        return results

    # ========== Auth / metadata ==========

    async def test_auth(self) -> dict:
        if not self.api_key:
            return {"authenticated": False, "error": "No API key provided"}
        try:
            data = await self.graphql("query { viewer { id name email } }")
            return {"authenticated": True, "user": data.get("viewer")}
        except (ExporterError, httpx.HTTPError) as e:
            return {"authenticated": False, "error": str(e)}

    async def get_teams(self) -> List[dict]:
        data = await self.graphql("query { teams { nodes { id name key } } }")
        return (data.get("teams") or {}).get("nodes") or []

    async def get_team_states(self, team_id: Optional[str] = None) -> List[LinearState]:
        query = """query TeamStates($teamId: String!) {
          team(id: $teamId) { states { nodes { id name type color } } }
        }"""
        data = await self.graphql(query, {"teamId": team_id or self.team_id})
        nodes = ((data.get("team") or {}).get("states") or {}).get("nodes") or []
        return [LinearState.from_api_response(node) for node in nodes]

    # ========== Issues ==========

    async def create_issue(
        self,
        title: str,
        description: str,
        state_id: Optional[str] = None,
        team_id: Optional[str] = None,
    ) -> Optional[LinearIssue]:
        query = """mutation IssueCreate($input: IssueCreateInput!) {
          issueCreate(input: $input) { success issue { id identifier url } }
        }"""
        issue_input = {"teamId": team_id or self.team_id, "title": title, "description": description}
        if state_id:
            issue_input["stateId"] = state_id
        data = await self.graphql(query, {"input": issue_input})
        issue = (data.get("issueCreate") or {}).get("issue")
        return LinearIssue.from_api_response(issue) if issue else None

    async def find_issue_by_origin_url(self, origin_url: str, team_id: Optional[str] = None) -> Optional[LinearIssue]:
        query = """query Issues($filter: IssueFilter!) {
          issues(filter: $filter) { nodes { id identifier title description } }
        }"""
        issue_filter = {
            "team": {"id": {"eq": team_id or self.team_id}},
            "description": {"contains": origin_url},
        }
        data = await self.graphql(query, {"filter": issue_filter})
        nodes = (data.get("issues") or {}).get("nodes") or []
        return LinearIssue.from_api_response(nodes[0]) if nodes else None

    async def delete_issue(self, issue_id: str) -> bool:
        query = """mutation IssueDelete($issueId: String!) {
          issueDelete(id: $issueId) { success }
        }"""
        data = await self.graphql(query, {"issueId": issue_id})
        return (data.get("issueDelete") or {}).get("success") is True

    async def update_issue(
        self, issue_id: str, title: Optional[str] = None, description: Optional[str] = None
    ) -> Optional[LinearIssue]:
        query = """mutation IssueUpdate($issueId: String!, $input: IssueUpdateInput!) {
          issueUpdate(id: $issueId, input: $input) { success issue { id identifier url } }
        }"""
        update_input = {}
        if title:
            update_input["title"] = title
        if description:
            update_input["description"] = description
        data = await self.graphql(query, {"issueId": issue_id, "input": update_input})
        issue = (data.get("issueUpdate") or {}).get("issue")
        return LinearIssue.from_api_response(issue) if issue else None

    async def create_or_replace(
        self,
        title: str,
        description: str,
        state_id: Optional[str],
        origin_url: str,
        skip_duplicate_check: bool = False,
    ) -> Optional[LinearIssue]:
        """Create an issue, first deleting any issue already mirroring ``origin_url``.

        Replace is delete + create, so the replaced issue's identifier and
        history are not preserved.
        """
        if not skip_duplicate_check:
            existing = await self.find_issue_by_origin_url(origin_url)
            if existing:
                logger.info(f"Replacing existing Linear issue {existing.identifier or existing.id} for {origin_url}")
                await self.delete_issue(existing.id)
        return await self.create_issue(title, description, state_id)

    async def archive_issue(self, issue_id: str) -> bool:
        query = """mutation IssueArchive($issueId: String!) {
          issueArchive(id: $issueId) { success }
        }"""
        data = await self.graphql(query, {"issueId": issue_id})
        return (data.get("issueArchive") or {}).get("success") is True

    async def archive_issues(self, issue_ids: List[str]) -> List[bool]:
        """Archive several issues in one aliased request; per-issue results."""
        if not issue_ids:
            return []
        if len(issue_ids) == 1:
            return [await self.archive_issue(issue_ids[0])]

        operations = [
            GraphQLOperation(
                alias=f"archive{index}",
                field="issueArchive(id: $issueId) { success }",
                variables={"issueId": ("String!", issue_id)},
            )
            for index, issue_id in enumerate(issue_ids)
        ]
        results = await self.batch_operations(operations)
        return [(results.get(op.alias) or {}).get("success") is True for op in operations]

    # ========== Comments ==========

    async def add_comment(self, issue_id: str, body: str) -> bool:
        query = """mutation CommentCreate($input: CommentCreateInput!) {
          commentCreate(input: $input) { success comment { id } }
        }"""
        data = await self.graphql(query, {"input": {"issueId": issue_id, "body": body}})
        return (data.get("commentCreate") or {}).get("success") is True

    async def add_comments(self, issue_id: str, bodies: List[str]) -> List[bool]:
        """Add comments in the given order via one aliased request."""
        if not bodies:
            return []
        if len(bodies) == 1:
            return [await self.add_comment(issue_id, bodies[0])]

        operations = [
            GraphQLOperation(
                alias=f"comment{index}",
                field="commentCreate(input: $input) { success comment { id } }",
                variables={"input": ("CommentCreateInput!", {"issueId": issue_id, "body": body})},
            )
            for index, body in enumerate(bodies)
        ]
        results = await self.batch_operations(operations)
        return [(results.get(op.alias) or {}).get("success") is True for op in operations]

    async def add_attachment_link_as_comment(self, issue_id: str, url: str, filename: Optional[str] = None) -> bool:
        clean_url = strip_markdown_links(url)
        display_name = filename if filename and filename != clean_url else ""
        body = f"Attachment: {display_name} - {clean_url}" if display_name else f"Attachment: {clean_url}"
        return await self.add_comment(issue_id, body)

    # ========== Attachments ==========

    async def create_attachment(self, issue_id: str, url: str, title: Optional[str] = None) -> Optional[str]:
        """Attach a URL to an issue; returns the attachment id."""
        query = """mutation AttachmentCreate($input: AttachmentCreateInput!) {
          attachmentCreate(input: $input) { success attachment { id } }
        }"""
        data = await self.graphql(
            query, {"input": {"issueId": issue_id, "url": url, "title": title or url}}
        )
        attachment = (data.get("attachmentCreate") or {}).get("attachment")
        return attachment.get("id") if attachment else None

    async def upload_file(self, file: DownloadedFile, filename: str) -> str:
        """Upload bytes to Linear storage; returns the asset URL."""
        query = """mutation FileUpload($contentType: String!, $filename: String!, $size: Int!) {
          fileUpload(contentType: $contentType, filename: $filename, size: $size) {
            success
            uploadFile { uploadUrl assetUrl headers { key value } }
          }
        }"""
        content_type = file.content_type or "application/octet-stream"
        data = await self.graphql(
            query, {"contentType": content_type, "filename": filename, "size": len(file.content)}
        )
        upload = (data.get("fileUpload") or {}).get("uploadFile") or {}
        upload_url = upload.get("uploadUrl")
        asset_url = upload.get("assetUrl")
        if not upload_url or not asset_url:
            raise GraphQLError("Linear did not return an upload URL")

        headers = {"Content-Type": content_type, "Cache-Control": "public, max-age=31536000"}
        for header in upload.get("headers") or []:
            key = (header or {}).get("key")
            if not key:
                raise GraphQLError("Linear returned a malformed upload header")
            headers[key] = header.get("value") or ""

        client = await self._get_client()
        response = await client.put(upload_url, content=file.content, headers=headers)
        response.raise_for_status()
        return asset_url

    async def create_attachment_from_buffer(self, issue_id: str, file: DownloadedFile, filename: str) -> Optional[str]:
        asset_url = await self.upload_file(file, filename)
        return await self.create_attachment(issue_id, asset_url, filename)
