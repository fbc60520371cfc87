"""Outbound issue-tracker calls: issue search for import and score comments.

These never touch room state; failures surface as TrackerError.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass
import logging
import re
from typing import TYPE_CHECKING, Any, Iterable

import httpx

from sprintplanio.backend.config import BackendSettings
from sprintplanio.backend.errors import TrackerError
from sprintplanio.backend.models import Ticket

if TYPE_CHECKING:
    from sprintplanio.backend.session import RoomSession

logger = logging.getLogger(__name__)

ISSUE_KEY_PATTERN = re.compile(r"^([A-Z]+-\d+):")
DEFAULT_JQL = "sprint in openSprints() AND assignee = currentUser()"
OAUTH_API_ROOT = "https://api.atlassian.com/ex/jira"
SEARCH_FIELDS = ["summary", "status", "issuetype"]


def parse_issue_key(title: str) -> str | None:
    """Return ``KEY-123`` from a ``KEY-123: summary`` title, if present."""
    match = ISSUE_KEY_PATTERN.match(title)
    return match.group(1) if match else None


def build_search_jql(base: str | None, query: str | None = None) -> str:
    base = base or DEFAULT_JQL
    if not query:
        return base
    return f'{base} AND (summary ~ "{query}*" OR key = "{query.upper()}")'


def score_comment(score: str) -> str:
    return f"Sprint Poker Score: {score}\n\nPowered by Sprint Planio 🚀"


@dataclass(frozen=True)
class TrackerCredentials:
    auth_type: str = "basic"
    domain: str | None = None
    email: str | None = None
    token: str | None = None
    access_token: str | None = None
    cloud_id: str | None = None

    @classmethod
    def from_settings(cls, settings: BackendSettings) -> "TrackerCredentials":
        return cls(
            auth_type=settings.tracker_auth_type,
            domain=settings.tracker_domain,
            email=settings.tracker_email,
            token=settings.tracker_token,
            access_token=settings.tracker_access_token,
            cloud_id=settings.tracker_cloud_id,
        )

    def api_root(self) -> str:
        if self.auth_type == "oauth":
            if not self.access_token or not self.cloud_id:
                raise TrackerError("Missing OAuth credentials", status_code=400)
            return f"{OAUTH_API_ROOT}/{self.cloud_id}/rest/api/3"
        if not self.domain or not self.email or not self.token:
            raise TrackerError("Missing Jira credentials", status_code=400)
        return f"https://{self.domain}/rest/api/3"

    def authorization(self) -> str:
        if self.auth_type == "oauth":
            return f"Bearer {self.access_token}"
        raw = f"{self.email}:{self.token}".encode("utf-8")
        return f"Basic {base64.b64encode(raw).decode('ascii')}"


def _error_message(response: httpx.Response, default: str) -> str:
    try:
        payload = response.json()
    except ValueError:
        return default
    messages = payload.get("errorMessages") if isinstance(payload, dict) else None
    if messages:
        return str(messages[0])
    return default


class TrackerClient:
    def __init__(
        self,
        credentials: TrackerCredentials,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.credentials = credentials
        self.timeout = timeout
        self._transport = transport

    async def _post(self, path: str, payload: dict[str, Any], failure: str) -> httpx.Response:
        url = f"{self.credentials.api_root()}{path}"
        headers = {
            "Authorization": self.credentials.authorization(),
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("tracker request to %s failed: %s", path, exc)
            raise TrackerError(failure, status_code=502) from exc
        if response.is_error:
            message = _error_message(response, failure)
            logger.warning("tracker answered %s for %s: %s", response.status_code, path, message)
            raise TrackerError(message, status_code=response.status_code)
        return response

    async def search_issues(self, jql: str | None = None, max_results: int = 20) -> list[dict[str, Any]]:
        response = await self._post(
            "/search/jql",
            {"jql": jql or DEFAULT_JQL, "fields": SEARCH_FIELDS, "maxResults": max_results},
            failure="Failed to fetch from Jira",
        )
        issues = response.json().get("issues", [])
        return [
            {
                "key": issue["key"],
                "summary": issue["fields"]["summary"],
                "status": issue["fields"]["status"]["name"],
                "type": issue["fields"]["issuetype"]["name"],
                "typeIcon": issue["fields"]["issuetype"].get("iconUrl"),
            }
            for issue in issues
        ]

    async def post_comment(self, issue_key: str, text: str) -> None:
        body = {
            "body": {
                "type": "doc",
                "version": 1,
                "content": [{"type": "paragraph", "content": [{"type": "text", "text": text}]}],
            }
        }
        await self._post(f"/issue/{issue_key}/comment", body, failure="Failed to post comment to Jira")
        logger.info("posted comment to %s", issue_key)

    async def post_score(self, ticket: Ticket) -> str:
        """Post a completed ticket's score to the issue named in its title."""
        issue_key = parse_issue_key(ticket.title)
        if issue_key is None:
            raise TrackerError("Ticket title has no issue key", status_code=400)
        if not ticket.score:
            raise TrackerError("No score to post", status_code=400)
        await self.post_comment(issue_key, score_comment(ticket.score))
        return issue_key


async def import_issues(session: "RoomSession", issues: Iterable[dict[str, Any]]) -> list[Ticket]:
    """Add one ``KEY: summary`` ticket per imported issue."""
    tickets: list[Ticket] = []
    for issue in issues:
        tickets.append(await session.add_ticket(f"{issue['key']}: {issue['summary']}"))
    return tickets
