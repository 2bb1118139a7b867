"""
GitHub provider.

Pull: repository events from the REST events API. Push: repository webhooks
signed with `X-Hub-Signature-256: sha256=<hmac>`. Backfill pages through
`/repos/{repo}/events` one repository at a time.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime
from typing import Any, Mapping

import httpx
import structlog

from spark.canonical.records import BlockData, ConvertedData, EventData, ObjectData
from spark.credentials.oauth import OAuthProviderConfig
from spark.integrations.config_schema import ConfigField, with_scheduling
from spark.integrations.models import Integration
from spark.kernel.errors import MalformedPayload
from spark.kernel.time import isoformat_z, utc_now
from spark.migrations.cursors import MigrationContext, Page, repo_pages_context
from spark.plugins.contracts import Capability, PluginContext, ProviderPlugin, WebhookChunk
from spark.ratelimit.backoff import GITHUB_POLICY

logger = structlog.get_logger()

GITHUB_API_URL = "https://api.github.com"

# Config label -> events API type
EVENT_TYPES = {
    "push": "PushEvent",
    "pull_request": "PullRequestEvent",
    "issue": "IssuesEvent",
    "commit_comment": "CommitCommentEvent",
}

# X-GitHub-Event header -> events API type
_DELIVERY_TYPES = {
    "push": "PushEvent",
    "pull_request": "PullRequestEvent",
    "issues": "IssuesEvent",
}

DEFAULT_EVENTS = ["push", "pull_request"]


def parse_repositories(raw: Any) -> list[str]:
    """`owner/repo` names from a list or a comma/newline separated string."""
    if isinstance(raw, str):
        raw = raw.replace("\n", ",").split(",")
    if not isinstance(raw, list):
        return []
    return [str(item).strip() for item in raw if str(item).strip()]


def parse_event_types(raw: Any) -> set[str]:
    """GitHub event types from configured labels such as `push` or `PushEvent`."""
    if isinstance(raw, str):
        raw = raw.replace("\n", ",").split(",")
    if not isinstance(raw, list):
        return set()
    labels = (str(item).strip() for item in raw)
    return {EVENT_TYPES.get(label.lower(), label) for label in labels if label}


def signature_for(body: bytes, secret: str) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def _actor(data: dict[str, Any]) -> ObjectData:
    actor = data.get("actor") or {}
    login = actor.get("login") or "Unknown User"
    return ObjectData(
        concept="user",
        type="github_user",
        title=login,
        content=login,
        metadata={"github_id": actor.get("id"), "avatar_url": actor.get("avatar_url")},
        url=actor.get("html_url") or (f"https://github.com/{actor['login']}" if actor.get("login") else None),
        media_url=actor.get("avatar_url"),
    )


def _repository_name(data: dict[str, Any]) -> str:
    repo = data.get("repo") or {}
    return repo.get("full_name") or repo.get("name") or "unknown/repository"


class GitHubPlugin(ProviderPlugin):
    identifier = "github"
    display_name = "GitHub"
    description = "Pushes, pull requests and issues from your repositories"
    domain = "online"
    capabilities = frozenset({Capability.OAUTH, Capability.WEBHOOK})
    instance_types = {"activity": "Activity"}
    base_url = GITHUB_API_URL
    rate_limit_policy = GITHUB_POLICY
    migration_mode = "chain"
    signature_header = "X-Hub-Signature-256"

    @property
    def is_pull(self) -> bool:
        # Webhooks deliver in real time, polling fills the gaps.
        return True

    def configuration_schema(self) -> dict[str, ConfigField]:
        return with_scheduling(
            {
                "repositories": ConfigField(
                    type="array",
                    label="Repositories (owner/repo)",
                    required=True,
                ),
                "events": ConfigField(
                    type="array",
                    label="Events to track",
                    options={
                        "push": "Push",
                        "pull_request": "Pull request",
                        "issue": "Issue",
                        "commit_comment": "Commit comment",
                    },
                    default=list(DEFAULT_EVENTS),
                ),
            }
        )

    def oauth_config(self, settings) -> OAuthProviderConfig:
        return OAuthProviderConfig(
            client_id=settings.github_client_id,
            client_secret=settings.github_client_secret,
            authorization_url="https://github.com/login/oauth/authorize",
            token_url="https://github.com/login/oauth/access_token",
            default_scopes=["repo", "read:user"],
            supports_refresh=False,
        )

    async def fetch_account_identity(self, http: httpx.AsyncClient, access_token: str) -> str | None:
        response = await http.get(
            f"{GITHUB_API_URL}/user",
            headers={"Authorization": f"Bearer {access_token}", **self.default_headers()},
        )
        if response.status_code != 200:
            logger.warning("GitHub identity lookup failed", status_code=response.status_code)
            return None
        return response.json().get("login")

    def default_headers(self) -> dict[str, str]:
        return {"Accept": "application/vnd.github+json", "X-GitHub-Api-Version": "2022-11-28"}

    def allowed_types(self, integration: Integration) -> set[str]:
        return parse_event_types(integration.configuration.get("events") or DEFAULT_EVENTS)

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def fetch_data(self, ctx: PluginContext, integration: Integration, fetch_type: str) -> list[dict[str, Any]]:
        allowed = self.allowed_types(integration)
        items: list[dict[str, Any]] = []
        async with self.client(ctx, integration) as client:
            for repo in parse_repositories(integration.configuration.get("repositories")):
                events = await client.get_json(f"/repos/{repo}/events", headers=self.default_headers())
                for event in events or []:
                    if isinstance(event, dict) and event.get("type") in allowed:
                        items.append(event)
        logger.info("GitHub events fetched", integration_id=integration.id, count=len(items))
        return items

    def convert_data(self, item: dict[str, Any], integration: Integration, data_type: str) -> ConvertedData:
        converters = {
            "PushEvent": self._convert_push,
            "PullRequestEvent": self._convert_pull_request,
            "IssuesEvent": self._convert_issue,
        }
        converter = converters.get(item.get("type", ""))
        if converter is None or item.get("type") not in self.allowed_types(integration):
            return ConvertedData()
        for key in ("id", "created_at", "actor", "repo"):
            if not item.get(key):
                raise MalformedPayload(meta={"missing": key, "type": item.get("type")})
        return ConvertedData(events=[converter(item)])

    def _convert_push(self, data: dict[str, Any]) -> EventData:
        repo = data["repo"]
        payload = data.get("payload") or {}
        commits = payload.get("commits") or []
        return EventData(
            source_id=str(data["id"]),
            time=data["created_at"],
            service=self.identifier,
            domain=self.domain,
            action="push",
            value=len(commits),
            value_unit="commits",
            metadata={"ref": payload.get("ref"), "before": payload.get("before"), "after": payload.get("head") or payload.get("after")},
            actor=_actor(data),
            target=ObjectData(
                concept="repository",
                type="github_repo",
                title=repo.get("name") or _repository_name(data),
                content=repo.get("description") or "",
                metadata={"github_id": repo.get("id"), "full_name": _repository_name(data)},
                url=repo.get("html_url") or f"https://github.com/{_repository_name(data)}",
            ),
            blocks=[
                BlockData(
                    title=f"Commit: {str(commit.get('sha', ''))[:7]}",
                    metadata={"message": commit.get("message")},
                    url=commit.get("url"),
                    block_type="commit",
                    value=1,
                    value_unit="commit",
                )
                for commit in commits
            ],
        )

    def _convert_pull_request(self, data: dict[str, Any]) -> EventData:
        payload = data.get("payload") or {}
        pr = payload.get("pull_request")
        if not isinstance(pr, dict) or not payload.get("action"):
            raise MalformedPayload(meta={"missing": "payload.pull_request", "type": data.get("type")})
        repository = _repository_name(data)
        return EventData(
            source_id=str(data["id"]),
            time=data["created_at"],
            service=self.identifier,
            domain=self.domain,
            action=payload["action"],
            value=1,
            value_unit="pull_request",
            metadata={"repository": repository, "number": pr.get("number")},
            actor=_actor(data),
            target=ObjectData(
                concept="pull_request",
                type="github_pr",
                title=pr.get("title") or "Untitled Pull Request",
                content=pr.get("body") or "",
                metadata={
                    "github_id": pr.get("id"),
                    "number": pr.get("number"),
                    "state": pr.get("state", "unknown"),
                    "repository": repository,
                },
                url=pr.get("html_url"),
            ),
        )

    def _convert_issue(self, data: dict[str, Any]) -> EventData:
        payload = data.get("payload") or {}
        issue = payload.get("issue")
        if not isinstance(issue, dict) or not payload.get("action"):
            raise MalformedPayload(meta={"missing": "payload.issue", "type": data.get("type")})
        repository = _repository_name(data)
        return EventData(
            source_id=str(data["id"]),
            time=data["created_at"],
            service=self.identifier,
            domain=self.domain,
            action=payload["action"],
            value=1,
            value_unit="issue",
            metadata={"repository": repository, "number": issue.get("number")},
            actor=_actor(data),
            target=ObjectData(
                concept="issue",
                type="github_issue",
                title=issue.get("title") or "Untitled Issue",
                content=issue.get("body") or "",
                metadata={
                    "github_id": issue.get("id"),
                    "number": issue.get("number"),
                    "state": issue.get("state", "unknown"),
                    "repository": repository,
                },
                url=issue.get("html_url"),
            ),
        )

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, integration: Integration, body: bytes, headers: Mapping[str, str]) -> bool:
        provided = _header(headers, self.signature_header or "")
        secret = integration.account_id
        if not provided or not secret:
            return False
        return hmac.compare_digest(signature_for(body, secret), provided)

    def split_webhook(self, integration: Integration, payload: Any, headers: Mapping[str, str]) -> list[WebhookChunk]:
        if not isinstance(payload, dict):
            raise MalformedPayload(message="GitHub webhook body must be an object")
        event_name = _header(headers, "X-GitHub-Event") or "push"
        if "type" in payload and "actor" in payload:
            item = payload
        else:
            item = self._event_from_delivery(event_name, _header(headers, "X-GitHub-Delivery"), payload)
        if item is None or item.get("type") not in self.allowed_types(integration):
            logger.info("Ignoring GitHub delivery", event=event_name, integration_id=integration.id)
            return []
        return [WebhookChunk(data_type=item["type"], items=[item])]

    def _event_from_delivery(
        self, event_name: str, delivery_id: str | None, payload: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Reshape a webhook delivery into the events API format."""
        event_type = _DELIVERY_TYPES.get(event_name)
        if event_type is None or not delivery_id:
            return None
        subject = payload.get("pull_request") or payload.get("issue") or payload.get("head_commit") or {}
        created_at = subject.get("updated_at") or subject.get("timestamp") or isoformat_z(utc_now())
        body = dict(payload)
        if event_type == "PushEvent":
            body["head"] = payload.get("after")
        return {
            "id": delivery_id,
            "type": event_type,
            "actor": payload.get("sender") or {},
            "repo": payload.get("repository") or {},
            "payload": body,
            "created_at": created_at,
        }

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    def migration_contexts(
        self, integration: Integration, *, now: datetime, timebox_until: datetime | None
    ) -> list[MigrationContext]:
        repositories = parse_repositories(integration.configuration.get("repositories"))
        if not repositories:
            return []
        return [
            repo_pages_context(
                service=self.identifier,
                integration_id=integration.id,
                instance_type=integration.instance_type or "activity",
                resources=repositories,
                timebox_until=timebox_until,
            )
        ]

    async def fetch_page(self, ctx: PluginContext, integration: Integration, context: MigrationContext) -> Page:
        repo = context.resources[int(context.cursor.get("repo_index", 0))]
        async with self.client(ctx, integration) as client:
            events = await client.get_json(
                f"/repos/{repo}/events",
                params={"per_page": 100, "page": int(context.cursor.get("page", 1))},
                headers=self.default_headers(),
            )
        # Unfiltered, so a page of other event types does not end paging early.
        return Page(items=[event for event in events or [] if isinstance(event, dict)])


def _header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name.lower():
            return value
    return None
