#!/usr/bin/env python3
"""Post a Slack summary of open Dependabot pull requests."""
from __future__ import annotations

import sys
import time
from collections import defaultdict

import requests
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

GITHUB_SEARCH_URL = "https://api.github.com/search/issues"
GITHUB_REPO_API_BASE_URL = "https://api.github.com/repos/"
SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"
SEARCH_QUERY_BASE = "state:open type:pr author:app/dependabot"
REQUEST_TIMEOUT = 30
HTTP_ERROR_THRESHOLD = 400

REPORT_HEADER_TEXT = "*Currently opened dependabot pull request:*"
NO_PULL_REQUEST_TEXT = "🎉 *No opened dependabot pull request*"

MISSING_GITHUB_TOKEN_MESSAGE = (
    "Missing github authorization token. "
    "Set it with the environment variable GITHUB_TOKEN"
)
MISSING_SLACK_TOKEN_MESSAGE = (
    "Missing slack authorization token. "
    "Set it with the environment variable SLACK_TOKEN"
)
MISSING_SLACK_CHANNEL_MESSAGE = (
    "Missing slack channel id. Set it with the environment variable SLACK_CHANNEL"
)
MISSING_REPOSITORIES_MESSAGE = (
    "Missing github repositories to inspect. "
    "Set them comma-separated with the environment variable GITHUB_REPOSITORIES"
)

Block = dict[str, object]


class DigestError(RuntimeError):
    """Base error for a failed digest run."""


class ConfigurationError(DigestError):
    """Raised when a required environment variable is missing."""


class FetchError(DigestError):
    """Raised when the GitHub search fails."""


class PublishError(DigestError):
    """Raised when posting the Slack message fails."""


class Settings(BaseSettings):
    """Environment-backed settings for the digest."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    github_token: str | None = Field(default=None, alias="GITHUB_TOKEN")
    slack_token: str | None = Field(default=None, alias="SLACK_TOKEN")
    slack_channel: str | None = Field(default=None, alias="SLACK_CHANNEL")
    github_repositories: str | None = Field(default=None, alias="GITHUB_REPOSITORIES")


class RunConfig(BaseModel):
    """Validated configuration shared by every step of a run."""

    model_config = ConfigDict(frozen=True)

    github_token: str
    slack_token: str
    slack_channel: str
    repositories: tuple[str, ...]


class SearchItem(BaseModel):
    """Fields read from a GitHub issue search result."""

    title: str
    html_url: str
    repository_url: str


class PullRequestSummary(BaseModel):
    """Open dependency-update PR as shown in the report."""

    model_config = ConfigDict(frozen=True)

    title: str
    url: str
    repo: str


def get_settings() -> Settings:
    """Load settings from environment variables."""
    return Settings()


def resolve_run_config(settings: Settings) -> RunConfig:
    """Check required settings in order and build the run configuration."""
    if not settings.github_token:
        raise ConfigurationError(MISSING_GITHUB_TOKEN_MESSAGE)
    if not settings.slack_token:
        raise ConfigurationError(MISSING_SLACK_TOKEN_MESSAGE)
    if not settings.slack_channel:
        raise ConfigurationError(MISSING_SLACK_CHANNEL_MESSAGE)
    if not settings.github_repositories:
        raise ConfigurationError(MISSING_REPOSITORIES_MESSAGE)
    return RunConfig(
        github_token=settings.github_token,
        slack_token=settings.slack_token,
        slack_channel=settings.slack_channel,
        repositories=tuple(settings.github_repositories.split(",")),
    )


def log_elapsed(message: str, start: float, **fields: object) -> None:
    """Log elapsed time with additional fields."""
    elapsed = f"{time.perf_counter() - start:.2f}s"
    logger.info(
        "{message} (elapsed {elapsed})",
        message=message,
        elapsed=elapsed,
        **fields,
    )


def github_headers(token: str) -> dict[str, str]:
    """Return GitHub REST API headers with authentication."""
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/vnd.github+json",
        "X-GitHub-Api-Version": "2022-11-28",
    }


def slack_headers(token: str) -> dict[str, str]:
    """Return Slack Web API headers with authentication."""
    return {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json; charset=utf-8",
    }


def build_search_query(repositories: tuple[str, ...] | list[str]) -> str:
    """Build the GitHub search query for open Dependabot PRs."""
    repo_terms = " ".join(f"repo:{repo}" for repo in repositories)
    return f"{SEARCH_QUERY_BASE} {repo_terms}"


def repository_name_from_url(repository_url: str) -> str:
    """Return ``owner/name`` for a repository API URL."""
    return repository_url.removeprefix(GITHUB_REPO_API_BASE_URL)


def parse_search_item(item: object) -> PullRequestSummary:
    """Parse a PullRequestSummary from a search result item."""
    parsed = SearchItem.model_validate(item)
    return PullRequestSummary(
        title=parsed.title,
        url=parsed.html_url,
        repo=repository_name_from_url(parsed.repository_url),
    )


def fetch_dependabot_prs(
    token: str,
    repositories: tuple[str, ...] | list[str],
) -> list[PullRequestSummary]:
    """Fetch open Dependabot PRs for the given repositories."""
    query = build_search_query(repositories)
    logger.info("GitHub search query: {query}", query=query)
    try:
        response = requests.get(
            GITHUB_SEARCH_URL,
            headers=github_headers(token),
            params={"q": query},
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        msg = f"An error occurred when calling github api: {exc}"
        raise FetchError(msg) from exc
    if response.status_code >= HTTP_ERROR_THRESHOLD:
        msg = f"GitHub search failed ({response.status_code}): {response.text}"
        raise FetchError(msg)
    try:
        payload = response.json()
    except ValueError as exc:
        msg = f"GitHub search returned invalid JSON: {response.text}"
        raise FetchError(msg) from exc
    items = payload.get("items") if isinstance(payload, dict) else None
    if not isinstance(items, list):
        msg = f"GitHub search response missing items: {payload}"
        raise FetchError(msg)
    try:
        return [parse_search_item(item) for item in items]
    except ValidationError as exc:
        msg = f"Malformed pull request in GitHub search response: {exc}"
        raise FetchError(msg) from exc


def group_by_repository(
    pull_requests: list[PullRequestSummary],
) -> dict[str, list[PullRequestSummary]]:
    """Group PRs by repository, keeping fetch order within each group."""
    groups: dict[str, list[PullRequestSummary]] = defaultdict(list)
    for pr in pull_requests:
        groups[pr.repo].append(pr)
    return dict(groups)


def _section(text: str) -> Block:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _divider() -> Block:
    return {"type": "divider"}


def format_pull_requests_for_slack(
    pull_requests: list[PullRequestSummary],
) -> list[Block]:
    """Render PRs as Slack blocks, one pair of sections per repository."""
    if not pull_requests:
        return [_section(NO_PULL_REQUEST_TEXT)]
    blocks = [_section(REPORT_HEADER_TEXT), _divider()]
    groups = group_by_repository(pull_requests)
    for repo in sorted(groups):
        lines = [f"• <{pr.url}|{pr.title}>" for pr in groups[repo]]
        blocks.append(_section(f"*{repo}*"))
        blocks.append(_section("\n".join(lines)))
    return blocks


def post_slack_message(token: str, channel: str, blocks: list[Block]) -> None:
    """Post blocks to a Slack channel with chat.postMessage."""
    try:
        response = requests.post(
            SLACK_POST_MESSAGE_URL,
            headers=slack_headers(token),
            json={"channel": channel, "blocks": blocks},
            timeout=REQUEST_TIMEOUT,
        )
    except requests.RequestException as exc:
        msg = f"An error occurred when calling slack api: {exc}"
        raise PublishError(msg) from exc
    if response.status_code >= HTTP_ERROR_THRESHOLD:
        msg = f"Slack post failed ({response.status_code}): {response.text}"
        raise PublishError(msg)
    try:
        payload = response.json()
    except ValueError as exc:
        msg = f"Slack returned invalid JSON: {response.text}"
        raise PublishError(msg) from exc
    # chat.postMessage reports API errors with HTTP 200 and ok=false
    if not isinstance(payload, dict) or not payload.get("ok"):
        error = payload.get("error") if isinstance(payload, dict) else payload
        msg = f"Slack post failed: {error}"
        raise PublishError(msg)


def run_digest(config: RunConfig) -> None:
    """Fetch, format and publish the Dependabot report."""
    start = time.perf_counter()
    pull_requests = fetch_dependabot_prs(config.github_token, config.repositories)
    log_elapsed("Fetched PRs", start, count=len(pull_requests))
    blocks = format_pull_requests_for_slack(pull_requests)
    start = time.perf_counter()
    post_slack_message(config.slack_token, config.slack_channel, blocks)
    log_elapsed("Posted report to Slack", start, blocks=len(blocks))


def main() -> int:
    """Run the digest CLI."""
    load_dotenv()
    logger.info("Starting dependabot digest run")
    try:
        config = resolve_run_config(get_settings())
        run_digest(config)
    except DigestError as exc:
        logger.opt(exception=exc).error("Digest run failed: {error}", error=str(exc))
        return 1
    logger.info("Success!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
