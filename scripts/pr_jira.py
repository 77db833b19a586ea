#!/usr/bin/env python3
"""Annotate a pull request with the Jira tickets referenced by its commits."""
from __future__ import annotations

import argparse
import base64
import concurrent.futures
import json
import re
import sys
import time
from collections.abc import Callable, Iterable
from pathlib import Path
from typing import cast

import requests
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

DEFAULT_GITHUB_API_URL = "https://api.github.com"
DEFAULT_TICKET_PATTERN = "RC-[^ ]*"
DEFAULT_GROUPING_TYPE = "Story"
REPORT_HEADER = "### Related Jira Issues"
OTHER_ISSUES_HEADER = "#### Other Issues"
MISSING_CHILDREN_HEADER = "#### Missing Child Issues"
JIRA_ISSUE_FIELDS = "issuetype,summary,parent"
JIRA_CHILD_FIELDS = "issuetype,summary"
# Offset-paged search; Jira Cloud is retiring it in favour of /search/jql.
JIRA_SEARCH_PATH = "/rest/api/3/search"
JIRA_SEARCH_PAGE_SIZE = 100
GITHUB_COMMITS_PAGE_SIZE = 100
REQUEST_TIMEOUT_SECONDS = 30
HTTP_ERROR_THRESHOLD = 400
JSONDict = dict[str, object]
NOT_A_PULL_REQUEST_MESSAGE = "This action can only be run on pull request events"
MISSING_PR_NUMBER_MESSAGE = "Could not get pull request number from context"
MISSING_EVENT_PATH_MESSAGE = "GITHUB_EVENT_PATH is not set; cannot read event payload"
MISSING_REPOSITORY_MESSAGE = "Could not determine repository from context"
NO_TICKETS_MESSAGE = "No Jira ticket IDs found in commit messages"


class ConfigurationError(RuntimeError):
    """Raised when inputs or the workflow context make the run impossible."""


class GitHubRequestError(RuntimeError):
    """Raised when a GitHub REST request fails."""

    def __init__(self, status_code: int, text: str) -> None:
        """Create a GitHub request error."""
        super().__init__(f"GitHub request failed ({status_code}): {text}")


class Settings(BaseSettings):
    """Environment-backed settings for the pull request check."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    github_token: str = Field(alias="GITHUB_TOKEN")
    jira_base_url: str = Field(alias="JIRA_BASE_URL")
    jira_email: str = Field(alias="JIRA_EMAIL")
    jira_api_token: str = Field(alias="JIRA_API_TOKEN")
    jira_ticket_id_pattern: str = Field(
        default=DEFAULT_TICKET_PATTERN,
        alias="JIRA_TICKET_ID_PATTERN",
    )
    jira_grouping_type: str = Field(
        default=DEFAULT_GROUPING_TYPE,
        alias="JIRA_GROUPING_TYPE",
    )

    github_api_url: str = Field(default=DEFAULT_GITHUB_API_URL, alias="GITHUB_API_URL")
    github_repository: str | None = Field(default=None, alias="GITHUB_REPOSITORY")
    github_event_path: str | None = Field(default=None, alias="GITHUB_EVENT_PATH")

    @field_validator("jira_base_url", "github_api_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        """Drop trailing slashes so URLs can be joined with a leading slash."""
        return value.strip().rstrip("/")

    @field_validator("jira_ticket_id_pattern")
    @classmethod
    def default_blank_pattern(cls, value: str) -> str:
        """Treat an empty action input as the default pattern."""
        return value or DEFAULT_TICKET_PATTERN

    @field_validator("jira_grouping_type")
    @classmethod
    def default_blank_grouping_type(cls, value: str) -> str:
        """Treat an empty action input as the default grouping type."""
        return value.strip() or DEFAULT_GROUPING_TYPE


def get_settings() -> Settings:
    """Load settings from environment variables."""
    try:
        return Settings.model_validate({})
    except ValidationError as exc:
        names = ", ".join(str(error["loc"][0]) for error in exc.errors())
        message = f"Missing or invalid configuration: {names}"
        raise ConfigurationError(message) from exc


def log_elapsed(message: str, start: float, **fields: object) -> None:
    """Log elapsed time with additional fields."""
    elapsed = f"{time.perf_counter() - start:.2f}s"
    logger.info(
        "{message} (elapsed {elapsed})",
        message=message,
        elapsed=elapsed,
        **fields,
    )


def annotate(level: str, message: str) -> None:
    """Emit a GitHub Actions workflow annotation."""
    print(f"::{level}::{escape_annotation(message)}")


def escape_annotation(message: str) -> str:
    """Escape a workflow command message so it stays on one line."""
    return message.replace("%", "%25").replace("\r", "%0D").replace("\n", "%0A")


class ParentRef(BaseModel):
    """Parent ticket of the grouping type."""

    model_config = ConfigDict(frozen=True)

    key: str
    type: str
    title: str


class Issue(BaseModel):
    """Jira ticket resolved from a commit reference."""

    model_config = ConfigDict(frozen=True)

    key: str
    type: str
    title: str
    parent: ParentRef | None = None


class StoryGroup(BaseModel):
    """Committed tickets sharing one parent, in the order they were seen."""

    parent: ParentRef
    children: list[Issue] = Field(default_factory=list)


class Aggregation(BaseModel):
    """Grouped tickets, parentless tickets and uncommitted siblings."""

    groups: list[StoryGroup] = Field(default_factory=list)
    orphans: list[Issue] = Field(default_factory=list)
    missing_children: list[Issue] = Field(default_factory=list)


class PullRequestContext(BaseModel):
    """Pull request the run was triggered for."""

    repository: str
    number: int


class JiraIssueType(BaseModel):
    """Issue type block of a Jira payload."""

    name: str


class JiraParentFields(BaseModel):
    """Fields Jira reports for a parent ticket."""

    issuetype: JiraIssueType
    summary: str


class JiraParentPayload(BaseModel):
    """Parent reference embedded in a Jira issue."""

    key: str
    fields: JiraParentFields


class JiraIssueFields(BaseModel):
    """Fields requested from Jira for an issue."""

    issuetype: JiraIssueType
    summary: str
    parent: JiraParentPayload | None = None


class JiraIssuePayload(BaseModel):
    """Jira issue as returned by the REST API."""

    key: str
    fields: JiraIssueFields


class JiraSearchPayload(BaseModel):
    """Page of a Jira search response."""

    issues: list[JiraIssuePayload] = Field(default_factory=list)
    start_at: int = Field(default=0, alias="startAt")
    total: int | None = None


def github_headers(settings: Settings) -> dict[str, str]:
    """Return GitHub API headers with authentication."""
    return {
        "Authorization": f"Bearer {settings.github_token}",
        "Accept": "application/vnd.github+json",
    }


def jira_headers(settings: Settings) -> dict[str, str]:
    """Return Jira API headers with basic authentication."""
    credentials = f"{settings.jira_email}:{settings.jira_api_token}"
    encoded = base64.b64encode(credentials.encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {encoded}", "Accept": "application/json"}


def jira_link(key: str, base_url: str) -> str:
    """Return a Markdown link to a Jira ticket."""
    return f"[{key}]({base_url}/browse/{key})"


def build_ticket_regex(settings: Settings) -> re.Pattern[str]:
    """Build the ticket regex."""
    try:
        return re.compile(settings.jira_ticket_id_pattern)
    except re.error as exc:
        message = (
            f"Invalid Jira ticket ID pattern {settings.jira_ticket_id_pattern!r}: {exc}"
        )
        raise ConfigurationError(message) from exc


def extract_ticket_ids(messages: Iterable[str], regex: re.Pattern[str]) -> list[str]:
    """Return distinct ticket identifiers matched across commit messages."""
    found: dict[str, None] = {}
    for message in messages:
        for match in regex.finditer(message):
            ticket_id = match.group(0)
            if ticket_id:
                found.setdefault(ticket_id, None)
    return list(found)


def load_pull_request_context(settings: Settings) -> PullRequestContext:
    """Read the pull request number and repository from the event payload."""
    if not settings.github_event_path:
        raise ConfigurationError(MISSING_EVENT_PATH_MESSAGE)
    payload = json.loads(Path(settings.github_event_path).read_text(encoding="utf-8"))
    pull_request = payload.get("pull_request") if isinstance(payload, dict) else None
    if not isinstance(pull_request, dict):
        raise ConfigurationError(NOT_A_PULL_REQUEST_MESSAGE)
    number = pull_request.get("number")
    if not isinstance(number, int) or not number:
        raise ConfigurationError(MISSING_PR_NUMBER_MESSAGE)
    repository = settings.github_repository
    if not repository:
        repo_payload = payload.get("repository") or {}
        if isinstance(repo_payload, dict):
            repository = repo_payload.get("full_name")
    if not isinstance(repository, str) or not repository:
        raise ConfigurationError(MISSING_REPOSITORY_MESSAGE)
    return PullRequestContext(repository=repository, number=number)


def list_pr_commit_messages(
    settings: Settings,
    context: PullRequestContext,
) -> list[str]:
    """Return the commit messages of a pull request, oldest first."""
    url = (
        f"{settings.github_api_url}/repos/{context.repository}"
        f"/pulls/{context.number}/commits"
    )
    messages: list[str] = []
    page = 1
    while True:
        response = requests.get(
            url,
            headers=github_headers(settings),
            params={"per_page": GITHUB_COMMITS_PAGE_SIZE, "page": page},
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
        if response.status_code >= HTTP_ERROR_THRESHOLD:
            raise GitHubRequestError(response.status_code, response.text)
        commits = cast("list[JSONDict]", response.json())
        for commit in commits:
            details = cast("JSONDict", commit.get("commit") or {})
            message = details.get("message")
            if isinstance(message, str):
                messages.append(message)
        if len(commits) < GITHUB_COMMITS_PAGE_SIZE:
            return messages
        page += 1


def update_pr_description(
    settings: Settings,
    context: PullRequestContext,
    body: str,
) -> None:
    """Replace the pull request description."""
    url = f"{settings.github_api_url}/repos/{context.repository}/pulls/{context.number}"
    response = requests.patch(
        url,
        headers=github_headers(settings),
        json={"body": body},
        timeout=REQUEST_TIMEOUT_SECONDS,
    )
    if response.status_code >= HTTP_ERROR_THRESHOLD:
        raise GitHubRequestError(response.status_code, response.text)


def warn(message: str) -> None:
    """Log a degraded fetch and surface it as a workflow warning."""
    logger.warning(message)
    annotate("warning", message)


def get_jira_json(
    settings: Settings,
    path: str,
    params: dict[str, str | int],
) -> object | None:
    """GET a Jira endpoint and return the decoded body, or None on failure."""
    try:
        response = requests.get(
            f"{settings.jira_base_url}{path}",
            headers=jira_headers(settings),
            params=params,
            timeout=REQUEST_TIMEOUT_SECONDS,
        )
    except requests.RequestException as exc:
        logger.debug("Jira request error", path=path, error=str(exc))
        return None
    if response.status_code >= HTTP_ERROR_THRESHOLD:
        logger.debug("Jira request rejected", path=path, status=response.status_code)
        return None
    try:
        return response.json()
    except ValueError:
        return None


def fetch_jira_issue(settings: Settings, key: str) -> Issue | None:
    """Fetch a Jira ticket, or None when it cannot be resolved."""
    data = get_jira_json(
        settings,
        f"/rest/api/3/issue/{key}",
        {"fields": JIRA_ISSUE_FIELDS},
    )
    if data is None:
        warn(f"Unable to fetch info for {key}")
        return None
    try:
        payload = JiraIssuePayload.model_validate(data)
    except ValidationError:
        warn(f"Unexpected Jira response for {key}")
        return None

    fields = payload.fields
    parent = None
    if (
        fields.parent is not None
        and fields.parent.fields.issuetype.name == settings.jira_grouping_type
    ):
        parent = ParentRef(
            key=fields.parent.key,
            type=settings.jira_grouping_type,
            title=fields.parent.fields.summary,
        )
    return Issue(
        key=key,
        type=fields.issuetype.name,
        title=fields.summary,
        parent=parent,
    )


def fetch_jira_issues(settings: Settings, keys: list[str]) -> list[Issue]:
    """Fetch Jira tickets in parallel, dropping the ones that fail."""
    if not keys:
        return []
    with concurrent.futures.ThreadPoolExecutor() as executor:
        results = list(executor.map(lambda key: fetch_jira_issue(settings, key), keys))
    return [issue for issue in results if issue is not None]


def fetch_parent_children(settings: Settings, parent_key: str) -> list[Issue]:
    """List every ticket whose parent is parent_key, or [] on failure."""
    children: list[Issue] = []
    start_at = 0
    while True:
        data = get_jira_json(
            settings,
            JIRA_SEARCH_PATH,
            {
                "jql": f"parent={parent_key}",
                "fields": JIRA_CHILD_FIELDS,
                "startAt": start_at,
                "maxResults": JIRA_SEARCH_PAGE_SIZE,
            },
        )
        if data is None:
            warn(f"Unable to fetch children for {parent_key}")
            return []
        try:
            page = JiraSearchPayload.model_validate(data)
        except ValidationError:
            warn(f"Unexpected Jira response for children of {parent_key}")
            return []
        children.extend(
            Issue(key=item.key, type=item.fields.issuetype.name, title=item.fields.summary)
            for item in page.issues
        )
        start_at += len(page.issues)
        if not page.issues or page.total is None or start_at >= page.total:
            return children


def aggregate_issues(
    issues: list[Issue],
    committed_keys: set[str],
    fetch_children: Callable[[str], list[Issue]],
) -> Aggregation:
    """Group tickets by parent and find the parents' uncommitted children."""
    groups: dict[str, StoryGroup] = {}
    orphans: list[Issue] = []
    for issue in issues:
        if issue.parent is None:
            orphans.append(issue)
            continue
        group = groups.get(issue.parent.key)
        if group is None:
            group = StoryGroup(parent=issue.parent)
            groups[issue.parent.key] = group
        group.children.append(issue)

    missing_children: list[Issue] = []
    if groups:
        with concurrent.futures.ThreadPoolExecutor() as executor:
            # map() yields in group order, which keeps the report stable.
            for children in executor.map(fetch_children, list(groups)):
                missing_children.extend(
                    child for child in children if child.key not in committed_keys
                )
    return Aggregation(
        groups=list(groups.values()),
        orphans=orphans,
        missing_children=missing_children,
    )


def pluralize(word: str) -> str:
    """Return a naive English plural of an issue type name."""
    if word.endswith("y") and word[-2:-1].lower() not in "aeiou":
        return f"{word[:-1]}ies"
    if word.endswith("s"):
        return word
    return f"{word}s"


def format_issue_line(issue: Issue, base_url: str) -> str:
    """Format a ticket as a Markdown bullet."""
    return f"- {jira_link(issue.key, base_url)}: [{issue.type}] {issue.title}\n"


def render_report(
    aggregation: Aggregation,
    base_url: str,
    grouping_type: str = DEFAULT_GROUPING_TYPE,
) -> str:
    """Render the pull request description for an aggregation."""
    output = f"{REPORT_HEADER}\n\n"

    for group in aggregation.groups:
        parent = group.parent
        output += f"#### {parent.type} {jira_link(parent.key, base_url)}: {parent.title}\n"
        for child in group.children:
            output += format_issue_line(child, base_url)
        output += "\n"

    if aggregation.orphans:
        output += f"{OTHER_ISSUES_HEADER}\n"
        for issue in aggregation.orphans:
            output += format_issue_line(issue, base_url)
        output += "\n"

    if aggregation.missing_children:
        output += f"{MISSING_CHILDREN_HEADER}\n"
        output += (
            f"The following child issues from related {pluralize(grouping_type)} "
            "are not included in this PR:\n\n"
        )
        for issue in aggregation.missing_children:
            output += format_issue_line(issue, base_url)

    return output


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments."""
    parser = argparse.ArgumentParser(description="PR Jira Checker")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the report instead of updating the pull request",
    )
    return parser.parse_args(argv)


def run_pr_check(args: argparse.Namespace, settings: Settings) -> None:
    """Execute the pull request check."""
    ticket_regex = build_ticket_regex(settings)
    context = load_pull_request_context(settings)
    logger.info(
        "Checking pull request",
        repository=context.repository,
        number=context.number,
    )

    start = time.perf_counter()
    messages = list_pr_commit_messages(settings, context)
    log_elapsed("Fetched commits", start, count=len(messages))

    ticket_ids = extract_ticket_ids(messages, ticket_regex)
    if not ticket_ids:
        logger.info(NO_TICKETS_MESSAGE)
        annotate("notice", NO_TICKETS_MESSAGE)
        return
    logger.info("Ticket IDs: {tickets}", tickets=", ".join(ticket_ids))

    start = time.perf_counter()
    issues = fetch_jira_issues(settings, ticket_ids)
    log_elapsed("Fetched Jira issues", start, count=len(issues))

    start = time.perf_counter()
    aggregation = aggregate_issues(
        issues,
        set(ticket_ids),
        lambda parent_key: fetch_parent_children(settings, parent_key),
    )
    log_elapsed(
        "Aggregated Jira issues",
        start,
        groups=len(aggregation.groups),
        orphans=len(aggregation.orphans),
        missing=len(aggregation.missing_children),
    )
    report = render_report(
        aggregation,
        settings.jira_base_url,
        settings.jira_grouping_type,
    )

    if args.dry_run:
        logger.info("--- DRY RUN OUTPUT ---")
        logger.opt(raw=True).info("{report}\n", report=report)
        return
    update_pr_description(settings, context, report)
    logger.info("Updated pull request description", number=context.number)


def main(argv: list[str] | None = None) -> int:
    """Run the pull request check CLI."""
    logger.info("Starting PR Jira check")
    args = parse_args(argv)
    try:
        settings = get_settings()
        run_pr_check(args, settings)
    except Exception as exc:
        logger.error("PR Jira check failed: {error}", error=str(exc))
        annotate("error", str(exc))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
