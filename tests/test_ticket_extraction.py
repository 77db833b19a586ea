"""Tests for ticket extraction from commit messages."""
from __future__ import annotations

import re

import pytest

from scripts.pr_jira import (
    DEFAULT_TICKET_PATTERN,
    ConfigurationError,
    Settings,
    build_ticket_regex,
    extract_ticket_ids,
)


def _settings(**overrides: str) -> Settings:
    values = {
        "GITHUB_TOKEN": "gh-token",
        "JIRA_BASE_URL": "https://example.atlassian.net",
        "JIRA_EMAIL": "bot@example.com",
        "JIRA_API_TOKEN": "jira-token",
    }
    values.update(overrides)
    return Settings.model_validate(values)


class TestExtractTicketIds:
    def test_deduplicates_across_messages(self):
        regex = re.compile("RC-[^ ]*")
        result = extract_ticket_ids(["RC-1 fix", "RC-2 also RC-1"], regex)
        assert set(result) == {"RC-1", "RC-2"}
        assert len(result) == 2

    def test_keeps_first_seen_order(self):
        regex = re.compile(r"[A-Z]+-\d+")
        result = extract_ticket_ids(["ABC-3 and ABC-1", "ABC-2 ABC-3"], regex)
        assert result == ["ABC-3", "ABC-1", "ABC-2"]

    def test_uses_whole_match_not_capture_groups(self):
        regex = re.compile(r"(RC)-(\d+)")
        assert extract_ticket_ids(["RC-42 done"], regex) == ["RC-42"]

    def test_no_matches(self):
        regex = re.compile("RC-[^ ]*")
        assert extract_ticket_ids(["chore: bump deps", ""], regex) == []

    def test_no_messages(self):
        assert extract_ticket_ids([], re.compile("RC-[^ ]*")) == []

    def test_ignores_empty_matches(self):
        regex = re.compile(r"(?:RC-\d+)?")
        assert extract_ticket_ids(["x RC-7 y"], regex) == ["RC-7"]

    def test_multiline_messages(self):
        regex = re.compile(r"RC-\d+")
        message = "feat: add endpoint\n\nRefs RC-11\nCloses RC-12"
        assert extract_ticket_ids([message], regex) == ["RC-11", "RC-12"]


class TestBuildTicketRegex:
    def test_default_pattern(self):
        regex = build_ticket_regex(_settings())
        assert regex.pattern == DEFAULT_TICKET_PATTERN

    def test_blank_pattern_uses_default(self):
        regex = build_ticket_regex(_settings(JIRA_TICKET_ID_PATTERN=""))
        assert regex.pattern == DEFAULT_TICKET_PATTERN

    def test_custom_pattern(self):
        regex = build_ticket_regex(_settings(JIRA_TICKET_ID_PATTERN=r"PROJ-\d+"))
        assert regex.findall("PROJ-9 and RC-1") == ["PROJ-9"]

    def test_invalid_pattern_fails_fast(self):
        with pytest.raises(ConfigurationError, match="Invalid Jira ticket ID pattern"):
            build_ticket_regex(_settings(JIRA_TICKET_ID_PATTERN="RC-[0-9"))
