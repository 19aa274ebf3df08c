"""Unit Tests for the CAPTCHA / access-denied heuristic."""

import pytest

from src.agents.web_agent.blocking import is_blocked
from src.agents.web_agent.models import PageContent


def _page(url="https://example.com/", title="Example"):
    return PageContent(title=title, url=url)


class TestIsBlocked:

    @pytest.mark.parametrize("url", [
        "https://www.google.com/sorry/index?continue=...&q=captcha",
        "https://ya.ru/showcaptcha?retpath=x",
        "https://example.com/cdn-cgi/challenge-platform/h/b",
    ])
    def test_blocked_urls(self, url):
        assert is_blocked(_page(url=url)) is True

    @pytest.mark.parametrize("title", [
        "Just a moment... Security Check",
        "Access Denied",
        "403 Forbidden",
        "Please verify you are a human",
        "Are you a robot?",
    ])
    def test_blocked_titles(self, title):
        assert is_blocked(_page(title=title)) is True

    def test_match_is_case_insensitive(self):
        assert is_blocked(_page(title="CAPTCHA required")) is True

    def test_ordinary_page_not_blocked(self):
        assert is_blocked(_page(url="https://news.ycombinator.com/", title="Hacker News")) is False

    def test_body_text_is_ignored(self):
        content = PageContent(title="Docs", url="https://example.com/docs", body_excerpt="how to solve a captcha")
        assert is_blocked(content) is False
