"""Heuristic detection of CAPTCHA / bot-check / access-denied interstitials."""

from .models import PageContent

BLOCK_INDICATORS = (
    "captcha",
    "showcaptcha",
    "challenge",
    "security check",
    "verify",
    "bot-check",
    "robot",
    "access denied",
    "403",
    "forbidden",
    "blocked",
    "unusual traffic",
)


def is_blocked(content: PageContent) -> bool:
    """True when the page title or URL looks like a blocking challenge.

    Body text is not inspected.
    """
    url = (content.url or "").lower()
    title = (content.title or "").lower()
    return any(marker in url or marker in title for marker in BLOCK_INDICATORS)
