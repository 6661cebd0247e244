"""
HTML sanitizer.

Best-effort text surgery that prepares a fetched page for the completion
service: drop script/style/comment blocks, collapse whitespace, and cut to a
character budget. Never parses the document, never raises on bad markup.
"""
import os
import re
import logging
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

# Character budgets by extraction tier. Larger budgets trade completion cost
# and latency for extraction fidelity.
TIER_MAX_CHARS = {
    'lite': 18000,
    'standard': 40000,
    'deep': 80000,
}
DEFAULT_TIER = 'standard'

_SCRIPT_RE = re.compile(r'<script\b[^>]*>.*?</script\s*>', re.IGNORECASE | re.DOTALL)
_STYLE_RE = re.compile(r'<style\b[^>]*>.*?</style\s*>', re.IGNORECASE | re.DOTALL)
_COMMENT_RE = re.compile(r'<!--.*?-->', re.DOTALL)
_WHITESPACE_RE = re.compile(r'\s+')


def max_chars_for_tier(tier: Optional[str]) -> int:
    """Resolve a tier name to its character budget (unknown names use the default tier)."""
    key = (tier or DEFAULT_TIER).strip().lower()
    if key not in TIER_MAX_CHARS:
        logger.warning(f"[sanitizer] Unknown tier '{tier}', using '{DEFAULT_TIER}'")
        key = DEFAULT_TIER
    return TIER_MAX_CHARS[key]


def default_max_chars() -> int:
    """
    Character budget from the environment.

    APEXSCRAPE_MAX_CONTENT_CHARS wins over APEXSCRAPE_SANITIZE_TIER.
    """
    explicit = os.getenv('APEXSCRAPE_MAX_CONTENT_CHARS')
    if explicit:
        try:
            value = int(explicit)
            if value > 0:
                return value
        except ValueError:
            pass
        logger.warning(f"[sanitizer] Ignoring invalid APEXSCRAPE_MAX_CONTENT_CHARS={explicit!r}")
    return max_chars_for_tier(os.getenv('APEXSCRAPE_SANITIZE_TIER', DEFAULT_TIER))


DEFAULT_MAX_CHARS = TIER_MAX_CHARS[DEFAULT_TIER]


def _strip_noise(raw: str) -> str:
    text = _SCRIPT_RE.sub(' ', raw)
    text = _STYLE_RE.sub(' ', text)
    text = _COMMENT_RE.sub(' ', text)
    return _WHITESPACE_RE.sub(' ', text).strip()


def sanitize_report(raw: Optional[str], max_chars: int = DEFAULT_MAX_CHARS) -> Tuple[str, bool]:
    """Like sanitize(), also reporting whether the budget forced a cut."""
    if not raw:
        return '', False

    text = _strip_noise(raw)
    if max_chars is not None and 0 <= max_chars < len(text):
        # A cut can leave a trailing space; strip it so a second pass is a no-op.
        return text[:max_chars].rstrip(), True
    return text, False


def sanitize(raw: Optional[str], max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """
    Strip noise from raw HTML and truncate it.

    Args:
        raw: Raw response body (may be malformed, may be None)
        max_chars: Character budget for the returned text

    Returns:
        Cleaned text, at most max_chars long
    """
    text, _ = sanitize_report(raw, max_chars)
    return text
