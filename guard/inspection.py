"""Cheap per-request heuristics: risk score, injection probes, sanitizers.

None of these keep state.  The risk score folds in the caller-supplied
failed-login tally so the store stays the single owner of that counter.
"""

import re

from guard.request import InboundRequest

_AUTOMATION_AGENTS = re.compile(r"curl|wget|python|bot|crawler|spider", re.IGNORECASE)
_FORWARDING_HEADERS = ("x-forwarded-for", "x-real-ip", "x-originating-ip")
_LARGE_BODY_BYTES = 1024 * 1024

_XSS_PATTERNS = (
    re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on\w+\s*=", re.IGNORECASE),
    re.compile(r"<iframe[^>]*>", re.IGNORECASE),
    re.compile(r"<object[^>]*>", re.IGNORECASE),
    re.compile(r"<embed[^>]*>", re.IGNORECASE),
)

_SQLI_PATTERNS = (
    re.compile(r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|CREATE|ALTER|EXEC|UNION)\b", re.IGNORECASE),
    re.compile(r"\b(OR|AND)\s+\d+\s*=\s*\d+", re.IGNORECASE),
    re.compile(r"'|\\'|;|--|\||\*|%27|%3D|%3B|%2D%2D", re.IGNORECASE),
)

_SECRET_HEADERS = ("authorization", "cookie", "x-api-key")
_MAX_LOGGED_STRING = 100


def risk_score(request: InboundRequest, failed_logins: int = 0) -> int:
    """0-100 score from user agent, failed logins, proxy chains and body size."""
    score = 0
    agent = request.user_agent or ""
    if len(agent) < 10:
        score += 20
    if _AUTOMATION_AGENTS.search(agent):
        score += 15

    score += min(failed_logins * 5, 30)

    if sum(1 for h in _FORWARDING_HEADERS if request.headers.get(h)) > 1:
        score += 10

    if request.content_length > _LARGE_BODY_BYTES:
        score += 15

    return min(score, 100)


def _walk_strings(value):
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for item in value.values():
            yield from _walk_strings(item)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _walk_strings(item)


def contains_xss(payload) -> bool:
    return any(p.search(s) for s in _walk_strings(payload) for p in _XSS_PATTERNS)


def contains_sql_injection(payload) -> bool:
    return any(p.search(s) for s in _walk_strings(payload) for p in _SQLI_PATTERNS)


def sanitize_headers(headers: dict) -> dict:
    return {k: v for k, v in (headers or {}).items() if k.lower() not in _SECRET_HEADERS}


def sanitize_payload(value):
    """Copy *value* with long strings truncated, safe to put in event details."""
    if isinstance(value, str):
        if len(value) > _MAX_LOGGED_STRING:
            return value[:_MAX_LOGGED_STRING] + "..."
        return value
    if isinstance(value, dict):
        return {k: sanitize_payload(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_payload(v) for v in value]
    return value
