"""Redaction helpers for log lines.

Payload refs are base64 data URLs that can run to megabytes; destination URLs
may carry auth parameters. Neither should reach the log verbatim.
"""

from __future__ import annotations

from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

_SENSITIVE_SUBSTRINGS = (
    "token",
    "secret",
    "password",
    "passwd",
    "pwd",
    "authorization",
    "cookie",
    "session",
    "jwt",
    "bearer",
    "api-key",
    "api_key",
    "apikey",
)

_SENSITIVE_EXACT = {"auth", "sig", "signature"}


def is_sensitive_key(key: str) -> bool:
    k = (key or "").strip().lower()
    if not k:
        return False
    if k in _SENSITIVE_EXACT:
        return True
    return any(s in k for s in _SENSITIVE_SUBSTRINGS)


def _redact_pairs(raw: str) -> tuple[str, bool]:
    pairs = parse_qsl(raw, keep_blank_values=True)
    redacted_any = False
    out_pairs: list[tuple[str, str]] = []
    for k, v in pairs:
        if is_sensitive_key(k) and v:
            out_pairs.append((k, "<redacted>"))
            redacted_any = True
        else:
            out_pairs.append((k, v))
    if not redacted_any:
        return raw, False
    return urlencode(out_pairs, doseq=True), True


def redact_url(url: str) -> str:
    """Redact sensitive query/fragment params and userinfo; unchanged URLs are returned as-is."""
    if not isinstance(url, str) or not url:
        return url
    if url.startswith("data:"):
        return redact_payload_ref(url)
    try:
        parts = urlsplit(url)
    except ValueError:
        return url

    changed = False
    netloc = parts.netloc
    query = parts.query
    fragment = parts.fragment

    if "@" in netloc:
        netloc = netloc.split("@", 1)[1]
        changed = True
    if query:
        query, q_changed = _redact_pairs(query)
        changed = changed or q_changed
    if fragment and "=" in fragment:
        fragment, f_changed = _redact_pairs(fragment)
        changed = changed or f_changed

    if not changed:
        return url
    return urlunsplit((parts.scheme, netloc, parts.path, query, fragment))


def redact_payload_ref(ref: Any) -> str:
    """Summarize a data URL as ``data:<mime> <len=N>`` so logs stay small."""
    if ref is None:
        return "<none>"
    if not isinstance(ref, str):
        return f"<{type(ref).__name__}>"
    if not ref.startswith("data:"):
        return ref if len(ref) <= 120 else ref[:117] + "..."
    head, _, body = ref.partition(",")
    mime = head[len("data:") :].split(";", 1)[0] or "unknown"
    return f"data:{mime} <len={len(body)}>"


def redact_message(message: dict[str, Any]) -> dict[str, Any]:
    """Shallow copy of an agent/orchestrator message with payload refs summarized."""
    out: dict[str, Any] = {}
    for k, v in (message or {}).items():
        if k in {"payloadRef", "dataUrl", "payload"} and isinstance(v, str):
            out[k] = redact_payload_ref(v)
        elif k == "url" and isinstance(v, str):
            out[k] = redact_url(v)
        else:
            out[k] = v
    return out


__all__ = ["is_sensitive_key", "redact_message", "redact_payload_ref", "redact_url"]
