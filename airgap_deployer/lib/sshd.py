from __future__ import annotations

import re
from typing import Dict, Mapping

HARDENED_DIRECTIVES: Dict[str, str] = {
    "PermitRootLogin": "no",
    "PasswordAuthentication": "no",
    "PubkeyAuthentication": "yes",
    "ChallengeResponseAuthentication": "no",
    "X11Forwarding": "no",
}

_MATCH_RE = re.compile(r"^\s*Match\s", re.IGNORECASE)


def _directive_re(name: str) -> "re.Pattern[str]":
    # Active or commented-out occurrences, e.g. "#PermitRootLogin prohibit-password".
    return re.compile(rf"^\s*#*\s*{re.escape(name)}(\s|$)", re.IGNORECASE)


def rewrite_config(text: str, directives: Mapping[str, str] = HARDENED_DIRECTIVES) -> str:
    """Force each directive to its value in the global section of an sshd_config.

    Existing lines (commented or not) before the first Match block are rewritten
    in place; directives not present are inserted before the first Match block so
    they stay global.
    """

    lines = text.splitlines()
    match_at = next((i for i, ln in enumerate(lines) if _MATCH_RE.match(ln)), len(lines))
    head, tail = lines[:match_at], lines[match_at:]

    missing = []
    for name, value in directives.items():
        pat = _directive_re(name)
        found = False
        for i, ln in enumerate(head):
            if pat.match(ln):
                head[i] = f"{name} {value}"
                found = True
        if not found:
            missing.append(f"{name} {value}")

    out = head + missing + tail
    return "\n".join(out) + "\n"


def effective_settings(text: str) -> Dict[str, str]:
    """Global settings as sshd resolves them: the first occurrence of a keyword wins."""

    settings: Dict[str, str] = {}
    for raw in text.splitlines():
        ln = raw.strip()
        if not ln or ln.startswith("#"):
            continue
        if _MATCH_RE.match(ln):
            break
        parts = ln.split(None, 1)
        key = parts[0].lower()
        if key not in settings:
            settings[key] = parts[1].strip() if len(parts) > 1 else ""
    return settings


def setting(text: str, name: str) -> str | None:
    return effective_settings(text).get(name.lower())
