"""
Sensitive-data redaction for command history.

Rules are applied in order to the same string, so a later rule sees the
output of earlier ones. Keep the order stable: it is part of the cache
fingerprint contract.
"""

import re
from dataclasses import dataclass
from typing import List, Pattern, Sequence

REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class RedactionRule:
    """A named pattern and what to replace its matches with."""
    name: str
    pattern: Pattern[str]
    replacement: str = REDACTED

    def apply(self, text: str) -> str:
        return self.pattern.sub(self.replacement, text)


SENSITIVE_RULES: List[RedactionRule] = [
    RedactionRule("api_key", re.compile(
        r"(api[_-]?key|token)\s*[=:]\s*['\"]?([a-zA-Z0-9_-]{20,})", re.IGNORECASE)),
    RedactionRule("aws_access_key", re.compile(r"AKIA[0-9A-Z]{16}")),
    RedactionRule("password", re.compile(
        r"(password|passwd|pwd)\s*[=:]\s*['\"]?([^\s'\"]+)", re.IGNORECASE)),
    RedactionRule("private_key", re.compile(r"-----BEGIN\s+.*PRIVATE\s+KEY-----")),
    RedactionRule("jwt", re.compile(
        r"eyJ[a-zA-Z0-9_-]*\.eyJ[a-zA-Z0-9_-]*\.[a-zA-Z0-9_-]*")),
    RedactionRule("database_url", re.compile(
        r"(mysql|postgres|mongodb|redis)://[^:]+:[^@]+@", re.IGNORECASE)),
    RedactionRule("bearer_token", re.compile(
        r"bearer\s+[a-zA-Z0-9_-]{20,}", re.IGNORECASE)),
    RedactionRule("ssh_private_key", re.compile(
        r"BEGIN\s+(RSA|DSA|EC|OPENSSH)\s+PRIVATE\s+KEY", re.IGNORECASE)),
    RedactionRule("generic_secret", re.compile(
        r"(secret|credential)\s*[=:]\s*['\"]?([^\s'\"]+)", re.IGNORECASE)),
    RedactionRule("oauth_token", re.compile(
        r"(oauth|access_token|refresh_token)\s*[=:]\s*['\"]?([a-zA-Z0-9_-]{20,})",
        re.IGNORECASE)),
]


def filter_command(command: str, rules: Sequence[RedactionRule] = SENSITIVE_RULES) -> str:
    """Redact every secret-like substring of a single command."""
    for rule in rules:
        command = rule.apply(command)
    return command


def filter_sensitive(
    commands: Sequence[str], rules: Sequence[RedactionRule] = SENSITIVE_RULES
) -> List[str]:
    """Redact secrets from each command, preserving order."""
    return [filter_command(command, rules) for command in commands]


def is_sensitive(command: str, rules: Sequence[RedactionRule] = SENSITIVE_RULES) -> bool:
    """Return True if any rule matches the unredacted command."""
    return any(rule.pattern.search(command) for rule in rules)
