from __future__ import annotations

import re

REDACTED = "[REDACTED]"

# KEY=value and KEY: "value" where the key names a credential
ASSIGNMENT = re.compile(
    r"(?i)\b([A-Za-z0-9_.-]*(?:secret|token|password|passwd|apikey|api_key)[A-Za-z0-9_.-]*)"
    r"(\s*=\s*)(\"[^\"]*\"|'[^']*'|\S+)"
)
JSON_FIELD = re.compile(
    r"(?i)(\"[^\"]*(?:secret|token|password|passwd|apikey|api_key)[^\"]*\"\s*:\s*)\"[^\"]*\""
)
AUTH_HEADER = re.compile(r"(?i)\b(bearer|basic)\s+[A-Za-z0-9._~+/=-]{8,}")
AWS_KEY_ID = re.compile(r"\b(?:AKIA|ASIA)[0-9A-Z]{16}\b")
# Long hex runs, except content digests (sha256:<hex>) which docker prints
HEX_LONG = re.compile(r"(?<!sha256:)\b[0-9a-f]{32,}\b", re.I)


def redact_secrets(s: str) -> str:
    """Replace credential values in ``s``, leaving the rest of the line readable."""
    s = ASSIGNMENT.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", s)
    s = JSON_FIELD.sub(lambda m: f'{m.group(1)}"{REDACTED}"', s)
    s = AUTH_HEADER.sub(lambda m: f"{m.group(1)} {REDACTED}", s)
    s = AWS_KEY_ID.sub(REDACTED, s)
    return HEX_LONG.sub(REDACTED, s)
