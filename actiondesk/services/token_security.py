from __future__ import annotations

import re

_BEARER_PATTERN = re.compile(r"(?i)\bbearer\s+[a-z0-9\-._~+/]+=*")
_TOKENISH_PATTERN = re.compile(r"(?i)\b(access|refresh|id)_token\b[^,\n]*")
_CODE_PARAM_PATTERN = re.compile(r"(?i)([?&]code=)[^&\s]+")


def redact_sensitive_text(value: str | None) -> str:
    if not value:
        return ""
    out = _BEARER_PATTERN.sub("Bearer [REDACTED]", value)
    out = _TOKENISH_PATTERN.sub("[REDACTED_TOKEN_FIELD]", out)
    out = _CODE_PARAM_PATTERN.sub(r"\1[REDACTED]", out)
    return out
