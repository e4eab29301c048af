# modkit/core/redaction.py
from __future__ import annotations

import re

__all__ = ["redactText"]



# Precompiled sensitive-data regex patterns
# Mod hosting URLs frequently carry signed download tokens in the query string.
_SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    # Bearer or Authorization headers
    (re.compile(r"(?iu)(Bearer\s+)[A-Za-z0-9._\-]+"), r"\1***"),
    (re.compile(r"(?iu)(Authorization\s*[:=]\s*)[A-Za-z0-9._\-]+"), r"\1***"),
    
    # API key or token-style key/value pairs in JSON
    (re.compile(r'(?iu)("api[_\-]?key"\s*:\s*")[^"]+(")'), r"\1***\2"),
    (re.compile(r'(?iu)("token"\s*:\s*")[^"]+(")'), r"\1***\2"),
    
    # Query parameter forms like token=abcdef, key=..., signature=...
    (re.compile(r"(?iu)([?&](?:token|key|apikey|api_key|signature|sig|expires)=)[^&\s'\"]+"), r"\1***"),
    
    # user:password@host in URLs
    (re.compile(r"(?iu)(://[^/\s:@]+:)[^/\s@]+(@)"), r"\1***\2"),
]



def redactText(text: str) -> str:
    """Return sanitized text with sensitive substrings replaced by ***."""
    if not text:
        return text
    out = text
    for pattern, repl in _SENSITIVE_PATTERNS:
        try:
            out = pattern.sub(repl, out)
        except re.error:
            continue # Never crash logging on regex errors
    return out
