"""Log sanitization module for preventing secret leakage.

Redacts sensitive data from log lines, diagnostics and error messages:
- Docker Swarm join tokens (SWMTKN-...)
- `--token <value>` arguments in echoed commands
- Passwords and generic token/secret assignments
- Authorization headers

Design Philosophy:
- Security first: err on side of over-redaction
- Pattern-based: not brittle keyword matching
- Fail-safe: if in doubt, mask it
"""

import re
from re import Pattern


class LogSanitizer:
    """Sanitize sensitive data from logs and error messages.

    All methods are class methods and can be called without instantiation.
    """

    REDACTED = "[REDACTED]"
    MASKED = "****"

    # Order matters: more specific patterns should come first
    SECRET_PATTERNS: dict[str, Pattern] = {
        "swarm_join_token": re.compile(r"(SWMTKN-1-)([0-9a-zA-Z-]+)"),
        "token_argument": re.compile(r"(--token[=\s]+)(?!SWMTKN-1-)([^\s\"']+)", re.IGNORECASE),
        "password": re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)', re.IGNORECASE),
        "authorization_bearer": re.compile(r"(Authorization:\s*Bearer\s+)([^\s]+)", re.IGNORECASE),
        "token_assignment": re.compile(
            r'((?:^|[^a-zA-Z])token["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)', re.IGNORECASE
        ),
        "secret_assignment": re.compile(
            r'(secret["\']?\s*[:=]\s*["\']?)([^\s"\'&,\)]+)', re.IGNORECASE
        ),
    }

    @classmethod
    def sanitize(cls, message: str) -> str:
        """Sanitize message by redacting sensitive patterns.

        Examples:
            >>> LogSanitizer.sanitize("docker swarm join --token SWMTKN-1-abc-def 10.0.0.1:2377")
            'docker swarm join --token SWMTKN-1-[REDACTED] 10.0.0.1:2377'
            >>> LogSanitizer.sanitize("password=hunter2")
            'password=[REDACTED]'
        """
        if not isinstance(message, str):
            message = str(message)

        result = message
        for pattern in cls.SECRET_PATTERNS.values():
            result = pattern.sub(r"\1" + cls.REDACTED, result)
        return result

    @classmethod
    def sanitize_lines(cls, lines: list[str]) -> list[str]:
        """Sanitize each line of a list."""
        return [cls.sanitize(line) for line in lines]

    @classmethod
    def mask_token(cls, token: str | None, visible: int = 4) -> str:
        """Partially mask a token for display.

        Examples:
            >>> LogSanitizer.mask_token("SWMTKN-1-abcdef123456")
            '****3456'
        """
        if not token:
            return ""
        if len(token) <= visible:
            return cls.MASKED
        return f"{cls.MASKED}{token[-visible:]}"


__all__ = ["LogSanitizer"]
