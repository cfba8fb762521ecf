"""
Security helpers.

Provides sanitization for security-sensitive values before they are logged.
"""

from core.security.sanitize import REDACTED, SENSITIVE_PARAMS, sanitize_url

__all__ = [
    "REDACTED",
    "SENSITIVE_PARAMS",
    "sanitize_url",
]
