"""Security configuration constants for the AuditLens API.

This module centralizes security-related configuration including:
- Sensitive keys that should be sanitized from logs
- Error handling security settings
"""

# Keys redacted from structured logs. Matching is substring based, so
# "x-api-key" and "generation_api_key" are both covered by "api_key"/"api-key".
SENSITIVE_KEYS: set[str] = {
    # Authentication & Authorization
    "password",
    "secret",
    "token",
    "authorization",
    "api_key",
    "api-key",
    "apikey",
    "bearer",
    "cookie",
    "session_id",
    # Personal Identifiable Information
    "email",
    "phone",
}

# Fields that never count as sensitive even though they contain a sensitive
# substring. Upstream task ids are needed to correlate stop requests.
NON_SENSITIVE_KEYS: set[str] = {
    "task_id",
    "upstream_task_id",
    "max_tokens",
}

# Production-only error response fields
# In production, error responses should only contain these fields to
# prevent information leakage
PRODUCTION_ERROR_FIELDS: set[str] = {
    "correlation_id",
    "type",
}

# Development error response fields (additional fields allowed in development)
DEVELOPMENT_ERROR_FIELDS: set[str] = PRODUCTION_ERROR_FIELDS | {
    "details",
    "traceback",
    "exception_type",
    "validation_errors",
}

# Client errors carry a message the caller needs to act on (bad document ids,
# unknown task id); these details are exposed in every environment.
CLIENT_ERROR_FIELDS: set[str] = PRODUCTION_ERROR_FIELDS | {"details"}


def get_allowed_error_fields(environment: str, *, client_error: bool = False) -> set[str]:
    """Get allowed error response fields based on environment.

    Args:
        environment: The application environment (production, development, etc.)
        client_error: Whether the error was caused by the caller (4xx)

    Returns:
        Set of allowed field names for error responses
    """
    if environment != "production":
        return DEVELOPMENT_ERROR_FIELDS.copy()
    if client_error:
        return CLIENT_ERROR_FIELDS.copy()
    return PRODUCTION_ERROR_FIELDS.copy()


def is_sensitive_key(key: str) -> bool:
    """Check if a key should be considered sensitive and redacted.

    Args:
        key: The key name to check

    Returns:
        True if the key should be redacted, False otherwise
    """
    key_lower = key.lower()
    if key_lower in NON_SENSITIVE_KEYS:
        return False
    return any(sensitive in key_lower for sensitive in SENSITIVE_KEYS)
