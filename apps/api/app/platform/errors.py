from __future__ import annotations

from typing import Any


class PlatformError(Exception):
    """Base error carrying a machine-readable code, an HTTP status and structured details."""

    code = "platform_error"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class TenantNotAllowedError(PlatformError):
    """Raised when a tenant key is malformed, unknown, inactive or outside the allowlist."""

    code = "tenant_not_allowed"
    status_code = 403

    def __init__(self, tenant: str | None) -> None:
        super().__init__(f"Tenant '{tenant}' is not allowed", {"tenant": tenant})
        self.tenant = tenant
