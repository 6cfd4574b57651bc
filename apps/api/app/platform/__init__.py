from app.platform.errors import PlatformError, TenantNotAllowedError
from app.platform.tenancy import PlatformTenant, TenantPartition, register_tenant, resolve_tenant

__all__ = [
    "PlatformError",
    "TenantNotAllowedError",
    "PlatformTenant",
    "TenantPartition",
    "register_tenant",
    "resolve_tenant",
]
