# Overview: Permission system package.
# Re-exports the catalog, default roles and lookup helpers.

from .categories import PermissionCategory
from .definitions import (
    PERMISSION_DEFINITIONS,
    ADMINISTRATION_PERMISSIONS,
    ACADEMIC_PERMISSIONS,
    FINANCIAL_PERMISSIONS,
    CRM_PERMISSIONS,
    CONTRACT_PERMISSIONS,
    CERTIFICATE_PERMISSIONS,
    SUBSCRIPTION_PERMISSIONS,
    REPORT_PERMISSIONS,
    AUDIT_PERMISSIONS,
    WILDCARD_ACTION,
    READ_ACTIONS,
)
from .roles import DEFAULT_ROLES, DEFAULT_ROLE_PERMISSIONS, SUPER_ADMIN_ROLE, ADMIN_ROLE
from .helpers import (
    get_all_permission_codes,
    get_permissions_by_category,
    get_permission_definition,
    parse_permission_code,
)

__all__ = [
    "PermissionCategory",
    "PERMISSION_DEFINITIONS",
    "ADMINISTRATION_PERMISSIONS",
    "ACADEMIC_PERMISSIONS",
    "FINANCIAL_PERMISSIONS",
    "CRM_PERMISSIONS",
    "CONTRACT_PERMISSIONS",
    "CERTIFICATE_PERMISSIONS",
    "SUBSCRIPTION_PERMISSIONS",
    "REPORT_PERMISSIONS",
    "AUDIT_PERMISSIONS",
    "WILDCARD_ACTION",
    "READ_ACTIONS",
    "DEFAULT_ROLES",
    "DEFAULT_ROLE_PERMISSIONS",
    "SUPER_ADMIN_ROLE",
    "ADMIN_ROLE",
    "get_all_permission_codes",
    "get_permissions_by_category",
    "get_permission_definition",
    "parse_permission_code",
]
