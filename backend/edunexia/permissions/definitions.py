# Overview: All permission definitions organized by category.
# Each permission is defined as: (resource, action, description, category)

from .categories import PermissionCategory


CRUD_ACTIONS = ("read", "create", "update", "delete")
ALL_ACTIONS = ("read", "create", "update", "delete", "manage", "export")

# "manage" on a resource satisfies every action on that resource
WILDCARD_ACTION = "manage"

# Actions that never need write access to anything
READ_ACTIONS = {"read", "list", "view"}


def _resource(resource: str, label: str, category: str, actions=CRUD_ACTIONS + ("manage",)):
    verbs = {
        "read": "View",
        "create": "Create",
        "update": "Update",
        "delete": "Delete",
        "manage": "Manage (all operations on)",
        "export": "Export",
    }
    return [
        (resource, action, f"{verbs[action]} {label}", category)
        for action in actions
    ]


# -- ADMINISTRATION --

ADMINISTRATION_PERMISSIONS = (
    _resource("users", "users", PermissionCategory.ADMINISTRATION)
    + _resource("roles", "roles", PermissionCategory.ADMINISTRATION)
    + _resource("permissions", "permissions and access rules", PermissionCategory.ADMINISTRATION)
    + _resource("institutions", "institutions", PermissionCategory.ADMINISTRATION)
    + _resource("polos", "polos", PermissionCategory.ADMINISTRATION)
    + _resource("settings", "system settings", PermissionCategory.ADMINISTRATION, ("read", "update", "manage"))
)

# -- ACADEMIC --

ACADEMIC_PERMISSIONS = (
    _resource("courses", "courses", PermissionCategory.ACADEMIC)
    + _resource("enrollments", "enrollments", PermissionCategory.ACADEMIC)
)

# -- FINANCIAL --

FINANCIAL_PERMISSIONS = (
    _resource("financial_transactions", "financial transactions", PermissionCategory.FINANCIAL)
    + _resource("invoices", "invoices", PermissionCategory.FINANCIAL)
    + _resource("payments", "payments", PermissionCategory.FINANCIAL)
    + _resource("checkout_links", "checkout payment links", PermissionCategory.FINANCIAL)
)

# -- CRM --

CRM_PERMISSIONS = (
    _resource("leads", "leads", PermissionCategory.CRM)
    + _resource("clients", "clients and contacts", PermissionCategory.CRM)
    + _resource("communications", "communications", PermissionCategory.CRM)
)

# -- CONTRACTS --

CONTRACT_PERMISSIONS = (
    _resource("contracts", "contracts", PermissionCategory.CONTRACTS)
    + _resource("products", "products", PermissionCategory.CONTRACTS)
)

# -- CERTIFICATES --

CERTIFICATE_PERMISSIONS = (
    _resource("certificates", "certificates", PermissionCategory.CERTIFICATES)
    + _resource("certificate_templates", "certificate templates", PermissionCategory.CERTIFICATES)
    + _resource("certificate_signers", "certificate signers", PermissionCategory.CERTIFICATES)
)

# -- SUBSCRIPTIONS --

SUBSCRIPTION_PERMISSIONS = (
    _resource("subscription_plans", "subscription plans", PermissionCategory.SUBSCRIPTIONS)
    + _resource("subscriptions", "subscriptions", PermissionCategory.SUBSCRIPTIONS)
)

# -- REPORTS / AUDIT --

REPORT_PERMISSIONS = _resource("reports", "reports", PermissionCategory.REPORTS, ("read", "create", "manage", "export"))

AUDIT_PERMISSIONS = _resource("audit_logs", "permission audit logs", PermissionCategory.AUDIT, ("read", "export", "manage"))


PERMISSION_DEFINITIONS = (
    ADMINISTRATION_PERMISSIONS
    + ACADEMIC_PERMISSIONS
    + FINANCIAL_PERMISSIONS
    + CRM_PERMISSIONS
    + CONTRACT_PERMISSIONS
    + CERTIFICATE_PERMISSIONS
    + SUBSCRIPTION_PERMISSIONS
    + REPORT_PERMISSIONS
    + AUDIT_PERMISSIONS
)
