# Overview: Default system roles and the permissions each one starts with.
# Each grant is: resource -> tuple of actions

from .definitions import PERMISSION_DEFINITIONS


SUPER_ADMIN_ROLE = "super_admin"
ADMIN_ROLE = "admin"

# name -> (description, scope)
DEFAULT_ROLES = {
    "super_admin": ("Full access to the whole system", "global"),
    "admin": ("Administrator with access to most features", "global"),
    "institution_admin": ("Administrator of a specific institution", "institution"),
    "coordinator": ("Academic coordinator", "institution"),
    "secretary": ("Academic secretary", "institution"),
    "financial": ("Finance department staff", "institution"),
    "sales": ("Sales staff", "institution"),
    "teacher": ("Teacher or tutor", "institution"),
    "polo_admin": ("Polo administrator", "polo"),
    "student": ("Student", "institution"),
    "auditor": ("Read-only access for auditing", "institution"),
    "marketing": ("Marketing and communication manager", "institution"),
}

_ALL = {}
for _resource, _action, _desc, _cat in PERMISSION_DEFINITIONS:
    _ALL.setdefault(_resource, []).append(_action)

DEFAULT_ROLE_PERMISSIONS = {
    "super_admin": {resource: tuple(actions) for resource, actions in _ALL.items()},
    "admin": {
        "users": ("read", "create", "update"),
        "roles": ("read",),
        "permissions": ("read",),
        "institutions": ("read", "create", "update"),
        "polos": ("read", "create", "update"),
        "courses": ("read", "create", "update", "delete"),
        "enrollments": ("read", "create", "update"),
        "financial_transactions": ("read",),
        "invoices": ("read", "create", "update"),
        "payments": ("read", "create"),
        "checkout_links": ("read", "create", "update"),
        "leads": ("read", "create", "update"),
        "clients": ("read", "create", "update"),
        "communications": ("read", "create", "update"),
        "contracts": ("read", "create", "update"),
        "products": ("read", "create", "update"),
        "certificates": ("read", "create"),
        "certificate_templates": ("read", "create", "update"),
        "certificate_signers": ("read", "create", "update"),
        "reports": ("read", "create"),
        "audit_logs": ("read", "export"),
    },
    "institution_admin": {
        "users": ("read", "create", "update"),
        "polos": ("read", "create", "update"),
        "courses": ("read", "create", "update"),
        "enrollments": ("read", "create", "update"),
        "financial_transactions": ("read",),
        "invoices": ("read", "create"),
        "payments": ("read",),
        "checkout_links": ("read", "create"),
        "leads": ("read", "create", "update"),
        "clients": ("read", "create", "update"),
        "communications": ("read", "create"),
        "contracts": ("read", "create"),
        "certificates": ("read", "create"),
        "reports": ("read",),
    },
    "coordinator": {
        "users": ("read",),
        "courses": ("read", "update"),
        "enrollments": ("read", "update"),
        "leads": ("read",),
        "clients": ("read",),
        "certificates": ("read", "create"),
        "reports": ("read",),
    },
    "secretary": {
        "users": ("read",),
        "courses": ("read",),
        "enrollments": ("read", "create", "update"),
        "leads": ("read", "update"),
        "clients": ("read", "update"),
        "communications": ("read", "create"),
        "certificates": ("read", "create"),
    },
    "financial": {
        "financial_transactions": ("read", "create", "update"),
        "invoices": ("read", "create", "update"),
        "payments": ("read", "create", "update"),
        "checkout_links": ("read", "create", "update"),
        "clients": ("read", "update"),
        "communications": ("read", "create"),
        "contracts": ("read",),
        "reports": ("read",),
    },
    "sales": {
        "leads": ("read", "create", "update"),
        "clients": ("read", "create", "update"),
        "checkout_links": ("read", "create"),
        "communications": ("read", "create", "update"),
        "contracts": ("read", "create"),
        "products": ("read",),
        "courses": ("read",),
        "enrollments": ("read", "create"),
    },
    "teacher": {
        "courses": ("read",),
        "enrollments": ("read", "update"),
    },
    "polo_admin": {
        "courses": ("read",),
        "enrollments": ("read", "create", "update"),
        "leads": ("read", "create", "update"),
        "clients": ("read", "create", "update"),
        "communications": ("read", "create"),
        "certificates": ("read",),
    },
    "student": {
        "courses": ("read",),
        "enrollments": ("read",),
        "certificates": ("read",),
        "invoices": ("read",),
        "payments": ("read", "create"),
    },
    "auditor": {
        "users": ("read",),
        "courses": ("read",),
        "enrollments": ("read",),
        "financial_transactions": ("read",),
        "invoices": ("read",),
        "payments": ("read",),
        "clients": ("read",),
        "contracts": ("read",),
        "certificates": ("read",),
        "reports": ("read",),
        "audit_logs": ("read", "export"),
    },
    "marketing": {
        "leads": ("read", "create", "update"),
        "communications": ("read", "create", "update"),
        "reports": ("read",),
    },
}
