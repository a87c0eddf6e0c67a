from .tenancy import Institution, Polo, INSTITUTION_PHASES
from .auth import (
    User, Role, UserRole, Permission, RolePermission, UserPermission, SessionToken,
    PORTAL_TYPES, ROLE_SCOPES,
)
from .security import SecurityEvent
from .abac import (
    InstitutionPhasePermission, FinancialPeriod, PeriodPermissionRule, PaymentStatusPermission,
    PAYMENT_STATUSES, PERIOD_TYPES,
)
from .audit import PermissionAudit, AuditImmutableError, AUDIT_ACTION_TYPES, AUDIT_ENTITY_TYPES
from .crm import (
    Lead, Client, Contact, LeadActivity, CheckoutLink,
    LEAD_STATUSES, CLIENT_TYPES, LEAD_ACTIVITY_TYPES, CHECKOUT_STATUSES,
)

__all__ = [
    'Institution', 'Polo',
    'User', 'Role', 'UserRole', 'Permission', 'RolePermission', 'UserPermission', 'SessionToken',
    'SecurityEvent',
    'InstitutionPhasePermission', 'FinancialPeriod', 'PeriodPermissionRule', 'PaymentStatusPermission',
    'PermissionAudit', 'AuditImmutableError',
    'Lead', 'Client', 'Contact', 'LeadActivity', 'CheckoutLink',
    'INSTITUTION_PHASES', 'PORTAL_TYPES', 'ROLE_SCOPES', 'PAYMENT_STATUSES', 'PERIOD_TYPES',
    'AUDIT_ACTION_TYPES', 'AUDIT_ENTITY_TYPES',
    'LEAD_STATUSES', 'CLIENT_TYPES', 'LEAD_ACTIVITY_TYPES', 'CHECKOUT_STATUSES',
]
