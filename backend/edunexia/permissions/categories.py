# Overview: Permission category constants for grouping related resources.


class PermissionCategory:
    """Resource categories for organization and UI display."""
    ADMINISTRATION = "ADMINISTRATION"
    ACADEMIC = "ACADEMIC"
    FINANCIAL = "FINANCIAL"
    CRM = "CRM"
    CONTRACTS = "CONTRACTS"
    CERTIFICATES = "CERTIFICATES"
    SUBSCRIPTIONS = "SUBSCRIPTIONS"
    REPORTS = "REPORTS"
    AUDIT = "AUDIT"
