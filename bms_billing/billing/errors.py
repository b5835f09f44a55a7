"""Billing error taxonomy.

HTTP mapping lives in the router; services only raise.
"""


class BillingError(Exception):
    """Base class for every error raised by the billing engine."""


class SignatureError(BillingError):
    """Webhook signature could not be verified. Never retried."""


class TenantNotFoundError(BillingError):
    """No account projection matches a tenant / subscription / correlation id."""


class BillingValidationError(BillingError):
    """A command was rejected before any provider or projection mutation."""


class PlanNotFoundError(BillingValidationError):
    pass


class ProviderError(BillingError):
    """Permanent failure reported by the billing provider."""


class TransientProviderError(ProviderError):
    """Network, rate-limit or provider 5xx failure. Safe to retry."""


class ScheduleConflictError(ProviderError):
    """Schedule is no longer open (completed / canceled / released)."""


class DuplicateEventError(BillingError):
    """Ledger already holds this event id."""
