"""Billing error taxonomy.

WHAT: Exceptions raised when a payment cannot be applied for a business reason
WHY: The webhook layer must tell funnel/config problems (these, HTTP 422) apart
     from infrastructure failures (anything else, HTTP 500 + Sentry)

Ignorable events never raise; they come back as an "ignored" result.
"""


class BusinessRuleError(Exception):
    """A business precondition for applying a payment failed."""


class AccountNotFoundError(BusinessRuleError):
    pass


class AccountNotVerifiedError(BusinessRuleError):
    pass


class EmailMismatchError(BusinessRuleError):
    pass


class WorkspaceNotFoundError(BusinessRuleError):
    pass


class AffiliateLinkNotFoundError(BusinessRuleError):
    pass


class SubscriptionNotFoundError(BusinessRuleError):
    pass


class PaymentFlowConfigurationError(BusinessRuleError):
    """The event's plan identifiers don't match the flow it was sent to.

    Usually an ad campaign or checkout link pointing at the wrong flow.
    """


class UnknownFrequencyError(ValueError):
    """Billing frequency string not recognized."""
