"""Exception hierarchy for the billing engine."""


class BillingError(Exception):
    """Base class for billing engine errors."""

    code = "billing_error"


class InvalidTransition(BillingError):
    """Raised when an account-status change is not an allowed edge."""

    code = "invalid_transition"

    def __init__(self, from_status, to_status):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Cannot transition from {_value(from_status)} to {_value(to_status)}"
        )


class BillingSelectionError(BillingError):
    """Raised when eligible accounts cannot be queried at all."""

    code = "billing_selection_failed"


class AccountNotFoundError(BillingError):
    code = "account_not_found"


class FailedJobNotFoundError(BillingError):
    code = "failed_job_not_found"


class FailedJobStateError(BillingError):
    """Raised when an operator action does not fit the job's status."""

    code = "failed_job_state"


def _value(status) -> str:
    return getattr(status, "value", status)
