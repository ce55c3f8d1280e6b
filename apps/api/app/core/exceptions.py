from typing import Any


class ServiceError(Exception):
    """Base class for service-layer errors."""

    status_code = 400

    def __init__(self, message: str, *, code: str | None = None, extra: dict[str, Any] | None = None):
        super().__init__(message)
        self.code = code or "service_error"
        # Additional fields merged into the error envelope (remediation data)
        self.extra = extra or {}


class NotFoundError(ServiceError):
    status_code = 404

    def __init__(self, message: str = "Not found"):
        super().__init__(message, code="not_found")


class ValidationError(ServiceError):
    def __init__(self, message: str = "Validation error"):
        super().__init__(message, code="validation_error")


class PreconditionFailedError(ServiceError):
    def __init__(self, message: str, *, code: str = "precondition_failed"):
        super().__init__(message, code=code)


class SubscriptionInvalidError(ServiceError):
    status_code = 402

    def __init__(self, status: str | None):
        super().__init__(f"subscription not valid ({status or 'no status'})", code="subscription_invalid")
        self.status = status


class CapReachedError(ServiceError):
    status_code = 402

    def __init__(self, *, cap_cents: int, pending_cents: int, portal_url: str | None):
        super().__init__(
            "Usage cap reached",
            code="CAP_REACHED",
            extra={
                "capCents": cap_cents,
                "pendingLocalCents": pending_cents,
                "remainingCents": max(0, cap_cents - pending_cents),
                "portalUrl": portal_url,
            },
        )


class OverdueInvoiceError(ServiceError):
    status_code = 402

    def __init__(self, *, amount_remaining: int, portal_url: str | None):
        super().__init__(
            "You have unpaid invoices",
            code="OVERDUE",
            extra={"amountRemaining": amount_remaining, "portalUrl": portal_url},
        )


class UpstreamError(ServiceError):
    """External biller call failed; the message is surfaced verbatim."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message, code="upstream_error")
