"""Custom exception classes for the TaxFlow API and delivery pipeline."""


class TaxFlowError(Exception):
    """Base exception for TaxFlow."""

    def __init__(self, code: str, message: str, details=None, status_code: int = 500):
        self.code = code
        self.message = message
        self.details = details
        self.status_code = status_code
        super().__init__(message)


class ValidationError(TaxFlowError):
    """Schema or request validation failure."""

    def __init__(self, message: str, details=None):
        super().__init__("VALIDATION_ERROR", message, details, status_code=400)


class NotFoundError(TaxFlowError):
    """Resource not found."""

    def __init__(self, resource: str, resource_id: str):
        self.resource_id = resource_id
        super().__init__(
            "NOT_FOUND",
            f"{resource} '{resource_id}' not found",
            status_code=404,
        )


class AuthenticationError(TaxFlowError):
    """Tenant or actor identity missing from the request."""

    def __init__(self, message: str = "Authentication required"):
        super().__init__("AUTHENTICATION_ERROR", message, status_code=401)


class ConflictError(TaxFlowError):
    """Resource state conflict."""

    def __init__(self, message: str):
        super().__init__("CONFLICT", message, status_code=409)


class InvalidTransitionError(TaxFlowError):
    """Requested workflow transition is not in the transition table."""

    def __init__(self, from_status: str, to_status: str, step: str | None, reason: str | None = None):
        message = f"Invalid transition: {from_status} -> {to_status} with step {step}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(
            "INVALID_TRANSITION",
            message,
            details={"from_status": from_status, "to_status": to_status, "step": step},
            status_code=400,
        )


class FilingNotFoundError(NotFoundError):
    def __init__(self, filing_id: str):
        super().__init__("Filing", filing_id)


class EndpointNotFoundError(NotFoundError):
    def __init__(self, endpoint_id: str):
        super().__init__("WebhookEndpoint", endpoint_id)


class EventNotFoundError(NotFoundError):
    def __init__(self, event_id: str):
        super().__init__("WebhookEvent", event_id)


class DeliveryNotFoundError(NotFoundError):
    def __init__(self, delivery_id: str):
        super().__init__("WebhookDelivery", delivery_id)


class DeliveryNetworkError(TaxFlowError):
    """Transient transport failure while posting a webhook.

    ``delivery_status`` is the classified outcome (``timeout``, ``invalid_url``
    or ``failed``); retried according to the endpoint's retry policy.
    """

    def __init__(self, delivery_status: str, message: str, http_status_code: int | None = None, response_payload=None):
        self.delivery_status = delivery_status
        self.http_status_code = http_status_code
        self.response_payload = response_payload
        super().__init__("DELIVERY_NETWORK_ERROR", message, status_code=502)


class SecretMissingError(TaxFlowError):
    """Endpoint has no signing secret; delivery to it is aborted."""

    def __init__(self, endpoint_id: str):
        super().__init__(
            "SECRET_MISSING",
            f"Signing secret missing for endpoint '{endpoint_id}'",
            status_code=500,
        )


class QueueEnqueueError(TaxFlowError):
    """A job could not be pushed onto the queue after its record was persisted."""

    def __init__(self, queue_name: str, job_type: str, reason: str):
        super().__init__(
            "QUEUE_ENQUEUE_FAILURE",
            f"Failed to enqueue {job_type} on {queue_name}: {reason}",
            status_code=503,
        )
