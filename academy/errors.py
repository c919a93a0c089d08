"""Error taxonomy shared by services and routers.

Every error carries a stable ``code`` that routers return to clients and
that logs can be grepped for.
"""


class ServiceError(Exception):
    code = "SERVICE_ERROR"
    status_code = 400

    def __init__(self, message: str = None, code: str = None):
        if code:
            self.code = code
        self.message = message or self.code
        super().__init__(self.message)


class SignatureError(ServiceError):
    code = "INVALID_SIGNATURE"
    status_code = 400


class AlreadyEnrolledError(ServiceError):
    code = "ALREADY_ENROLLED"
    status_code = 409


class AlreadySubscribedError(ServiceError):
    code = "ALREADY_SUBSCRIBED"
    status_code = 409


class NotFoundError(ServiceError):
    code = "NOT_FOUND"
    status_code = 404


class CourseNotFoundError(NotFoundError):
    code = "COURSE_NOT_FOUND"


class PaymentNotFoundError(NotFoundError):
    code = "PAYMENT_NOT_FOUND"


class EnrollmentNotFoundError(NotFoundError):
    code = "ENROLLMENT_NOT_FOUND"


class EnrollmentRevokedError(ServiceError):
    """Revoked enrollments are terminal; a fresh grant is required."""

    code = "ENROLLMENT_REVOKED"
    status_code = 409


class InvalidPurchaseError(ServiceError):
    code = "INVALID_PURCHASE"
    status_code = 400


class GatewayError(ServiceError):
    """The payment processor rejected or failed a call."""

    code = "GATEWAY_ERROR"
    status_code = 502


class CreationFailedError(ServiceError):
    code = "CREATION_FAILED"
    status_code = 502


class WebhookProcessingError(ServiceError):
    code = "PROCESSING_ERROR"
    status_code = 500

    def __init__(self, event_id: str, event_type: str, message: str = None):
        self.event_id = event_id
        self.event_type = event_type
        super().__init__(message or f"Failed to process {event_type} ({event_id})")
