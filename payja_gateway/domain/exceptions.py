"""Domain-specific exceptions"""


class DomainException(Exception):
    """Base exception for domain layer"""

    pass


class InputValidationError(DomainException):
    """User input is malformed; the current prompt is shown again"""

    pass


class SessionNotFoundError(DomainException):
    """No USSD session exists for the given id"""

    pass


class SessionExpiredError(DomainException):
    """Session passed its inactivity deadline"""

    pass


class SessionClosedError(DomainException):
    """Session already reached a terminal status"""

    pass


class SessionBusyError(DomainException):
    """Another request kept the session locked for too long"""

    pass


class PartnerUnavailableError(DomainException):
    """Partner bank or operator API returned an error or is unreachable"""

    def __init__(self, partner_code: str, message: str):
        super().__init__(f"{partner_code}: {message}")
        self.partner_code = partner_code


class UnknownPartnerError(DomainException):
    """No adapter registered for the partner code or phone prefix"""

    pass


class DecisionConflictError(DomainException):
    """Customer already holds a loan that is not finished"""

    pass


class NotificationDeliveryError(DomainException):
    """SMS provider rejected the message or could not be reached"""

    pass
