# errors.py


class CourierServiceError(Exception):
    """Base class for errors raised by the courier service."""


class ConfigurationError(CourierServiceError, RuntimeError):
    """Missing or malformed configuration detected at startup."""


class AuthError(CourierServiceError):
    """Sign-up / sign-in failure."""


class InvalidTransition(CourierServiceError):
    """A mission phase change that the state machine does not allow."""

    def __init__(self, current, action: str):
        self.current = current
        self.action = action
        super().__init__(f"Cannot {action} while in phase {getattr(current, 'value', current)}")


class SubscriptionError(CourierServiceError):
    """The real-time change feed dropped a subscription."""
