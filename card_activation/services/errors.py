class ActivationError(Exception):
    """Base class for failures surfaced to callers of the activation flow."""

    detail = "Activation failed"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.detail)
        self.detail = detail or self.detail


class ValidationError(ActivationError):
    detail = "Bad request"


class NotFound(ActivationError):
    detail = "Card not found"


class InvalidCredential(ActivationError):
    detail = "Invalid pin"


class InvalidOtp(ActivationError):
    detail = "Invalid otp"


class NoOtpRequested(ActivationError):
    detail = "No otp requested"


class OtpAlreadyUsed(ActivationError):
    detail = "Otp already used"


class OtpExpired(ActivationError):
    detail = "Otp expired"


class CardAlreadyActive(ActivationError):
    detail = "Card already active"


class Throttled(ActivationError):
    detail = "Temporarily blocked due to failed attempts"


class InternalError(ActivationError):
    detail = "Server error"


class GenerationError(RuntimeError):
    pass


class HashingError(RuntimeError):
    pass
