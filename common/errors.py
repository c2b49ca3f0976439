class ClubServiceError(Exception):
    status_code = 400


class InvalidRequestError(ClubServiceError):
    status_code = 400


class NotFoundError(ClubServiceError):
    status_code = 404


class UserNotFoundError(NotFoundError):
    pass


class EventNotFoundError(NotFoundError):
    pass


class RegistrationNotFoundError(NotFoundError):
    pass


class PaymentNotFoundError(NotFoundError):
    pass


class ConflictError(ClubServiceError):
    status_code = 409


class InvalidStateTransitionError(ConflictError):
    pass


class DuplicateRegistrationError(ConflictError):
    pass


class AlreadyClaimedError(ConflictError):
    pass


class InsufficientBalanceError(ConflictError):
    pass


class AuthenticationError(ClubServiceError):
    status_code = 401


class SignatureVerificationError(AuthenticationError):
    pass


class UpstreamError(ClubServiceError):
    status_code = 502


class InvariantViolationError(ClubServiceError):
    status_code = 500


class ConfigurationError(ClubServiceError):
    status_code = 500
