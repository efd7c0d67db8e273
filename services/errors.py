# services/errors.py


class MembershipError(Exception):
    """Base error for membership operations. Carries a stable code for API responses."""

    code = "MEMBERSHIP_ERROR"

    def __init__(self, message, details=None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self):
        return {"code": self.code, "message": self.message, "details": self.details}


class NotFoundError(MembershipError):
    """A referenced user, tier, plan or subscription does not exist."""

    code = "NOT_FOUND"


class DomainConflictError(MembershipError):
    """The operation would break a lifecycle invariant."""

    code = "DOMAIN_CONFLICT"


class InvalidRequestError(MembershipError):
    """Input is missing or malformed."""

    code = "INVALID_REQUEST"
