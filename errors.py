# Nyaya Error Taxonomy
# Every engine raises one of these. The API maps them onto the standard
# {"ok": false, "error": {"code", "message"}} envelope with the status
# code carried by the class, so each outcome stays distinct for callers.


class GovernanceError(Exception):
    """Base class for recoverable, user-actionable failures."""

    code = "governance_error"
    status_code = 400

    def __init__(self, message="", code=None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class Unauthenticated(GovernanceError):
    """Missing or unresolvable caller identity."""

    code = "unauthenticated"
    status_code = 401


class PermissionDenied(GovernanceError):
    code = "forbidden"
    status_code = 403


class InvalidInput(GovernanceError):
    """Malformed value or missing required field."""

    code = "invalid_input"
    status_code = 400


class InvalidChoice(InvalidInput):
    code = "invalid_choice"


class NotFound(GovernanceError):
    code = "not_found"
    status_code = 404


class InvalidState(GovernanceError):
    """Action not permitted in the entity's current status."""

    code = "invalid_state"
    status_code = 409


class Conflict(GovernanceError):
    """Uniqueness violation, e.g. a second ballot on the same proposal."""

    code = "conflict"
    status_code = 409
