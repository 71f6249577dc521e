"""Error types raised by the voting engine and its stores."""


class DerbyVoteError(Exception):
    """Base class for all engine errors."""
    pass


class NotFoundError(DerbyVoteError):
    """A voter, car, category, group or setting is absent or inactive."""
    pass


class ValidationError(DerbyVoteError):
    """The request is well-formed but not permitted.

    For example, a voter whose type is not on a category's allow-list.
    """
    pass


class InvalidInputError(ValidationError):
    """The request itself is malformed (non-numeric id, blank name, ...)."""
    pass


class ConflictError(DerbyVoteError):
    """A uniqueness rule in the store was violated."""
    pass


class VotingClosedError(DerbyVoteError):
    """Voting is closed.

    Kept apart from ValidationError so callers can show voters a distinct
    message.
    """

    def __init__(self, message: str = "voting is currently closed"):
        super().__init__(message)


class InternalError(DerbyVoteError):
    """Store or transport failure not caused by the caller's input."""
    pass
