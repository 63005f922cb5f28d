"""
Approval engine error taxonomy.

NotFound, Unauthorized, InvalidState and Conflict are caller-correctable and
abort the surrounding transaction. UpstreamUnavailable is raised by the
directory and notifier adapters and is absorbed by the engine.
"""


class ApprovalError(Exception):
    """Base class for all approval engine errors"""


class NotFoundError(ApprovalError):
    """Template, instance, step or action does not exist"""


class UnauthorizedError(ApprovalError):
    """Actor is not the resolved approver for a step"""


class InvalidStateError(ApprovalError):
    """Operation is not allowed in the record's current state"""


class ConflictError(ApprovalError):
    """Concurrent mutation detected"""


class DuplicateKeyError(ConflictError):
    """Unique key already taken in storage"""

    def __init__(self, table: str, unique_key: str):
        super().__init__(f"Duplicate key {unique_key!r} in {table}")
        self.table = table
        self.unique_key = unique_key


class UpstreamUnavailableError(ApprovalError):
    """ActorDirectory or NotifierPort could not be reached"""
