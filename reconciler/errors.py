"""Engine exception hierarchy."""


class ReconcilerError(Exception):
    """Base exception for engine errors."""

    pass


class ValidationError(ReconcilerError):
    """Malformed rule/criterion, unknown reference or illegal state transition."""

    pass


class NotFoundError(ReconcilerError):
    """Referenced row, candidate or account does not exist."""

    def __init__(self, resource_name: str, resource_id: object):
        super().__init__(f"{resource_name} {resource_id} not found")
        self.resource_name = resource_name
        self.resource_id = resource_id


class AlreadyDecidedError(ReconcilerError):
    """Candidate (or row) was decided by another request first."""

    def __init__(self, message: str, *, candidate_id: int | None = None):
        super().__init__(message)
        self.candidate_id = candidate_id


class NoLinkError(ReconcilerError):
    """A required `linked` criterion found no paired transaction.

    Evaluated as a non-match; never escapes the rule evaluator.
    """

    pass


class CollaboratorTimeoutError(ReconcilerError):
    """An external collaborator did not answer within its time budget."""

    def __init__(self, service: str, timeout: float):
        super().__init__(f"{service} timed out after {timeout}s")
        self.service = service
        self.timeout = timeout


class CommitConflictError(ReconcilerError):
    """Staging row was already imported."""

    def __init__(self, row_id: int):
        super().__init__(f"Staging transaction {row_id} already imported")
        self.row_id = row_id
