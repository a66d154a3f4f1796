"""Typed failures raised by external collaborators (store, sender)."""


class CollaboratorError(Exception):
    """Base class for failures of a collaborator the core calls out to."""

    code = "collaborator_error"

    def __init__(self, message: str, *, contact: str | None = None):
        self.message = message
        self.contact = contact
        super().__init__(message)


class PersistenceError(CollaboratorError):
    code = "persistence_error"


class DispatchError(CollaboratorError):
    code = "dispatch_error"
