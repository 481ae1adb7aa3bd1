"""Ghost kitchen error types.

State errors and not-found errors are kept distinct so callers can map
them to different responses. Neither is raised after a mutation has been
persisted.
"""


class GhostKitchenError(Exception):
    """Base class for ghost kitchen errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(GhostKitchenError):
    """Raised when a restaurant, session or opportunity does not exist."""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class InvalidStateError(GhostKitchenError):
    """Raised when an operation is not allowed in the current state."""

    pass
