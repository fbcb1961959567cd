class MarginEngineError(Exception):
    """Base class for margin risk engine errors."""


class PositionNotFoundError(MarginEngineError):
    def __init__(self, position_id: str):
        super().__init__(f"Position not found: {position_id}")
        self.position_id = position_id


class CollaboratorTimeoutError(MarginEngineError):
    """A repository or price lookup call did not return within the call timeout."""

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} timed out after {timeout}s")
        self.operation = operation
        self.timeout = timeout
