"""
Engine exceptions.

Errors raised before a build exists (ConfigError, NotFoundError,
ConcurrencyLimitError) reach the caller of trigger. Errors raised while a
build runs are folded into step and build statuses.
"""

class EngineError(Exception):
    """Base class for all build engine errors."""
    pass

class ConfigError(EngineError):
    """Raised when a pipeline configuration is malformed or has no steps."""
    pass

class NotFoundError(EngineError):
    """Raised when a pipeline, build or step does not exist."""

    def __init__(self, kind: str, identifier):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} {identifier} not found")

class ConcurrencyLimitError(EngineError):
    """Raised when a pipeline already has its maximum of active builds."""

    def __init__(self, pipeline_id: int, limit: int):
        self.pipeline_id = pipeline_id
        self.limit = limit
        super().__init__(
            f"Pipeline {pipeline_id} already has {limit} active build(s)"
        )

class ExecutionError(EngineError):
    """Raised inside the executor when a step command cannot be run."""
    pass

class CancellationError(EngineError):
    """Raised inside the executor when a cancellation token has fired."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)

class InvalidTransitionError(EngineError):
    """Raised when a status change is not allowed by the state machine."""

    def __init__(self, entity: str, current: str, target: str):
        self.entity = entity
        self.current = current
        self.target = target
        super().__init__(f"Illegal {entity} transition: {current} -> {target}")

class PersistenceError(EngineError):
    """Raised when the persistence gateway cannot commit or read."""
    pass
