# /app/workflows/errors.py

# Exception hierarchy for the flow runtime. The interpreter itself never
# raises these for graph problems; they surface from loading and services.


class FlowRuntimeError(Exception):
    """Base class for flow runtime errors."""


class FlowValidationError(FlowRuntimeError):
    """A flow graph failed load-time validation."""

    def __init__(self, flow_id: str, errors: list):
        self.flow_id = flow_id
        self.errors = errors
        super().__init__(f"Flow '{flow_id}' is invalid: {'; '.join(e['message'] for e in errors)}")


class FlowNotFoundError(FlowRuntimeError):
    pass


class SessionNotFoundError(FlowRuntimeError):
    pass


class SessionConflictError(FlowRuntimeError):
    """The session changed underneath us more times than we are willing to retry."""


class CompletionError(FlowRuntimeError):
    """No completion provider produced a reply."""
