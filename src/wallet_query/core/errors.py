"""
Error taxonomy for the wallet query pipeline.

Decomposition-time errors (UnresolvedFieldError, AmbiguousQueryError) are
recovered by the pipeline as a "fall back to LLM" response. Store and
embedding errors degrade to a cache miss or a skipped learning turn.
MalformedQueryError is the only fatal error: it means a structured query
violates its own invariants and is raised loudly.
"""


class QueryPipelineError(Exception):
    """Base class for all wallet query errors."""


class UnresolvedFieldError(QueryPipelineError):
    """A natural-language field token has no canonical field mapping."""

    def __init__(self, token: str | None, context: str | None = None):
        self.token = token
        self.context = context
        if token is None:
            message = "No field could be identified"
        else:
            message = f"Unknown field '{token}'"
        if context:
            message = f"{message} ({context})"
        super().__init__(message)


class AmbiguousQueryError(QueryPipelineError):
    """Extracted entities contradict each other and cannot be reconciled."""

    def __init__(self, reasons: list[str]):
        self.reasons = reasons
        super().__init__(f"Ambiguous query: {'; '.join(reasons)}")


class ExternalStoreUnavailable(QueryPipelineError):
    """The pattern store could not be reached or failed to persist."""


class EmbeddingServiceError(QueryPipelineError):
    """The embedding capability failed to produce a vector."""


class MalformedQueryError(QueryPipelineError, ValueError):
    """
    A structured query violates the plan invariants.

    Contains the list of violated constraints.
    """

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Malformed structured query: {'; '.join(errors)}")


class CoercionError(ValueError):
    """A record value cannot be coerced to the type a predicate requires."""
