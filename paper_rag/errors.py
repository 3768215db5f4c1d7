# =============================================================================
# Error Taxonomy
# =============================================================================
#
#   PaperRagError
#   ├── ConfigurationError     : fatal, never retried
#   │   └── IndexNotFoundError : querying/writing an index that was never created
#   ├── InputValidationError   : rejected before any network call
#   └── UpstreamUnavailable    : embedding / LLM / external call failed
#       └── StepTimeoutError   : a workflow step exceeded its time budget
#
# Heuristic parsing of agent text never raises: it degrades to placeholder
# values instead (see agents/synthesizer.py).
# =============================================================================

from __future__ import annotations


class PaperRagError(Exception):
    """Base class for all pipeline errors."""


class ConfigurationError(PaperRagError):
    """Dimension mismatch, missing collaborator or missing credentials."""


class IndexNotFoundError(ConfigurationError):
    """Raised when an operation targets an index that does not exist."""

    def __init__(self, name: str) -> None:
        super().__init__(
            f"Vector index '{name}' does not exist. "
            "Create it with create_index() before writing or querying."
        )
        self.name = name


class InputValidationError(PaperRagError, ValueError):
    """Invalid caller input: empty query, bad chunk config, bad filter."""


class UpstreamUnavailable(PaperRagError):
    """
    An upstream collaborator (embedding model, LLM, external source) failed.

    `retryable` tells the caller whether retrying the same request may
    succeed. The pipeline itself never retries.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class StepTimeoutError(UpstreamUnavailable):
    """A workflow step did not finish within its timeout."""

    def __init__(self, step: str, timeout: float) -> None:
        super().__init__(
            f"Workflow step '{step}' timed out after {timeout:.0f}s",
            retryable=True,
        )
        self.step = step
        self.timeout = timeout
