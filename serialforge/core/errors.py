"""
Error taxonomy for SerialForge

Key concepts:
- PlanningError: fatal for a run, no partial story can be produced
- GenerationError: failures of the external generative capability, split into
  retryable (rate limit, timeout, network, empty output) and non-retryable
  (content policy, invalid request, auth)
- InstallmentFailedError / ArcFailedError: recoverable vs hard failures in the
  writing loop
- PersistenceError: raised by durable stores; swallowed by callers for optional
  writes, propagated for the accepted installment text
"""

from typing import Optional


class SerialForgeError(Exception):
    """Base class for all engine errors."""
    pass


class PlanningError(SerialForgeError):
    """Story or arc planning failed; the run cannot continue."""
    pass


class GenerationError(SerialForgeError):
    """The generative capability failed to produce usable output."""

    retryable: bool = False

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class RetryableGenerationError(GenerationError):
    """Transient provider failure (rate limit, timeout, network, 5xx)."""

    retryable = True


class EmptyResponseError(RetryableGenerationError):
    """Provider returned an empty body."""
    pass


class NonRetryableGenerationError(GenerationError):
    """Permanent provider failure (content policy, invalid request, auth)."""

    retryable = False


class InstallmentFailedError(SerialForgeError):
    """A single installment could not be produced after all retries."""

    def __init__(self, installment: int, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"Installment {installment} failed: {message}")
        self.installment = installment
        self.cause = cause


class ArcFailedError(SerialForgeError):
    """Every installment of an arc failed."""

    def __init__(self, arc_number: int, failed: int, cause: Optional[BaseException] = None):
        super().__init__(
            f"Arc {arc_number} produced no installments ({failed} failed)"
        )
        self.arc_number = arc_number
        self.failed = failed
        self.cause = cause


class PersistenceError(SerialForgeError):
    """A durable store operation failed."""
    pass


class RunCancelledError(SerialForgeError):
    """The run was stopped through its cancellation signal."""
    pass
