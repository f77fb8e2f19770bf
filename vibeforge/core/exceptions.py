class VibeforgeError(Exception):
    """Base exception for the Vibeforge backend."""

    pass


# ---------------------------------------------------------------------------
# Admission (raised synchronously, before any job exists)
# ---------------------------------------------------------------------------


class AdmissionError(VibeforgeError):
    """Raised when a request is rejected before a job is created."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class InsufficientCreditsError(AdmissionError):
    """Raised when the user's balance cannot cover the requested action."""

    def __init__(self, reason: str, remaining: int):
        self.remaining = remaining
        super().__init__(reason)


class InvalidRequestError(AdmissionError):
    """Raised when the submitted prompt or model selector is invalid."""

    pass


# ---------------------------------------------------------------------------
# Code generation
# ---------------------------------------------------------------------------


class GenerationError(VibeforgeError):
    """Raised when the CodeGenerator fails (content or provider error)."""

    pass


class TransientGenerationError(GenerationError):
    """Timeout, rate limit, overload or 5xx from the generation provider. Retried."""

    pass


# ---------------------------------------------------------------------------
# Sandboxes
# ---------------------------------------------------------------------------


class SandboxError(VibeforgeError):
    """Raised when sandbox operations fail."""

    pass


class SandboxProvisionError(SandboxError):
    """Raised when a sandbox cannot be created (provider error or timeout)."""

    pass


class SandboxExecutionError(SandboxError):
    """Raised when deploying or running the artifact inside a sandbox fails."""

    pass


class SandboxTeardownError(SandboxError):
    """Raised when the provider fails to kill a sandbox."""

    pass


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class PersistenceError(VibeforgeError):
    """Raised when the Job Store cannot be read or written."""

    pass


class LedgerError(PersistenceError):
    """Raised when the Credit Ledger cannot be read or written.

    Never means "insufficient credits".
    """

    pass


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobNotFoundError(VibeforgeError):
    """Raised when a job id does not resolve to a visible job."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobAccessDeniedError(VibeforgeError):
    """Raised when a user acts on a job they do not own."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"You do not have permission to modify job {job_id}")


class CancellationError(VibeforgeError):
    """Raised when sandbox teardown fails during cancellation."""

    pass
