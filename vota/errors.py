"""
Error taxonomy for the pipeline.

  VotaError
    ConfigurationError   — credential/config missing at startup (fatal)
    AuthenticationError  — provider rejected our credentials (401/403)
    ProviderApiError     — any other non-success provider response
      GenerationFailedError — every model in the fallback chain failed
    ProviderJobFailed    — an accepted job later reached the failed state
    ValidationError      — malformed client input
    NotFoundError        — unknown record id
    ConflictError        — conditional update lost against a concurrent writer
    TransientCheckError  — polling an in-flight job failed
"""

from typing import Optional


class VotaError(Exception):
    code = "VOTA_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(VotaError):
    code = "CONFIG_ERROR"


class AuthenticationError(VotaError):
    code = "AUTH_ERROR"

    def __init__(self, message: str, endpoint: str = ""):
        super().__init__(message)
        self.endpoint = endpoint


class ProviderApiError(VotaError):
    code = "PROVIDER_API_ERROR"

    def __init__(self, message: str, status: int = 0, body: str = "", endpoint: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body
        self.endpoint = endpoint


class GenerationFailedError(ProviderApiError):
    code = "GENERATION_ERROR"

    def __init__(self, failures: list[str]):
        super().__init__(f"All video generation models failed: {', '.join(failures)}")
        self.failures = failures


class ProviderJobFailed(VotaError):
    code = "PROVIDER_JOB_FAILED"

    def __init__(self, message: str, request_id: Optional[str] = None):
        super().__init__(message)
        self.request_id = request_id


class ValidationError(VotaError):
    code = "VALIDATION_ERROR"


class NotFoundError(VotaError):
    code = "NOT_FOUND"


class ConflictError(VotaError):
    code = "CONFLICT"


class TransientCheckError(VotaError):
    code = "TRANSIENT_CHECK_ERROR"


_SOLUTIONS = {
    ConfigurationError.code: (
        "Check the service configuration. Make sure REPLICATE_API_TOKEN "
        "(and FAL_KEY for personalisation) are set."
    ),
    AuthenticationError.code: (
        "Authentication with the AI provider failed. Check that the API token "
        "is correct and has not expired."
    ),
    ProviderApiError.code: (
        "The AI provider returned an error. Check the message for details, or "
        "try again later as the service might be temporarily unavailable."
    ),
    GenerationFailedError.code: (
        "Video generation failed on every available model. Try a different "
        "prompt or try again later."
    ),
    ProviderJobFailed.code: "The AI provider could not finish the job. Please try again.",
}


def solution_for(error: Exception) -> str:
    """Human-readable remediation hint for an error."""
    code = getattr(error, "code", None)
    return _SOLUTIONS.get(
        code,
        "An unexpected error occurred. Please try again or contact support if the issue persists.",
    )
