"""Exception hierarchy for the agent core.

Provider-side errors are always absorbed by the router and turned into the
local fallback reply. Action-side errors fail the enclosing batch.
"""


class WorkbenchAgentError(Exception):
    """Base class for every error raised by the agent core."""


# --- Providers ---


class ProviderError(WorkbenchAgentError):
    """A provider could not produce a usable response."""


class ProviderAuthError(ProviderError):
    """Missing or empty credential for the active provider."""


class ProviderNetworkError(ProviderError):
    """Transport failure or non-success HTTP status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderParseError(ProviderError):
    """Response body is missing the expected content field."""


# --- Normalization ---


class NormalizationError(WorkbenchAgentError):
    """Model output could not be turned into a reply."""


class EmptyOutputError(NormalizationError):
    """Model output was empty or whitespace only."""


class MalformedActionsError(NormalizationError):
    """Model output contained an ``actions`` list with a malformed element."""


# --- Local runtime ---


class LocalRuntimeError(ProviderError):
    """The local codex runtime failed."""


class RuntimeNotFoundError(LocalRuntimeError):
    """The codex binary could not be resolved."""


class RuntimeTimeoutError(LocalRuntimeError):
    """The codex process exceeded its timeout and was abandoned."""

    def __init__(self, timeout_s: float):
        super().__init__(f"codex runtime timed out after {timeout_s:.1f}s")
        self.timeout_s = timeout_s


class RuntimeNonZeroExitError(LocalRuntimeError):
    """The codex process exited with a non-zero status."""

    def __init__(self, exit_code: int, detail: str = ""):
        message = f"codex runtime failed: exit={exit_code}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.exit_code = exit_code
        self.detail = detail


# --- Actions ---


class ActionValidationError(WorkbenchAgentError):
    """Action is unsupported or its payload is unusable."""


class UnsupportedActionError(ActionValidationError):
    def __init__(self, action_type: str):
        super().__init__(f"Unsupported action type: {action_type}")
        self.action_type = action_type


class MalformedPayloadError(ActionValidationError):
    """Payload is not a key-value object."""


class MissingFieldError(ActionValidationError):
    def __init__(self, name: str):
        super().__init__(f"Missing required field: {name}")
        self.name = name


class ExecutionError(WorkbenchAgentError):
    """A data-layer mutation failed."""


class TransactionAbortError(WorkbenchAgentError):
    """Rolling back a failed batch failed. Fatal, never retried."""
