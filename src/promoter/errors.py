"""Error taxonomy for release promotion.

Every failure raised by the engine is a PromotionError carrying a category.
The category tells the caller whether retrying the whole invocation can help:

- INPUT: bad application/version/environment reference, fail fast.
- INFRASTRUCTURE: registry, version stream, git transport or host API
  unavailable. Retryable by the caller.
- CONFLICT: push rejected or PR closed without merge. A decision was made
  externally, never retried automatically.
- TIMEOUT: merge polling exhausted or the invocation was cancelled.
- UNSUPPORTED: unknown repository layout or malformed declaration file.
"""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    """Failure categories used to decide retry behavior."""

    INPUT = "input"
    INFRASTRUCTURE = "infrastructure"
    CONFLICT = "conflict"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"


class PromotionError(Exception):
    """Base exception for promotion failures."""

    category: ErrorCategory = ErrorCategory.INFRASTRUCTURE

    @property
    def retryable(self) -> bool:
        """Only infrastructure failures are worth retrying."""
        return self.category == ErrorCategory.INFRASTRUCTURE


# =============================================================================
# Input
# =============================================================================


class InvalidPromotionRequestError(PromotionError):
    """Raised when a promotion request fails validation."""

    category = ErrorCategory.INPUT


class EnvironmentNotFoundError(PromotionError):
    """Raised when the registry has no environment with the given name."""

    category = ErrorCategory.INPUT

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Environment '{name}' not found")


class EnvironmentSourceMissingError(PromotionError):
    """Raised when neither the environment nor the dev environment has a git source."""

    category = ErrorCategory.INPUT


class VersionNotFoundError(PromotionError):
    """Raised when the version stream does not know the application."""

    category = ErrorCategory.INPUT

    def __init__(self, application: str) -> None:
        self.application = application
        super().__init__(f"No version found in version stream for application '{application}'")


# =============================================================================
# Infrastructure
# =============================================================================


class RegistryUnavailableError(PromotionError):
    """Raised when environment records cannot be read."""


class VersionStreamUnavailableError(PromotionError):
    """Raised when the version stream source cannot be read."""


class RepositoryUnavailableError(PromotionError):
    """Raised when the environment repository cannot be cloned or fetched."""


class ScmError(PromotionError):
    """Raised when a source-control host API call fails."""


# =============================================================================
# Conflict
# =============================================================================


class PushRejectedError(PromotionError):
    """Raised when the host rejects a push (non-fast-forward)."""

    category = ErrorCategory.CONFLICT

    def __init__(self, branch: str, detail: str = "") -> None:
        self.branch = branch
        message = f"Push of branch '{branch}' was rejected"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class PromotionRejectedError(PromotionError):
    """Raised when the promotion PR is closed without being merged."""

    category = ErrorCategory.CONFLICT

    def __init__(self, pr_link: str) -> None:
        self.pr_link = pr_link
        super().__init__(f"Pull request {pr_link} was closed without merge")


# =============================================================================
# Timeout
# =============================================================================


class PromotionTimeoutError(PromotionError):
    """Raised when the PR is still open after the last poll attempt."""

    category = ErrorCategory.TIMEOUT

    def __init__(self, pr_link: str, attempts: int) -> None:
        self.pr_link = pr_link
        self.attempts = attempts
        super().__init__(
            f"Pull request {pr_link} not merged after {attempts} poll attempts; "
            "left open for manual follow-up"
        )


class PromotionCancelledError(PromotionError):
    """Raised when the invocation-scoped token is cancelled."""

    category = ErrorCategory.TIMEOUT


# =============================================================================
# Unsupported
# =============================================================================


class UnsupportedLayoutError(PromotionError):
    """Raised when a repository layout cannot be mutated."""

    category = ErrorCategory.UNSUPPORTED


class MalformedDeclarationError(PromotionError):
    """Raised when a declaration file cannot be parsed."""

    category = ErrorCategory.UNSUPPORTED
