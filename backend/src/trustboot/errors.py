"""Fatal bootstrap conditions.

Every error aborts the bootstrap of the role that raised it; restarting the
process is the only retry mechanism. "Already exists" is never an error and is
reported through return values instead.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from trustboot.services.coordinator import ValidationReport


class BootstrapError(Exception):
    """Base class for fatal bootstrap errors.

    ``step`` names the bootstrap step that failed. Store adapters raise without
    a step; the bootstrapper fills it in as the error passes through.
    """

    kind = "bootstrap_error"

    def __init__(self, message: str, step: str | None = None):
        self.message = message
        self.step = step
        super().__init__(message)

    def __str__(self) -> str:
        if self.step:
            return f"{self.step}: {self.message}"
        return self.message


class StoreUnavailable(BootstrapError):
    """Raised when the certificate store cannot be created or opened."""

    kind = "store_unavailable"


class ArtifactNotReady(BootstrapError):
    """Raised when an exchange artifact did not appear within the poll attempts."""

    kind = "artifact_not_ready"

    def __init__(self, artifact: str, attempts: int, step: str | None = None):
        self.artifact = artifact
        self.attempts = attempts
        super().__init__(f"{artifact} not available after {attempts} attempts", step)


class ImportFailed(BootstrapError):
    """Raised when a certificate or bundle cannot be imported."""

    kind = "import_failed"


class GenerationFailed(BootstrapError):
    """Raised when key or certificate generation fails."""

    kind = "generation_failed"


class ValidationMismatch(BootstrapError):
    """Raised when the final store state does not match the trust policy."""

    kind = "validation_mismatch"

    def __init__(self, report: "ValidationReport", step: str | None = None):
        self.report = report
        super().__init__("; ".join(report.issues) or "validation failed", step)


class BootstrapCancelled(BootstrapError):
    """Raised when process shutdown interrupts a wait on the exchange channel."""

    kind = "cancelled"


class ChannelError(BootstrapError):
    """Raised when the exchange channel cannot be read or written.

    Distinct from ``ArtifactNotReady``: the artifact may exist but the channel
    itself is broken (permissions, I/O error, wrong segment).
    """

    kind = "channel_error"


class IdentityNotFound(BootstrapError):
    """Raised when a nickname does not resolve to an identity in the store."""

    kind = "identity_not_found"

    def __init__(self, nickname: str, step: str | None = None):
        self.nickname = nickname
        super().__init__(f"no identity with nickname {nickname!r}", step)
