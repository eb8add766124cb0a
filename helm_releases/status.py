"""Status information for releases."""

from enum import StrEnum
from dataclasses import dataclass


class Status(StrEnum):
    """Execution status of a release step."""

    PENDING = "Pending"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    SKIPPED = "Skipped"


@dataclass
class StatusInfo:
    """Execution status and optional error message for a release step."""

    status: Status
    error: str | None = None

    def __str__(self) -> str:
        """Return a string representation of the status."""
        if self.error:
            return f"{self.status}: {self.error}"
        return str(self.status)


@dataclass(frozen=True)
class ReleaseStatus:
    """Status of a deployed release as reported by `helm status`."""

    name: str
    """The name of the release."""

    status: str
    """The status of the last deployment e.g. `deployed` or `failed`."""

    revision: int | None = None
    """The revision of the last deployment."""

    @property
    def last_deployment_failed(self) -> bool:
        """Return true if the last deployment of the release failed."""
        return self.status == "failed"
