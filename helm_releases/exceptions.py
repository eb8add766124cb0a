"""Exceptions related to helm-releases."""

__all__ = [
    "ReleaseException",
    "InputException",
    "TagExpressionSyntaxError",
    "UnresolvedReferenceError",
    "CyclicOrderingError",
    "CommandException",
    "HelmException",
    "ReleaseNotFoundError",
    "StatusQueryTransportError",
    "DependencyFailedError",
]


class ReleaseException(Exception):
    """Generic base exception used for this library."""


class InputException(ReleaseException):
    """Raised when the release definitions are not formatted as expected."""


class TagExpressionSyntaxError(InputException):
    """Raised when a tag selector expression can't be parsed."""

    def __init__(
        self,
        expression: str,
        message: str,
        position: int | None = None,
        source: str | None = None,
    ):
        self.expression = expression
        self.position = position
        self.reason = message
        self.source = source
        location = f" at position {position}" if position is not None else ""
        owner = f" in {source}" if source else ""
        super().__init__(
            f"Invalid tag expression '{expression}'{owner}{location}: {message}"
        )


class UnresolvedReferenceError(InputException):
    """Raised when a release refers to a release, target or chart that does not exist."""

    def __init__(self, source: str, reference: str, kind: str = "release") -> None:
        self.source = source
        self.reference = reference
        self.kind = kind
        super().__init__(f"{source} refers to unknown {kind} '{reference}'")


class CyclicOrderingError(InputException):
    """Raised when the ordering constraints between releases contain a cycle."""

    def __init__(self, release_name: str, cycle: list[str] | None = None) -> None:
        self.release_name = release_name
        self.cycle = cycle or [release_name]
        super().__init__(
            f"Release {release_name} is part of an ordering cycle: "
            f"{' -> '.join(self.cycle)}"
        )


class CommandException(ReleaseException):
    """Raised when there is a failure running a subcommand."""


class HelmException(CommandException):
    """Raised when there is a failure running a helm command."""


class ReleaseNotFoundError(ReleaseException):
    """Raised by a status query when the release is not installed."""

    def __init__(self, release_name: str) -> None:
        self.release_name = release_name
        super().__init__(f"Release {release_name} not found")


class StatusQueryTransportError(ReleaseException):
    """Raised when the status of a release could not be determined."""

    def __init__(self, release_name: str, message: str | None) -> None:
        self.release_name = release_name
        self.message = message
        super().__init__(
            f"Unable to query status of release {release_name}: "
            f"{message or 'Unknown error'}"
        )


class DependencyFailedError(ReleaseException):
    """Raised when a release is blocked because a release ordered before it failed."""

    def __init__(
        self,
        release_name: str,
        dependency_name: str,
        dependency_error: str | None,
    ):
        self.release_name = release_name
        self.dependency_name = dependency_name
        self.dependency_error = dependency_error
        super().__init__(
            f"Release {release_name} dependency {dependency_name} failed: "
            f"{dependency_error or 'Unknown error'}"
        )
