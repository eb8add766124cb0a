"""Named steps exposed to the build for every release and release target.

Every (release, target) pair gets an install, uninstall and test step. Steps
refer to each other by name:

- `must_run_after` holds soft ordering relationships between steps.
- `depends_on` holds hard dependencies that must run first.

Steps of targets other than the active one, or of releases not selected for
a target, are still generated but have `skip` set.
"""

from dataclasses import dataclass
from enum import StrEnum

from helm_releases.manifest import capitalize

__all__ = [
    "Step",
    "StepKind",
    "install_step_name",
    "uninstall_step_name",
    "release_test_step_name",
]

INSTALL_ALL = "helmInstall"
UNINSTALL_ALL = "helmUninstall"
TEST_ALL = "helmTest"


class StepKind(StrEnum):
    """The kind of work a step performs."""

    INSTALL = "install"
    UNINSTALL = "uninstall"
    TEST = "test"


@dataclass(frozen=True)
class Step:
    """A named unit of work for the build."""

    name: str
    """The unique name of the step."""

    kind: StepKind
    """The kind of work the step performs."""

    target_name: str | None = None
    """The release target, unset for the build-wide aggregate steps."""

    release_name: str | None = None
    """The release, unset for aggregate steps."""

    must_run_after: tuple[str, ...] = ()
    """Steps this step is ordered after, if they run at all."""

    depends_on: tuple[str, ...] = ()
    """Steps that must run before this step."""

    skip: bool = False
    """If true, the step is skipped when executed."""

    @property
    def is_aggregate(self) -> bool:
        """Return true if the step only groups other steps."""
        return self.release_name is None


def install_step_name(release_name: str, target_name: str) -> str:
    """Name of the step installing a release to a target."""
    return f"helmInstall{capitalize(release_name)}To{capitalize(target_name)}"


def uninstall_step_name(release_name: str, target_name: str) -> str:
    """Name of the step uninstalling a release from a target."""
    return f"helmUninstall{capitalize(release_name)}From{capitalize(target_name)}"


def release_test_step_name(release_name: str, target_name: str) -> str:
    """Name of the step testing a release on a target."""
    return f"helmTest{capitalize(release_name)}On{capitalize(target_name)}"


def target_install_step_name(target_name: str) -> str:
    """Name of the step installing every selected release to a target."""
    return f"helmInstallTo{capitalize(target_name)}"


def target_uninstall_step_name(target_name: str) -> str:
    """Name of the step uninstalling every selected release from a target."""
    return f"helmUninstallFrom{capitalize(target_name)}"


def target_test_step_name(target_name: str) -> str:
    """Name of the step testing every selected release on a target."""
    return f"helmTestOn{capitalize(target_name)}"
