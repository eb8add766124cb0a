"""Library for deciding how a release is installed.

The decision depends on the `replace` option of the release and on the
current state of the release in the cluster:

| replace | helm status            | mode            |
|---------|------------------------|-----------------|
| true    | (not queried)          | FORCE_REPLACE   |
| false   | release not found      | UPGRADE_INSTALL |
| false   | last deployment failed | FORCE_REPLACE   |
| false   | any other status       | UPGRADE_INSTALL |

A release whose only revision failed can't be upgraded, so it is replaced
instead. Any other failure of the status query is propagated.
"""

from collections.abc import Awaitable, Callable
from enum import StrEnum
import logging

from .exceptions import ReleaseNotFoundError
from .status import ReleaseStatus

__all__ = [
    "InstallMode",
    "decide_install_mode",
]

_LOGGER = logging.getLogger(__name__)


class InstallMode(StrEnum):
    """The helm command used to install a release."""

    FORCE_REPLACE = "ForceReplace"
    """`helm install --replace`"""

    UPGRADE_INSTALL = "UpgradeInstall"
    """`helm upgrade --install`"""

    PLAIN_INSTALL = "PlainInstall"
    """`helm install`"""


async def decide_install_mode(
    release_name: str,
    replace: bool,
    query_status: Callable[[str], Awaitable[ReleaseStatus]],
) -> InstallMode:
    """Decide how to install the release.

    The `query_status` function raises `ReleaseNotFoundError` when the
    release does not exist. Other errors it raises are not handled.
    """
    if replace:
        _LOGGER.debug("Release %s has replace set, replacing", release_name)
        return InstallMode.FORCE_REPLACE
    try:
        status = await query_status(release_name)
    except ReleaseNotFoundError:
        _LOGGER.debug("Release %s not found, installing", release_name)
        return InstallMode.UPGRADE_INSTALL
    if status.last_deployment_failed:
        _LOGGER.info(
            "Release %s last deployment failed, replacing the release",
            release_name,
        )
        return InstallMode.FORCE_REPLACE
    _LOGGER.debug("Release %s has status %s, upgrading", release_name, status.status)
    return InstallMode.UPGRADE_INSTALL
