"""Module for locating conventionally named value files for a release.

A release may declare a values directory that holds a common values file and
target specific values files:

```
helm-values/myApp/
  values.yaml         # used for every target
  values-prod.yaml    # used only for the `prod` target
```
"""

import logging
from pathlib import Path

from aiofiles.ospath import isdir, isfile

__all__ = [
    "resolve_values_directory",
]

_LOGGER = logging.getLogger(__name__)

VALUES_FILE_PREFIX = "values"
VALUES_FILE_SUFFIX = ".yaml"


def common_values_file(directory: Path, prefix: str = VALUES_FILE_PREFIX) -> Path:
    """Return the path of the values file used for every target."""
    return directory / f"{prefix}{VALUES_FILE_SUFFIX}"


def target_values_file(
    directory: Path, target_name: str, prefix: str = VALUES_FILE_PREFIX
) -> Path:
    """Return the path of the values file used for a single target."""
    return directory / f"{prefix}-{target_name}{VALUES_FILE_SUFFIX}"


async def resolve_values_directory(
    directory: Path | str | None,
    target_name: str,
    prefix: str = VALUES_FILE_PREFIX,
) -> list[Path]:
    """Return the value files that exist in the directory for the target.

    The common file comes before the target specific file so that the target
    specific file takes precedence. Missing files are omitted and a missing
    directory results in an empty list.
    """
    if not directory:
        return []
    directory = Path(directory)
    if not await isdir(directory):
        _LOGGER.debug("Values directory %s does not exist", directory)
        return []
    result = []
    for candidate in (
        common_values_file(directory, prefix),
        target_values_file(directory, target_name, prefix),
    ):
        if await isfile(candidate):
            result.append(candidate)
        else:
            _LOGGER.debug("Values file %s not found, skipping", candidate)
    return result
