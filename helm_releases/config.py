"""Configuration objects for helm-releases."""

from dataclasses import dataclass, field

from .manifest import InstallOptions, ReleaseTestConfig
from .values import VALUES_FILE_PREFIX


def default_install_options() -> InstallOptions:
    """Global defaults used when neither a release nor a target sets an option."""
    return InstallOptions(
        replace=False,
        atomic=False,
        wait=False,
        wait_for_jobs=False,
        create_namespace=False,
        dry_run=False,
        no_hooks=False,
        skip_crds=False,
        reset_values=False,
        reuse_values=False,
        keep_history=False,
    )


def default_test_config() -> ReleaseTestConfig:
    """Global defaults for `helm test`."""
    return ReleaseTestConfig(enabled=True, show_logs=False)


@dataclass
class OrchestratorConfig:
    """Configuration for the orchestrator.

    Attributes:
        target: Name of the active release target. When unset the target
            named `default` is used.
        select_tags: Build-wide tag expression, combined with the active
            target's `selectTags`.
        defaults: Global install option defaults.
        test_defaults: Global defaults for `helm test`.
        values_file_prefix: Prefix of the conventional value files in a
            release's values directory.
    """

    target: str | None = None
    select_tags: str | None = None
    defaults: InstallOptions = field(default_factory=default_install_options)
    test_defaults: ReleaseTestConfig = field(default_factory=default_test_config)
    values_file_prefix: str = VALUES_FILE_PREFIX
