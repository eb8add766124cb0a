"""Orchestrator for helm-releases.

The orchestrator composes tag selection, ordering, configuration resolution
and the install decision into the install, uninstall and test plans for the
active release target, and executes them with a `ReleaseClient`.

Every plan is computed completely before any helm command is issued. Releases
then run in waves: a release runs once every release ordered before it has
succeeded. Releases in the same wave run concurrently. When a release fails,
the releases ordered after it are skipped, while releases that have no
ordering relationship with it still run.
"""

import asyncio
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
import logging

from helm_releases import tags
from helm_releases.config import OrchestratorConfig
from helm_releases.context import trace_context
from helm_releases.decision import decide_install_mode
from helm_releases.exceptions import (
    DependencyFailedError,
    ReleaseException,
    UnresolvedReferenceError,
)
from helm_releases.helm import ReleaseClient
from helm_releases.manifest import (
    DEFAULT_TARGET_NAME,
    Release,
    ReleaseManifest,
    ReleaseTarget,
)
from helm_releases.ordering import EdgeKind, ReleaseOrder, build_order
from helm_releases.resolver import ReleasePlan, resolve_plan
from helm_releases.status import ReleaseStatus, Status, StatusInfo

from .steps import (
    INSTALL_ALL,
    TEST_ALL,
    UNINSTALL_ALL,
    Step,
    StepKind,
    install_step_name,
    release_test_step_name,
    target_install_step_name,
    target_test_step_name,
    target_uninstall_step_name,
    uninstall_step_name,
)

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Selection:
    """The active release target and the tag expression selecting releases.

    Created once per invocation and passed explicitly to every call that
    depends on it.
    """

    target: ReleaseTarget
    """The active release target."""

    tag_expression: tags.TagExpression
    """The global selector combined with the target's `selectTags`."""

    def selects(self, release: Release) -> bool:
        """Return true if the release is selected by tags."""
        return tags.evaluate(self.tag_expression, release.tags)


@dataclass(frozen=True)
class ExecutionPlan:
    """Everything needed to run releases against the active target."""

    selection: Selection
    """The selection the plan was built for."""

    order: ReleaseOrder
    """The eligible releases and their install and uninstall order."""

    plans: Mapping[str, ReleasePlan]
    """The effective plan of every eligible release, by release name."""

    @property
    def target_name(self) -> str:
        """The name of the active target."""
        return self.selection.target.name

    @property
    def test_order(self) -> list[str]:
        """Releases with tests enabled, in install order."""
        return [name for name in self.order.install if self.plans[name].test.enabled]


def select_target(
    targets: Mapping[str, ReleaseTarget], name: str | None
) -> ReleaseTarget:
    """Return the active release target.

    When no targets are declared a target named `default` with default
    options is created.
    """
    target_name = name or DEFAULT_TARGET_NAME
    if not targets and target_name == DEFAULT_TARGET_NAME:
        _LOGGER.debug("No release targets declared, using synthetic default target")
        return ReleaseTarget(name=DEFAULT_TARGET_NAME)
    if (target := targets.get(target_name)) is None:
        raise UnresolvedReferenceError("Active target selection", target_name, "target")
    return target


def build_selection(target: ReleaseTarget, select_tags: str | None) -> Selection:
    """Combine the global selector and the target's selector."""
    global_expr: tags.TagExpression | None = None
    if select_tags and select_tags.strip():
        global_expr = tags.parse(select_tags, "global tag selector")
    target_expr = tags.parse(target.select_tags, f"release target {target.name}")
    return Selection(target=target, tag_expression=tags.combine(global_expr, target_expr))


def _ready_releases(
    queue: Sequence[str],
    predecessors: Callable[[str], Iterable[str]],
    results: Mapping[str, StatusInfo],
) -> tuple[list[str], list[tuple[str, str]], list[str]]:
    """Split the queue into releases that are ready, blocked or still pending."""
    ready = []
    blocked = []
    pending = []
    for name in queue:
        preds = [pred for pred in predecessors(name) if pred in results]
        if failed := [
            pred
            for pred in preds
            if results[pred].status in (Status.FAILED, Status.SKIPPED)
        ]:
            blocked.append((name, failed[0]))
        elif all(results[pred].status == Status.SUCCEEDED for pred in preds):
            ready.append(name)
        else:
            _LOGGER.debug("Release %s waiting for %s", name, preds)
            pending.append(name)
    return (ready, blocked, pending)


class Orchestrator:
    """Plans and runs the releases of a manifest against the active target."""

    def __init__(
        self,
        manifest: ReleaseManifest,
        client: ReleaseClient,
        config: OrchestratorConfig | None = None,
    ) -> None:
        """Initialize the orchestrator.

        All releases are indexed by name before any reference between them is
        resolved, so releases may refer to releases declared after them.
        """
        self._releases = manifest.release_map
        self._targets = manifest.target_map
        self._charts = manifest.chart_map
        self._client = client
        self.config = config or OrchestratorConfig()
        self.selection = build_selection(
            select_target(self._targets, self.config.target),
            self.config.select_tags,
        )
        _LOGGER.info("Active release target: %s", self.selection.target.name)

    @property
    def targets(self) -> list[ReleaseTarget]:
        """Declared release targets, or the synthetic default target."""
        if not self._targets:
            return [self.selection.target]
        return [self._targets[name] for name in sorted(self._targets)]

    async def plan(self, selection: Selection | None = None) -> ExecutionPlan:
        """Compute the execution plan for a selection, the active one by default."""
        selection = selection or self.selection
        target = selection.target
        with trace_context(f"Plan '{target.name}'"):
            selected = [
                name
                for name, release in sorted(self._releases.items())
                if selection.selects(release)
            ]
            _LOGGER.debug("Releases selected by tags: %s", selected)
            order = build_order(self._releases, selected)
            names = sorted(order.eligible)
            plans = await asyncio.gather(
                *(
                    resolve_plan(
                        self._releases[name],
                        target,
                        defaults=self.config.defaults,
                        test_defaults=self.config.test_defaults,
                        charts=self._charts,
                        values_file_prefix=self.config.values_file_prefix,
                    )
                    for name in names
                )
            )
        return ExecutionPlan(
            selection=selection, order=order, plans=dict(zip(names, plans))
        )

    async def steps(self) -> list[Step]:
        """Return the steps for every release and target.

        Steps of targets other than the active one are skipped. The build-wide
        aggregate steps depend on the steps of the active target.
        """
        active = self.selection.target.name
        result: list[Step] = []
        for target in self.targets:
            if target.name == active:
                selection = self.selection
            else:
                selection = build_selection(target, self.config.select_tags)
            execution = await self.plan(selection)
            result.extend(self._target_steps(execution, skip=target.name != active))
            if target.name != active:
                continue
            result.extend(
                [
                    Step(
                        name=INSTALL_ALL,
                        kind=StepKind.INSTALL,
                        depends_on=tuple(
                            install_step_name(name, active)
                            for name in execution.order.install
                        ),
                    ),
                    Step(
                        name=UNINSTALL_ALL,
                        kind=StepKind.UNINSTALL,
                        depends_on=tuple(
                            uninstall_step_name(name, active)
                            for name in execution.order.uninstall
                        ),
                    ),
                    Step(
                        name=TEST_ALL,
                        kind=StepKind.TEST,
                        depends_on=tuple(
                            release_test_step_name(name, active)
                            for name in execution.test_order
                        ),
                    ),
                ]
            )
        return result

    def _target_steps(self, execution: ExecutionPlan, skip: bool) -> list[Step]:
        """Return the per-release and aggregate steps of a target."""
        order = execution.order
        target_name = execution.target_name
        steps: list[Step] = []
        for name in sorted(self._releases):
            eligible = name in order.eligible
            install = install_step_name(name, target_name)
            hard_install = order.install_predecessors(name, EdgeKind.HARD)
            hard_uninstall = order.uninstall_predecessors(name, EdgeKind.HARD)
            task_dependencies = (
                execution.plans[name].task_dependencies if eligible else []
            )
            steps.append(
                Step(
                    name=install,
                    kind=StepKind.INSTALL,
                    target_name=target_name,
                    release_name=name,
                    must_run_after=tuple(
                        install_step_name(pred, target_name)
                        for pred in order.install_predecessors(name, EdgeKind.SOFT)
                        if pred not in hard_install
                    ),
                    depends_on=(
                        *(install_step_name(pred, target_name) for pred in hard_install),
                        *task_dependencies,
                    ),
                    skip=skip or not eligible,
                )
            )
            steps.append(
                Step(
                    name=uninstall_step_name(name, target_name),
                    kind=StepKind.UNINSTALL,
                    target_name=target_name,
                    release_name=name,
                    must_run_after=tuple(
                        uninstall_step_name(pred, target_name)
                        for pred in order.uninstall_predecessors(name, EdgeKind.SOFT)
                        if pred not in hard_uninstall
                    ),
                    depends_on=tuple(
                        uninstall_step_name(pred, target_name) for pred in hard_uninstall
                    ),
                    skip=skip or not eligible,
                )
            )
            steps.append(
                Step(
                    name=release_test_step_name(name, target_name),
                    kind=StepKind.TEST,
                    target_name=target_name,
                    release_name=name,
                    must_run_after=(
                        install,
                        *(
                            release_test_step_name(pred, target_name)
                            for pred in order.install_predecessors(name)
                        ),
                    ),
                    skip=(
                        skip
                        or not eligible
                        or not execution.plans[name].test.enabled
                    ),
                )
            )
        steps.extend(
            [
                Step(
                    name=target_install_step_name(target_name),
                    kind=StepKind.INSTALL,
                    target_name=target_name,
                    depends_on=tuple(
                        install_step_name(name, target_name) for name in order.install
                    ),
                    skip=skip,
                ),
                Step(
                    name=target_uninstall_step_name(target_name),
                    kind=StepKind.UNINSTALL,
                    target_name=target_name,
                    depends_on=tuple(
                        uninstall_step_name(name, target_name)
                        for name in order.uninstall
                    ),
                    skip=skip,
                ),
                Step(
                    name=target_test_step_name(target_name),
                    kind=StepKind.TEST,
                    target_name=target_name,
                    depends_on=tuple(
                        release_test_step_name(name, target_name)
                        for name in execution.test_order
                    ),
                    skip=skip,
                ),
            ]
        )
        return steps

    async def _install_release(self, plan: ReleasePlan) -> None:
        async def query_status(release_name: str) -> ReleaseStatus:
            return await self._client.status(plan)

        mode = await decide_install_mode(
            plan.release_name, bool(plan.options.replace), query_status
        )
        _LOGGER.debug("Release %s install mode: %s", plan.release_name, mode)
        await self._client.install_with_mode(plan, mode)

    async def _execute(
        self,
        action: str,
        execution: ExecutionPlan,
        names: Sequence[str],
        predecessors: Callable[[str], Iterable[str]],
        func: Callable[[ReleasePlan], Awaitable[None]],
    ) -> dict[str, StatusInfo]:
        """Run the function for each release once its predecessors succeeded."""
        results = {name: StatusInfo(Status.PENDING) for name in names}

        async def run_release(name: str) -> None:
            with trace_context(f"{action} '{name}'"):
                try:
                    await func(execution.plans[name])
                except ReleaseException as err:
                    _LOGGER.error(
                        "%s release %s on target %s failed: %s",
                        action,
                        name,
                        execution.target_name,
                        err,
                    )
                    results[name] = StatusInfo(Status.FAILED, str(err))
                    return
            results[name] = StatusInfo(Status.SUCCEEDED)

        with trace_context(f"Target '{execution.target_name}'"):
            queue = list(names)
            while queue:
                (ready, blocked, pending) = _ready_releases(
                    queue, predecessors, results
                )
                for name, dep in blocked:
                    err = DependencyFailedError(name, dep, results[dep].error)
                    _LOGGER.warning("Skipping release %s: %s", name, err)
                    results[name] = StatusInfo(Status.SKIPPED, str(err))
                if not ready and not blocked:
                    raise ReleaseException(
                        f"Internal error: releases {pending} can never run"
                    )
                await asyncio.gather(*(run_release(name) for name in ready))
                queue = pending
        return results

    async def install(self) -> dict[str, StatusInfo]:
        """Install the selected releases to the active target."""
        execution = await self.plan()
        return await self._execute(
            "Install",
            execution,
            execution.order.install,
            execution.order.install_predecessors,
            self._install_release,
        )

    async def uninstall(self) -> dict[str, StatusInfo]:
        """Uninstall the selected releases from the active target."""
        execution = await self.plan()
        return await self._execute(
            "Uninstall",
            execution,
            execution.order.uninstall,
            execution.order.uninstall_predecessors,
            self._client.uninstall,
        )

    async def test(self) -> dict[str, StatusInfo]:
        """Test the selected releases with tests enabled on the active target."""
        execution = await self.plan()
        return await self._execute(
            "Test",
            execution,
            execution.test_order,
            execution.order.install_predecessors,
            self._client.test,
        )
