"""Desired-replica computation from GitHub workload and the autoscaler spec."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Mapping, Optional

from .hra_types import (
    CACHE_ENTRY_KEY_DESIRED_REPLICAS,
    HorizontalRunnerAutoscaler,
    MetricSpec,
    MetricType,
)

_log = logging.getLogger("runnerscale.autoscaling")

DEFAULT_SCALE_UP_THRESHOLD = 0.8
DEFAULT_SCALE_DOWN_THRESHOLD = 0.3
DEFAULT_SCALE_UP_FACTOR = 1.3
DEFAULT_SCALE_DOWN_FACTOR = 0.7
DEFAULT_SCALE_DOWN_DELAY = timedelta(minutes=10)
DEFAULT_REPLICAS = 1


class AutoscalingError(Exception):
    """Raised when desired replicas cannot be computed."""


@dataclass(frozen=True)
class WorkflowRun:
    """A workflow run as reported by GitHub; id 0 means unknown."""

    status: str = ""
    id: int = 0


@dataclass(frozen=True)
class WorkflowJob:
    """A job of a workflow run."""

    status: str = ""


@dataclass(frozen=True)
class GitHubRunner:
    """A self-hosted runner registered with GitHub."""

    name: str
    busy: bool = False


class GitHubClient:
    """A snapshot of the GitHub state the autoscaler reads.

    ``workflow_runs`` maps "owner/repo" to the runs of that repository,
    ``workflow_jobs`` maps a run id to its jobs and ``runners`` maps a scope
    (repository, organization or enterprise name) to its registered runners.
    """

    def __init__(
        self,
        workflow_runs: Optional[Mapping[str, Iterable[WorkflowRun]]] = None,
        workflow_jobs: Optional[Mapping[int, Iterable[WorkflowJob]]] = None,
        runners: Optional[Mapping[str, Iterable[GitHubRunner]]] = None,
    ) -> None:
        self._workflow_runs = {k: list(v) for k, v in (workflow_runs or {}).items()}
        self._workflow_jobs = {k: list(v) for k, v in (workflow_jobs or {}).items()}
        self._runners = {k: list(v) for k, v in (runners or {}).items()}

    def list_repository_workflow_runs(self, owner: str, repo: str) -> list[WorkflowRun]:
        """Return the workflow runs of a repository."""
        key = f"{owner}/{repo}"
        try:
            return list(self._workflow_runs[key])
        except KeyError:
            raise AutoscalingError(f"repository {key} not found") from None

    def list_workflow_jobs(self, owner: str, repo: str, run_id: int) -> list[WorkflowJob]:
        """Return the jobs of a workflow run; unknown runs have none."""
        return list(self._workflow_jobs.get(run_id, []))

    def list_runners(
        self, enterprise: str, organization: str, repository: str
    ) -> list[GitHubRunner]:
        """Return the runners registered for the given scope."""
        scope = repository or organization or enterprise
        return list(self._runners.get(scope, []))


def _no_runners() -> set[str]:
    return set()


@dataclass
class ScaleTarget:
    """The resource being scaled and where its runners register."""

    name: str = ""
    kind: str = ""
    enterprise: str = ""
    repo: str = ""
    org: str = ""
    replicas: Optional[int] = None
    runner_names: Callable[[], set[str]] = field(default=_no_runners)


@dataclass(frozen=True)
class ReplicaComputation:
    """Outcome of a replica computation."""

    desired_replicas: int
    suggested_replicas: int
    cached_replicas: Optional[int]


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def get_value_available_at(
    now: datetime,
    start: Optional[datetime],
    end: Optional[datetime],
    reserved_value: int,
) -> Optional[int]:
    """Return reserved_value if now lies within [start, end], else None."""
    now = _aware(now)
    if end is not None and now > _aware(end):
        return None
    if start is not None and now < _aware(start):
        return None
    return reserved_value


def _parse_float(text: str, field_name: str) -> float:
    error = AutoscalingError(
        f"validating autoscaling metrics: spec.autoscaling.metrics[].{field_name} "
        "cannot be parsed into a float64"
    )
    if text != text.strip() or "_" in text:
        raise error
    try:
        return float(text)
    except ValueError:
        raise error from None


def _type_name(metric_type: object) -> str:
    return str(getattr(metric_type, "value", metric_type))


class Autoscaler:
    """Suggests and bounds the number of runner replicas."""

    def __init__(self, github_client: GitHubClient) -> None:
        self.github_client = github_client

    def fetch_suggested_replicas_from_cache(
        self, hra: HorizontalRunnerAutoscaler, now: datetime
    ) -> Optional[int]:
        """Return the cached desired replicas if a valid entry exists."""
        now = _aware(now)
        for entry in hra.status.cache_entries:
            if entry.key != CACHE_ENTRY_KEY_DESIRED_REPLICAS:
                continue
            if entry.expiration_time is None or not now < _aware(entry.expiration_time):
                continue
            return get_value_available_at(now, None, entry.expiration_time, entry.value)
        return None

    def suggest_desired_replicas(
        self, target: ScaleTarget, hra: HorizontalRunnerAutoscaler
    ) -> Optional[int]:
        """Suggest replicas from the configured metrics; None means use the minimum."""
        meta = hra.metadata
        if hra.spec.min_replicas is None:
            raise AutoscalingError(
                f"horizontalrunnerautoscaler {meta.namespace}/{meta.name} is missing minReplicas"
            )
        if hra.spec.max_replicas is None:
            raise AutoscalingError(
                f"horizontalrunnerautoscaler {meta.namespace}/{meta.name} is missing maxReplicas"
            )

        metrics = hra.spec.metrics
        if not metrics:
            if not hra.spec.scale_up_triggers:
                return self.suggest_replicas_by_queued_and_in_progress_workflow_runs(
                    target, hra, None
                )
            return None
        if len(metrics) > 2:
            raise AutoscalingError(
                "Too many autoscaling metrics configured: It must be 0 to 2, "
                f"but got {len(metrics)}"
            )

        primary = metrics[0]
        if primary.type == MetricType.TOTAL_NUMBER_OF_QUEUED_AND_IN_PROGRESS_WORKFLOW_RUNS:
            suggested = self.suggest_replicas_by_queued_and_in_progress_workflow_runs(
                target, hra, primary
            )
        elif primary.type == MetricType.PERCENTAGE_RUNNERS_BUSY:
            suggested = self.suggest_replicas_by_percentage_runners_busy(target, hra, primary)
        else:
            raise AutoscalingError(
                "validting autoscaling metrics: unsupported metric type "
                f'"{_type_name(primary.type)}"'
            )

        if suggested is not None and suggested > 0:
            return suggested
        if len(metrics) == 1:
            return None

        fallback = metrics[1]
        if (
            primary.type != MetricType.PERCENTAGE_RUNNERS_BUSY
            or fallback.type != MetricType.TOTAL_NUMBER_OF_QUEUED_AND_IN_PROGRESS_WORKFLOW_RUNS
        ):
            raise AutoscalingError(
                f"invalid HRA Spec: Metrics[0] of {_type_name(primary.type)} cannot be combined "
                f"with Metrics[1] of {_type_name(fallback.type)}: The only allowed combination "
                "is 0=PercentageRunnersBusy and 1=TotalNumberOfQueuedAndInProgressWorkflowRuns"
            )
        return self.suggest_replicas_by_queued_and_in_progress_workflow_runs(
            target, hra, fallback
        )

    def suggest_replicas_by_queued_and_in_progress_workflow_runs(
        self,
        target: ScaleTarget,
        hra: HorizontalRunnerAutoscaler,
        metric: Optional[MetricSpec],
    ) -> Optional[int]:
        """Suggest as many replicas as there are queued and running jobs."""
        repos: list[tuple[str, str]] = []
        if not target.repo:
            if not target.org:
                raise AutoscalingError(
                    "asserting runner deployment spec to detect bug: "
                    "spec.template.organization should not be empty on this code path"
                )
            # Organizational runners without metrics stay at the minimum plus reservations.
            if metric is None:
                return None
            if not metric.repository_names:
                raise AutoscalingError(
                    "validating autoscaling metrics: spec.autoscaling.metrics[].repositoryNames "
                    "is required and must have one more more entries for organizational "
                    "runner deployment"
                )
            repos = [(target.org, name) for name in metric.repository_names]
        else:
            parts = target.repo.split("/")
            if len(parts) < 2:
                raise AutoscalingError(f"invalid repository {target.repo!r}: expected OWNER/REPO")
            repos = [(parts[0], parts[1])]

        counts = {"completed": 0, "in_progress": 0, "queued": 0, "unknown": 0}

        def count_jobs(owner: str, repo: str, run: WorkflowRun, fallback: str) -> None:
            if run.id == 0:
                counts[fallback] += 1
                return
            try:
                jobs = self.github_client.list_workflow_jobs(owner, repo, run.id)
            except Exception:
                _log.exception("Error listing workflow jobs")
                counts[fallback] += 1
                return
            if not jobs:
                counts[fallback] += 1
                return
            for job in jobs:
                if job.status == "completed":
                    # Completed jobs are not counted at all.
                    continue
                if job.status in ("in_progress", "queued"):
                    counts[job.status] += 1
                else:
                    counts["unknown"] += 1

        for owner, repo in repos:
            for run in self.github_client.list_repository_workflow_runs(owner, repo):
                if run.status == "completed":
                    counts["completed"] += 1
                elif run.status in ("in_progress", "queued"):
                    count_jobs(owner, repo, run, run.status)
                else:
                    counts["unknown"] += 1

        necessary = counts["queued"] + counts["in_progress"]
        _log.debug(
            "Suggested desired replicas of %d by TotalNumberOfQueuedAndInProgressWorkflowRuns "
            "workflow_runs_completed=%d workflow_runs_in_progress=%d workflow_runs_queued=%d "
            "workflow_runs_unknown=%d namespace=%s kind=%s name=%s horizontal_runner_autoscaler=%s",
            necessary,
            counts["completed"],
            counts["in_progress"],
            counts["queued"],
            counts["unknown"],
            hra.metadata.namespace,
            target.kind,
            target.name,
            hra.metadata.name,
        )
        return necessary

    def suggest_replicas_by_percentage_runners_busy(
        self, target: ScaleTarget, hra: HorizontalRunnerAutoscaler, metric: MetricSpec
    ) -> int:
        """Scale by the fraction of this target's runners that are busy."""
        up_threshold = DEFAULT_SCALE_UP_THRESHOLD
        down_threshold = DEFAULT_SCALE_DOWN_THRESHOLD
        up_factor = DEFAULT_SCALE_UP_FACTOR
        down_factor = DEFAULT_SCALE_DOWN_FACTOR
        prefix = "validating autoscaling metrics: spec.autoscaling.metrics[]"

        if metric.scale_up_threshold:
            up_threshold = _parse_float(metric.scale_up_threshold, "scaleUpThreshold")
        if metric.scale_down_threshold:
            down_threshold = _parse_float(metric.scale_down_threshold, "scaleDownThreshold")

        up_adjustment = metric.scale_up_adjustment
        if up_adjustment:
            if up_adjustment < 0:
                raise AutoscalingError(f"{prefix}.scaleUpAdjustment cannot be lower than 0")
            if metric.scale_up_factor:
                raise AutoscalingError(
                    f"{prefix}: scaleUpAdjustment and scaleUpFactor cannot be specified together"
                )
        elif metric.scale_up_factor:
            up_factor = _parse_float(metric.scale_up_factor, "scaleUpFactor")

        down_adjustment = metric.scale_down_adjustment
        if down_adjustment:
            if down_adjustment < 0:
                raise AutoscalingError(f"{prefix}.scaleDownAdjustment cannot be lower than 0")
            if metric.scale_down_factor:
                raise AutoscalingError(
                    f"{prefix}: scaleDownAdjustment and scaleDownFactor cannot be specified together"
                )
        elif metric.scale_down_factor:
            down_factor = _parse_float(metric.scale_down_factor, "scaleDownFactor")

        runner_names = target.runner_names()
        runners = self.github_client.list_runners(target.enterprise, target.org, target.repo)

        before = DEFAULT_REPLICAS if target.replicas is None else target.replicas

        registered = [r for r in runners if r.name in runner_names]
        busy = sum(1 for r in registered if r.busy)

        if before:
            fraction = busy / before
        else:
            fraction = math.inf if busy else math.nan

        if fraction >= up_threshold:
            if up_adjustment > 0:
                desired = before + up_adjustment
            else:
                desired = math.ceil(before * up_factor)
        elif fraction < down_threshold:
            if down_adjustment > 0:
                desired = before - down_adjustment
            else:
                desired = int(before * down_factor)
        else:
            desired = before

        _log.debug(
            "Suggested desired replicas of %d by PercentageRunnersBusy replicas_desired_before=%d "
            "replicas_desired=%d num_runners=%d num_runners_registered=%d num_runners_busy=%d "
            "namespace=%s kind=%s name=%s horizontal_runner_autoscaler=%s enterprise=%s "
            "organization=%s repository=%s",
            desired,
            before,
            desired,
            len(runner_names),
            len(registered),
            busy,
            hra.metadata.namespace,
            target.kind,
            target.name,
            hra.metadata.name,
            target.enterprise,
            target.org,
            target.repo,
        )
        return desired

    def compute_replicas_with_cache(
        self,
        now: datetime,
        target: ScaleTarget,
        hra: HorizontalRunnerAutoscaler,
        min_replicas: int,
    ) -> ReplicaComputation:
        """Compute desired replicas within bounds, honouring cache and scale-down delay."""
        now = _aware(now)
        cached = self.fetch_suggested_replicas_from_cache(hra, now)
        if cached is not None:
            suggested = cached
        else:
            value = self.suggest_desired_replicas(target, hra)
            suggested = min_replicas if value is None else value

        reserved = sum(
            r.replicas
            for r in hra.spec.capacity_reservations
            if r.expiration_time is not None and _aware(r.expiration_time) > now
        )

        desired = suggested + reserved
        max_replicas = hra.spec.max_replicas
        if desired < min_replicas:
            desired = min_replicas
        elif max_replicas is not None and desired > max_replicas:
            desired = max_replicas

        delay_seconds = hra.spec.scale_down_delay_seconds_after_scale_up
        delay = DEFAULT_SCALE_DOWN_DELAY if delay_seconds is None else timedelta(seconds=delay_seconds)

        status = hra.status
        delay_until: Optional[datetime] = None
        if (
            status.desired_replicas is not None
            and status.desired_replicas >= desired
            and status.last_successful_scale_out_time is not None
        ):
            until = _aware(status.last_successful_scale_out_time) + delay
            if until > now:
                delay_until = until
                desired = status.desired_replicas

        details = [f"suggested={suggested}", f"reserved={reserved}", f"min={min_replicas}"]
        if cached is not None:
            details.append(f"cached={cached}")
        if delay_until is not None:
            details.append(f"last_scale_up_time={status.last_successful_scale_out_time}")
            details.append(f"scale_down_delay_until={delay_until}")
        if max_replicas is not None:
            details.append(f"max={max_replicas}")
        _log.debug("Calculated desired replicas of %d %s", desired, " ".join(details))

        return ReplicaComputation(
            desired_replicas=desired,
            suggested_replicas=suggested,
            cached_replicas=cached,
        )