"""Reconciliation of HorizontalRunnerAutoscalers against their scale targets."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, Iterator, Optional

from . import metrics
from .autoscaling import DEFAULT_REPLICAS, Autoscaler, AutoscalingError, ScaleTarget
from .deployment_types import LabelSelector, RunnerDeployment, RunnerSet
from .hra_types import (
    CACHE_ENTRY_KEY_DESIRED_REPLICAS,
    CacheEntry,
    HorizontalRunnerAutoscaler,
    ObjectMeta,
    ScheduledOverride,
)
from .runner_types import Runner

_log = logging.getLogger("runnerscale.controller")

DEFAULT_CACHE_DURATION = timedelta(minutes=10)
EVENT_TYPE_NORMAL = "Normal"

_FIXED_STEPS = {"Daily": timedelta(days=1), "Weekly": timedelta(weeks=1)}
_CALENDAR_FREQUENCIES = ("Monthly", "Yearly")


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _format_time(value: datetime) -> str:
    value = _aware(value)
    text = value.strftime("%Y-%m-%d %H:%M:%S")
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    return f"{text} {value.strftime('%z')} {value.strftime('%Z')}"


@dataclass(frozen=True)
class Period:
    """A time span from start_time to end_time."""

    start_time: datetime
    end_time: datetime


@dataclass
class Override:
    """A scheduled override together with one of its concrete periods."""

    scheduled_override: ScheduledOverride
    period: Period


def get_valid_cache_entries(
    hra: HorizontalRunnerAutoscaler, now: datetime
) -> list[CacheEntry]:
    """Return the cache entries that expire strictly after now."""
    now = _aware(now)
    return [
        entry
        for entry in hra.status.cache_entries
        if entry.expiration_time is not None and _aware(entry.expiration_time) > now
    ]


def _occurrences(start: datetime, end: datetime, frequency: str, now: datetime) -> Iterator[datetime]:
    if frequency in _FIXED_STEPS:
        step = _FIXED_STEPS[frequency]
        index = max(0, (now - end) // step)
        while True:
            yield start + index * step
            index += 1
    index = 0
    while True:
        try:
            if frequency == "Monthly":
                months = start.month - 1 + index
                yield start.replace(year=start.year + months // 12, month=months % 12 + 1)
            else:
                yield start.replace(year=start.year + index)
        except ValueError:
            pass  # the day does not exist in that month or year
        index += 1


def _match_schedule(
    now: datetime,
    start: datetime,
    end: datetime,
    frequency: str,
    until: Optional[datetime],
) -> tuple[Optional[Period], Optional[Period]]:
    now, start, end = _aware(now), _aware(start), _aware(end)
    if not frequency:
        if start <= now < end:
            return Period(start, end), None
        if now < start:
            return None, Period(start, end)
        return None, None
    if frequency not in _FIXED_STEPS and frequency not in _CALENDAR_FREQUENCIES:
        raise AutoscalingError(f"invalid recurrence frequency {frequency!r}")

    length = end - start
    limit = None if until is None else _aware(until)
    active: Optional[Period] = None
    for occurrence in _occurrences(start, end, frequency, now):
        if limit is not None and occurrence > limit:
            break
        if active is None and occurrence <= now < occurrence + length:
            active = Period(occurrence, occurrence + length)
        if occurrence > now:
            return active, Period(occurrence, occurrence + length)
    return active, None


class ClusterClient:
    """In-memory view of the cluster objects the reconciler reads and writes."""

    def __init__(
        self,
        autoscalers: Iterable[HorizontalRunnerAutoscaler] = (),
        deployments: Iterable[RunnerDeployment] = (),
        runner_sets: Iterable[RunnerSet] = (),
        runners: Iterable[Runner] = (),
        pods: Iterable[ObjectMeta] = (),
    ) -> None:
        self._autoscalers = {
            (h.metadata.namespace, h.metadata.name): copy.deepcopy(h) for h in autoscalers
        }
        self._deployments = {
            (d.metadata.namespace, d.metadata.name): copy.deepcopy(d) for d in deployments
        }
        self._runner_sets = {
            (s.metadata.namespace, s.metadata.name): copy.deepcopy(s) for s in runner_sets
        }
        self._runners = list(runners)
        self._pods = list(pods)

    def get_horizontal_runner_autoscaler(
        self, namespace: str, name: str
    ) -> Optional[HorizontalRunnerAutoscaler]:
        """Return a copy of the autoscaler, or None if it does not exist."""
        found = self._autoscalers.get((namespace, name))
        return None if found is None else found.deep_copy()

    def get_runner_deployment(self, namespace: str, name: str) -> Optional[RunnerDeployment]:
        """Return a copy of the deployment, or None if it does not exist."""
        found = self._deployments.get((namespace, name))
        return None if found is None else found.deep_copy()

    def get_runner_set(self, namespace: str, name: str) -> Optional[RunnerSet]:
        """Return a copy of the runner set, or None if it does not exist."""
        found = self._runner_sets.get((namespace, name))
        return None if found is None else found.deep_copy()

    def list_runner_names(self, namespace: str, selector: Optional[LabelSelector]) -> set[str]:
        """Names of runners in namespace matched by selector; None matches nothing."""
        if selector is None:
            return set()
        return {
            r.metadata.name
            for r in self._runners
            if r.metadata.namespace == namespace and selector.matches(r.metadata.labels)
        }

    def list_pod_names(self, namespace: str, selector: Optional[LabelSelector]) -> set[str]:
        """Names of pods in namespace matched by selector; None matches nothing."""
        if selector is None:
            return set()
        return {
            p.name for p in self._pods if p.namespace == namespace and selector.matches(p.labels)
        }

    def update_runner_deployment(self, rd: RunnerDeployment) -> None:
        """Store a changed deployment; it must already exist."""
        key = (rd.metadata.namespace, rd.metadata.name)
        if key not in self._deployments:
            raise LookupError(f"runnerdeployment {key[0]}/{key[1]} not found")
        self._deployments[key] = rd.deep_copy()

    def update_runner_set(self, rs: RunnerSet) -> None:
        """Store a changed runner set; it must already exist."""
        key = (rs.metadata.namespace, rs.metadata.name)
        if key not in self._runner_sets:
            raise LookupError(f"runnerset {key[0]}/{key[1]} not found")
        self._runner_sets[key] = rs.deep_copy()

    def update_horizontal_runner_autoscaler_status(self, hra: HorizontalRunnerAutoscaler) -> None:
        """Store the status of an autoscaler; it must already exist."""
        key = (hra.metadata.namespace, hra.metadata.name)
        stored = self._autoscalers.get(key)
        if stored is None:
            raise LookupError(f"horizontalrunnerautoscaler {key[0]}/{key[1]} not found")
        stored.status = copy.deepcopy(hra.status)


class HorizontalRunnerAutoscalerReconciler:
    """Brings scale targets to the replica count their autoscaler asks for."""

    def __init__(
        self,
        client: ClusterClient,
        autoscaler: Autoscaler,
        cache_duration: Optional[timedelta] = None,
        name: str = "horizontalrunnerautoscaler-controller",
    ) -> None:
        self.client = client
        self.autoscaler = autoscaler
        self.cache_duration = cache_duration
        self.name = name
        self.events: list[tuple[str, str, str]] = []

    def reconcile(
        self, namespace: str, name: str, now: Optional[datetime] = None
    ) -> Optional[HorizontalRunnerAutoscaler]:
        """Reconcile one autoscaler; return it updated, or None if nothing was done."""
        now = _aware(now) if now is not None else datetime.now(timezone.utc)
        hra = self.client.get_horizontal_runner_autoscaler(namespace, name)
        if hra is None or hra.metadata.is_deleted():
            return None

        metrics.set_horizontal_runner_autoscaler_spec(hra.metadata, hra.spec)
        ref = hra.spec.scale_target_ref

        if ref.kind in ("", "RunnerDeployment"):
            rd = self.client.get_runner_deployment(namespace, ref.name)
            if rd is None or rd.metadata.is_deleted():
                return None
            target = self.scale_target_from_runner_deployment(rd)

            def update_deployment(replicas: int) -> None:
                current = DEFAULT_REPLICAS if rd.spec.replicas is None else rd.spec.replicas
                if current == replicas:
                    return
                changed = rd.deep_copy()
                changed.spec.replicas = replicas
                try:
                    self.client.update_runner_deployment(changed)
                except LookupError as exc:
                    raise AutoscalingError(
                        f"patching runnerdeployment to have {replicas} replicas: {exc}"
                    ) from exc

            return self._reconcile(now, hra, target, update_deployment)

        if ref.kind == "RunnerSet":
            rs = self.client.get_runner_set(namespace, ref.name)
            if rs is None or rs.metadata.is_deleted():
                return None
            target = self.scale_target_from_runner_set(rs)

            def update_runner_set(replicas: int) -> None:
                current = DEFAULT_REPLICAS if rs.spec.replicas is None else rs.spec.replicas
                if current == replicas:
                    return
                changed = rs.deep_copy()
                changed.spec.replicas = replicas
                try:
                    self.client.update_runner_set(changed)
                except LookupError as exc:
                    raise AutoscalingError(
                        f"patching runnerset to have {replicas} replicas: {exc}"
                    ) from exc

            return self._reconcile(now, hra, target, update_runner_set)

        _log.info(
            "Unsupported scale target %s %s: kind %s is not supported. valid kinds are %s and %s",
            ref.kind,
            ref.name,
            ref.kind,
            "RunnerDeployment",
            "RunnerSet",
        )
        return None

    def scale_target_from_runner_deployment(self, rd: RunnerDeployment) -> ScaleTarget:
        """Describe a RunnerDeployment as a scale target."""
        selector = rd.spec.selector
        if selector is None:
            selector = LabelSelector(match_labels=dict(rd.spec.template.metadata.labels))
        template = rd.spec.template.spec
        return ScaleTarget(
            name=rd.metadata.name,
            kind="runnerdeployment",
            enterprise=template.enterprise,
            org=template.organization,
            repo=template.repository,
            replicas=rd.spec.replicas,
            runner_names=lambda: self.client.list_runner_names(rd.metadata.namespace, selector),
        )

    def scale_target_from_runner_set(self, rs: RunnerSet) -> ScaleTarget:
        """Describe a RunnerSet as a scale target."""
        return ScaleTarget(
            name=rs.metadata.name,
            kind="runnerset",
            enterprise=rs.spec.enterprise,
            org=rs.spec.organization,
            repo=rs.spec.repository,
            replicas=rs.spec.replicas,
            runner_names=lambda: self.client.list_pod_names(
                rs.metadata.namespace, rs.spec.selector
            ),
        )

    def match_scheduled_overrides(
        self, now: datetime, hra: HorizontalRunnerAutoscaler
    ) -> tuple[Optional[int], Optional[Override], Optional[Override]]:
        """Return (override min replicas, active override, upcoming override)."""
        min_replicas: Optional[int] = None
        active: Optional[Override] = None
        upcoming: Optional[Override] = None

        for override in hra.spec.scheduled_overrides:
            rule = override.recurrence_rule
            current, following = _match_schedule(
                now, override.start_time, override.end_time, rule.frequency, rule.until_time
            )
            # The earliest listed override wins when several are active.
            if current is not None and active is None:
                active = Override(scheduled_override=override, period=current)
                if override.min_replicas is not None:
                    min_replicas = override.min_replicas
            if following is not None and (
                upcoming is None or following.start_time < upcoming.period.start_time
            ):
                upcoming = Override(scheduled_override=override, period=following)

        return min_replicas, active, upcoming

    def get_min_replicas(
        self, now: datetime, hra: HorizontalRunnerAutoscaler
    ) -> tuple[int, Optional[Override], Optional[Override]]:
        """Return the effective min replicas and the active and upcoming overrides."""
        min_replicas = DEFAULT_REPLICAS
        if hra.spec.min_replicas is not None and hra.spec.min_replicas >= 0:
            min_replicas = hra.spec.min_replicas
        overridden, active, upcoming = self.match_scheduled_overrides(now, hra)
        if overridden is not None:
            min_replicas = overridden
        return min_replicas, active, upcoming

    def _reconcile(
        self,
        now: datetime,
        hra: HorizontalRunnerAutoscaler,
        target: ScaleTarget,
        update_desired_replicas: Callable[[int], None],
    ) -> HorizontalRunnerAutoscaler:
        min_replicas, active, upcoming = self.get_min_replicas(now, hra)

        try:
            result = self.autoscaler.compute_replicas_with_cache(now, target, hra, min_replicas)
        except AutoscalingError as exc:
            self.events.append((EVENT_TYPE_NORMAL, "RunnerAutoscalingFailure", str(exc)))
            _log.error("Could not compute replicas: %s", exc)
            raise

        desired = result.desired_replicas
        update_desired_replicas(desired)

        updated = hra.deep_copy()
        previous = hra.status.desired_replicas
        if previous is None or previous != desired:
            if (previous is None and desired > 1) or (previous is not None and desired > previous):
                updated.status.last_successful_scale_out_time = now
            updated.status.desired_replicas = desired

        if result.cached_replicas is None:
            duration = self.cache_duration if self.cache_duration else DEFAULT_CACHE_DURATION
            updated.status.cache_entries = get_valid_cache_entries(updated, now) + [
                CacheEntry(
                    key=CACHE_ENTRY_KEY_DESIRED_REPLICAS,
                    value=result.suggested_replicas,
                    expiration_time=now + duration,
                )
            ]

        summary = ""
        if active is not None and (
            upcoming is None or active.period.end_time < upcoming.period.start_time
        ):
            after = DEFAULT_REPLICAS
            if hra.spec.min_replicas is not None and hra.spec.min_replicas >= 0:
                after = hra.spec.min_replicas
            summary = f"min={after} time={_format_time(active.period.end_time)}"
        if upcoming is not None and (
            active is None or active.period.end_time > upcoming.period.start_time
        ):
            if upcoming.scheduled_override.min_replicas is not None:
                summary = (
                    f"min={upcoming.scheduled_override.min_replicas} "
                    f"time={_format_time(upcoming.period.start_time)}"
                )
        updated.status.scheduled_overrides_summary = summary or None

        if updated.status != hra.status:
            metrics.set_horizontal_runner_autoscaler_status(updated.metadata, updated.status)
            try:
                self.client.update_horizontal_runner_autoscaler_status(updated)
            except LookupError as exc:
                raise AutoscalingError(
                    f"patching horizontalrunnerautoscaler status: {exc}"
                ) from exc

        return updated