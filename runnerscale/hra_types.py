"""Schema of the HorizontalRunnerAutoscaler resource and its JSON form."""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

GROUP = "actions.summerwind.dev"
VERSION = "v1alpha1"
API_VERSION = f"{GROUP}/{VERSION}"
KIND = "HorizontalRunnerAutoscaler"

CACHE_ENTRY_KEY_DESIRED_REPLICAS = "desiredReplicas"


class MetricType(str, Enum):
    """Supported autoscaling metric types."""

    TOTAL_NUMBER_OF_QUEUED_AND_IN_PROGRESS_WORKFLOW_RUNS = (
        "TotalNumberOfQueuedAndInProgressWorkflowRuns"
    )
    PERCENTAGE_RUNNERS_BUSY = "PercentageRunnersBusy"


# --- wire helpers -----------------------------------------------------------

_DURATION_UNITS_US = {
    "ns": 0.001,
    "us": 1.0,
    "µs": 1.0,
    "μs": 1.0,
    "ms": 1_000.0,
    "s": 1_000_000.0,
    "m": 60_000_000.0,
    "h": 3_600_000_000.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def _format_time(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _parse_time(text: Optional[str]) -> Optional[datetime]:
    if not text:
        return None
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _opt_time(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else _format_time(value)


def _parse_duration(text: Optional[str]) -> timedelta:
    if not text or text == "0":
        return timedelta(0)
    sign = 1
    body = text
    if body[0] in "+-":
        sign = -1 if body[0] == "-" else 1
        body = body[1:]
    if not body:
        raise ValueError(f"invalid duration {text!r}")
    total = 0.0
    pos = 0
    while pos < len(body):
        match = _DURATION_PART.match(body, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS_US[match.group(2)]
        pos = match.end()
    return timedelta(microseconds=sign * total)


def _decimal(amount: int, unit: int) -> str:
    whole, frac = divmod(amount, unit)
    if not frac:
        return str(whole)
    digits = str(frac).rjust(len(str(unit)) - 1, "0").rstrip("0")
    return f"{whole}.{digits}"


def _format_duration(value: timedelta) -> str:
    micros = (value.days * 86_400 + value.seconds) * 1_000_000 + value.microseconds
    if micros == 0:
        return "0s"
    sign = "-" if micros < 0 else ""
    micros = abs(micros)
    if micros < 1_000:
        return f"{sign}{micros}µs"
    if micros < 1_000_000:
        return f"{sign}{_decimal(micros, 1_000)}ms"
    hours, rest = divmod(micros, 3_600_000_000)
    minutes, rest = divmod(rest, 60_000_000)
    seconds = _decimal(rest, 1_000_000) + "s"
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}"
    if minutes:
        return f"{sign}{minutes}m{seconds}"
    return sign + seconds


def _omit_empty(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None and v != "" and v != [] and v != {}}


# --- metadata ---------------------------------------------------------------


@dataclass
class ObjectMeta:
    """The subset of object metadata the controllers rely on."""

    name: str = ""
    namespace: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    generation: int = 0
    deletion_timestamp: Optional[datetime] = None

    def is_deleted(self) -> bool:
        """Whether the object is marked for deletion."""
        return self.deletion_timestamp is not None

    def _to_dict(self) -> dict[str, Any]:
        return _omit_empty(
            {
                "name": self.name,
                "namespace": self.namespace,
                "labels": dict(self.labels),
                "annotations": dict(self.annotations),
                "generation": self.generation or None,
                "deletionTimestamp": _opt_time(self.deletion_timestamp),
            }
        )

    @classmethod
    def _from_dict(cls, data: Optional[dict[str, Any]]) -> ObjectMeta:
        data = data or {}
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            labels=dict(data.get("labels") or {}),
            annotations=dict(data.get("annotations") or {}),
            generation=int(data.get("generation", 0)),
            deletion_timestamp=_parse_time(data.get("deletionTimestamp")),
        )


# --- spec pieces ------------------------------------------------------------


@dataclass
class ScaleTargetRef:
    """Reference to the scaled resource (RunnerDeployment or RunnerSet)."""

    kind: str = ""
    name: str = ""

    def _to_dict(self) -> dict[str, Any]:
        return _omit_empty({"kind": self.kind, "name": self.name})

    @classmethod
    def _from_dict(cls, data: Optional[dict[str, Any]]) -> ScaleTargetRef:
        data = data or {}
        return cls(kind=data.get("kind", ""), name=data.get("name", ""))


@dataclass
class CheckRunSpec:
    """Condition on check_run events; names are Actions glob patterns."""

    types: list[str] = field(default_factory=list)
    status: str = ""
    names: list[str] = field(default_factory=list)

    def _to_dict(self) -> dict[str, Any]:
        return _omit_empty(
            {"types": list(self.types), "status": self.status, "names": list(self.names)}
        )

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> CheckRunSpec:
        return cls(
            types=list(data.get("types") or []),
            status=data.get("status", ""),
            names=list(data.get("names") or []),
        )


@dataclass
class PullRequestSpec:
    """Condition on pull_request events."""

    types: list[str] = field(default_factory=list)
    branches: list[str] = field(default_factory=list)

    def _to_dict(self) -> dict[str, Any]:
        return _omit_empty({"types": list(self.types), "branches": list(self.branches)})

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> PullRequestSpec:
        return cls(
            types=list(data.get("types") or []),
            branches=list(data.get("branches") or []),
        )


@dataclass
class PushSpec:
    """Condition on push events; it has no fields."""


@dataclass
class GitHubEventScaleUpTriggerSpec:
    """Which GitHub webhook events trigger a scale-up."""

    check_run: Optional[CheckRunSpec] = None
    pull_request: Optional[PullRequestSpec] = None
    push: Optional[PushSpec] = None

    def _to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.check_run is not None:
            data["checkRun"] = self.check_run._to_dict()
        if self.pull_request is not None:
            data["pullRequest"] = self.pull_request._to_dict()
        if self.push is not None:
            data["push"] = {}
        return data

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> GitHubEventScaleUpTriggerSpec:
        check_run = data.get("checkRun")
        pull_request = data.get("pullRequest")
        return cls(
            check_run=None if check_run is None else CheckRunSpec._from_dict(check_run),
            pull_request=None
            if pull_request is None
            else PullRequestSpec._from_dict(pull_request),
            push=None if data.get("push") is None else PushSpec(),
        )


@dataclass
class ScaleUpTrigger:
    """Adds `amount` replicas for `duration` when a matching event arrives."""

    github_event: Optional[GitHubEventScaleUpTriggerSpec] = None
    amount: int = 0
    duration: timedelta = field(default_factory=timedelta)

    def _to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.github_event is not None:
            data["githubEvent"] = self.github_event._to_dict()
        if self.amount:
            data["amount"] = self.amount
        data["duration"] = _format_duration(self.duration)
        return data

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> ScaleUpTrigger:
        event = data.get("githubEvent")
        return cls(
            github_event=None
            if event is None
            else GitHubEventScaleUpTriggerSpec._from_dict(event),
            amount=int(data.get("amount", 0)),
            duration=_parse_duration(data.get("duration")),
        )


@dataclass
class CapacityReservation:
    """Replicas temporarily added to the scale target until expiration_time."""

    name: str = ""
    expiration_time: Optional[datetime] = None
    replicas: int = 0

    def _to_dict(self) -> dict[str, Any]:
        return _omit_empty(
            {
                "name": self.name,
                "expirationTime": _opt_time(self.expiration_time),
                "replicas": self.replicas or None,
            }
        )

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> CapacityReservation:
        return cls(
            name=data.get("name", ""),
            expiration_time=_parse_time(data.get("expirationTime")),
            replicas=int(data.get("replicas", 0)),
        )


@dataclass
class MetricSpec:
    """A metric used to compute the desired number of runners."""

    type: str = ""
    repository_names: list[str] = field(default_factory=list)
    scale_up_threshold: str = ""
    scale_down_threshold: str = ""
    scale_up_factor: str = ""
    scale_down_factor: str = ""
    scale_up_adjustment: int = 0
    scale_down_adjustment: int = 0

    def _to_dict(self) -> dict[str, Any]:
        kind = self.type.value if isinstance(self.type, MetricType) else self.type
        return _omit_empty(
            {
                "type": kind,
                "repositoryNames": list(self.repository_names),
                "scaleUpThreshold": self.scale_up_threshold,
                "scaleDownThreshold": self.scale_down_threshold,
                "scaleUpFactor": self.scale_up_factor,
                "scaleDownFactor": self.scale_down_factor,
                "scaleUpAdjustment": self.scale_up_adjustment or None,
                "scaleDownAdjustment": self.scale_down_adjustment or None,
            }
        )

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> MetricSpec:
        return cls(
            type=data.get("type", ""),
            repository_names=list(data.get("repositoryNames") or []),
            scale_up_threshold=data.get("scaleUpThreshold", ""),
            scale_down_threshold=data.get("scaleDownThreshold", ""),
            scale_up_factor=data.get("scaleUpFactor", ""),
            scale_down_factor=data.get("scaleDownFactor", ""),
            scale_up_adjustment=int(data.get("scaleUpAdjustment", 0)),
            scale_down_adjustment=int(data.get("scaleDownAdjustment", 0)),
        )


@dataclass
class RecurrenceRule:
    """Recurrence of a scheduled override: Daily, Weekly, Monthly or Yearly."""

    frequency: str = ""
    until_time: Optional[datetime] = None

    def _to_dict(self) -> dict[str, Any]:
        return _omit_empty(
            {"frequency": self.frequency, "untilTime": _opt_time(self.until_time)}
        )

    @classmethod
    def _from_dict(cls, data: Optional[dict[str, Any]]) -> RecurrenceRule:
        data = data or {}
        return cls(
            frequency=data.get("frequency", ""),
            until_time=_parse_time(data.get("untilTime")),
        )


@dataclass
class ScheduledOverride:
    """Overrides min replicas during a possibly recurring period."""

    start_time: datetime
    end_time: datetime
    min_replicas: Optional[int] = None
    recurrence_rule: RecurrenceRule = field(default_factory=RecurrenceRule)

    def _to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "startTime": _format_time(self.start_time),
            "endTime": _format_time(self.end_time),
        }
        if self.min_replicas is not None:
            data["minReplicas"] = self.min_replicas
        data["recurrenceRule"] = self.recurrence_rule._to_dict()
        return data

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> ScheduledOverride:
        start = _parse_time(data.get("startTime"))
        end = _parse_time(data.get("endTime"))
        if start is None or end is None:
            raise ValueError("scheduled override requires startTime and endTime")
        return cls(
            start_time=start,
            end_time=end,
            min_replicas=data.get("minReplicas"),
            recurrence_rule=RecurrenceRule._from_dict(data.get("recurrenceRule")),
        )


@dataclass
class CacheEntry:
    """A cached value that stays valid until expiration_time."""

    key: str = ""
    value: int = 0
    expiration_time: Optional[datetime] = None

    def _to_dict(self) -> dict[str, Any]:
        return _omit_empty(
            {
                "key": self.key,
                "value": self.value or None,
                "expirationTime": _opt_time(self.expiration_time),
            }
        )

    @classmethod
    def _from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            key=data.get("key", ""),
            value=int(data.get("value", 0)),
            expiration_time=_parse_time(data.get("expirationTime")),
        )


# --- spec, status, resource -------------------------------------------------


@dataclass
class HorizontalRunnerAutoscalerSpec:
    """Desired state of a HorizontalRunnerAutoscaler."""

    scale_target_ref: ScaleTargetRef = field(default_factory=ScaleTargetRef)
    min_replicas: Optional[int] = None
    max_replicas: Optional[int] = None
    scale_down_delay_seconds_after_scale_up: Optional[int] = None
    metrics: list[MetricSpec] = field(default_factory=list)
    scale_up_triggers: list[ScaleUpTrigger] = field(default_factory=list)
    capacity_reservations: list[CapacityReservation] = field(default_factory=list)
    scheduled_overrides: list[ScheduledOverride] = field(default_factory=list)

    def _to_dict(self) -> dict[str, Any]:
        return _omit_empty(
            {
                "scaleTargetRef": self.scale_target_ref._to_dict(),
                "minReplicas": self.min_replicas,
                "maxReplicas": self.max_replicas,
                "scaleDownDelaySecondsAfterScaleOut": self.scale_down_delay_seconds_after_scale_up,
                "metrics": [m._to_dict() for m in self.metrics],
                "scaleUpTriggers": [t._to_dict() for t in self.scale_up_triggers],
                "capacityReservations": [c._to_dict() for c in self.capacity_reservations],
                "scheduledOverrides": [o._to_dict() for o in self.scheduled_overrides],
            }
        )

    @classmethod
    def _from_dict(cls, data: Optional[dict[str, Any]]) -> HorizontalRunnerAutoscalerSpec:
        data = data or {}
        return cls(
            scale_target_ref=ScaleTargetRef._from_dict(data.get("scaleTargetRef")),
            min_replicas=data.get("minReplicas"),
            max_replicas=data.get("maxReplicas"),
            scale_down_delay_seconds_after_scale_up=data.get(
                "scaleDownDelaySecondsAfterScaleOut"
            ),
            metrics=[MetricSpec._from_dict(m) for m in data.get("metrics") or []],
            scale_up_triggers=[
                ScaleUpTrigger._from_dict(t) for t in data.get("scaleUpTriggers") or []
            ],
            capacity_reservations=[
                CapacityReservation._from_dict(c)
                for c in data.get("capacityReservations") or []
            ],
            scheduled_overrides=[
                ScheduledOverride._from_dict(o)
                for o in data.get("scheduledOverrides") or []
            ],
        )


@dataclass
class HorizontalRunnerAutoscalerStatus:
    """Observed state of a HorizontalRunnerAutoscaler."""

    observed_generation: int = 0
    desired_replicas: Optional[int] = None
    last_successful_scale_out_time: Optional[datetime] = None
    cache_entries: list[CacheEntry] = field(default_factory=list)
    scheduled_overrides_summary: Optional[str] = None

    def _to_dict(self) -> dict[str, Any]:
        data = _omit_empty(
            {
                "observedGeneration": self.observed_generation or None,
                "desiredReplicas": self.desired_replicas,
                "lastSuccessfulScaleOutTime": _opt_time(self.last_successful_scale_out_time),
                "cacheEntries": [e._to_dict() for e in self.cache_entries],
            }
        )
        if self.scheduled_overrides_summary is not None:
            data["scheduledOverridesSummary"] = self.scheduled_overrides_summary
        return data

    @classmethod
    def _from_dict(cls, data: Optional[dict[str, Any]]) -> HorizontalRunnerAutoscalerStatus:
        data = data or {}
        return cls(
            observed_generation=int(data.get("observedGeneration", 0)),
            desired_replicas=data.get("desiredReplicas"),
            last_successful_scale_out_time=_parse_time(data.get("lastSuccessfulScaleOutTime")),
            cache_entries=[CacheEntry._from_dict(e) for e in data.get("cacheEntries") or []],
            scheduled_overrides_summary=data.get("scheduledOverridesSummary"),
        )


@dataclass
class HorizontalRunnerAutoscaler:
    """A HorizontalRunnerAutoscaler resource."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: HorizontalRunnerAutoscalerSpec = field(default_factory=HorizontalRunnerAutoscalerSpec)
    status: HorizontalRunnerAutoscalerStatus = field(
        default_factory=HorizontalRunnerAutoscalerStatus
    )

    def deep_copy(self) -> HorizontalRunnerAutoscaler:
        """Return an independent copy of this resource."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Return the resource in its JSON wire form."""
        return {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": self.metadata._to_dict(),
            "spec": self.spec._to_dict(),
            "status": self.status._to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HorizontalRunnerAutoscaler:
        """Build a resource from its JSON wire form."""
        return cls(
            metadata=ObjectMeta._from_dict(data.get("metadata")),
            spec=HorizontalRunnerAutoscalerSpec._from_dict(data.get("spec")),
            status=HorizontalRunnerAutoscalerStatus._from_dict(data.get("status")),
        )