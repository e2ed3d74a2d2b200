"""Gauges describing the custom resources, and the registry that exposes them."""

from __future__ import annotations

import threading
from typing import Iterable, Iterator, Mapping, Optional

from .hra_types import HorizontalRunnerAutoscalerSpec, HorizontalRunnerAutoscalerStatus, ObjectMeta


class GaugeVec:
    """A family of gauges, one per distinct combination of label values."""

    def __init__(self, name: str, help: str, label_names: Iterable[str]) -> None:
        self.name = name
        self.help = help
        self.label_names = tuple(label_names)
        self._values: dict[tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def _key(self, labels: Mapping[str, str]) -> tuple[str, ...]:
        if set(labels) != set(self.label_names):
            raise ValueError(
                f"inconsistent label names for {self.name}: "
                f"expected {sorted(self.label_names)}, got {sorted(labels)}"
            )
        return tuple(labels[name] for name in self.label_names)

    def set(self, labels: Mapping[str, str], value: float) -> None:
        """Set the gauge with the given labels to value."""
        key = self._key(labels)
        with self._lock:
            self._values[key] = float(value)

    def value(self, labels: Mapping[str, str]) -> float:
        """Return the current value; raise KeyError if it was never set."""
        key = self._key(labels)
        with self._lock:
            return self._values[key]

    def samples(self) -> list[tuple[dict[str, str], float]]:
        """Return every (labels, value) pair, in the order first set."""
        with self._lock:
            items = list(self._values.items())
        return [(dict(zip(self.label_names, key)), value) for key, value in items]


class Registry:
    """A set of uniquely named collectors."""

    def __init__(self) -> None:
        self._collectors: dict[str, GaugeVec] = {}
        self._lock = threading.Lock()

    def register(self, *args: GaugeVec) -> None:
        """Register collectors; a name already registered raises ValueError."""
        with self._lock:
            names = [c.name for c in args]
            for name in names:
                if name in self._collectors or names.count(name) > 1:
                    raise ValueError(f"duplicate metrics collector registration attempted: {name}")
            for collector in args:
                self._collectors[collector.name] = collector

    def collect(self) -> Iterator[tuple[str, dict[str, str], float]]:
        """Yield (metric name, labels, value) for every sample."""
        with self._lock:
            collectors = list(self._collectors.values())
        for collector in collectors:
            for labels, value in collector.samples():
                yield collector.name, labels, value


_HRA_NAME = "horizontalrunnerautoscaler"
_HRA_NAMESPACE = "namespace"
_RD_NAME = "runnerdeployment"
_RD_NAMESPACE = "namespace"
_RS_NAME = "runnerset"
_RS_NAMESPACE = "namespace"

horizontal_runner_autoscaler_min_replicas = GaugeVec(
    "horizontalrunnerautoscaler_spec_min_replicas",
    "minReplicas of HorizontalRunnerAutoscaler",
    [_HRA_NAME, _HRA_NAMESPACE],
)
horizontal_runner_autoscaler_max_replicas = GaugeVec(
    "horizontalrunnerautoscaler_spec_max_replicas",
    "maxReplicas of HorizontalRunnerAutoscaler",
    [_HRA_NAME, _HRA_NAMESPACE],
)
horizontal_runner_autoscaler_desired_replicas = GaugeVec(
    "horizontalrunnerautoscaler_status_desired_replicas",
    "desiredReplicas of HorizontalRunnerAutoscaler",
    [_HRA_NAME, _HRA_NAMESPACE],
)
runner_deployment_replicas = GaugeVec(
    "runnerdeployment_spec_replicas",
    "replicas of RunnerDeployment",
    [_RD_NAME, _RD_NAMESPACE],
)
runner_set_replicas = GaugeVec(
    "runnerset_spec_replicas",
    "replicas of RunnerSet",
    [_RS_NAME, _RS_NAMESPACE],
)

REGISTRY = Registry()
REGISTRY.register(runner_deployment_replicas)
REGISTRY.register(
    horizontal_runner_autoscaler_min_replicas,
    horizontal_runner_autoscaler_max_replicas,
    horizontal_runner_autoscaler_desired_replicas,
)


def _hra_labels(meta: ObjectMeta) -> dict[str, str]:
    return {_HRA_NAME: meta.name, _HRA_NAMESPACE: meta.namespace}


def set_horizontal_runner_autoscaler_spec(
    meta: ObjectMeta, spec: HorizontalRunnerAutoscalerSpec
) -> None:
    """Record min and max replicas of an autoscaler, where they are set."""
    labels = _hra_labels(meta)
    if spec.max_replicas is not None:
        horizontal_runner_autoscaler_max_replicas.set(labels, spec.max_replicas)
    if spec.min_replicas is not None:
        horizontal_runner_autoscaler_min_replicas.set(labels, spec.min_replicas)


def set_horizontal_runner_autoscaler_status(
    meta: ObjectMeta, status: HorizontalRunnerAutoscalerStatus
) -> None:
    """Record the desired replicas of an autoscaler, where it is set."""
    if status.desired_replicas is not None:
        horizontal_runner_autoscaler_desired_replicas.set(
            _hra_labels(meta), status.desired_replicas
        )


def set_runner_deployment(rd) -> None:
    """Record the replicas of a RunnerDeployment, where they are set."""
    replicas: Optional[int] = rd.spec.replicas
    if replicas is not None:
        runner_deployment_replicas.set(
            {_RD_NAME: rd.metadata.name, _RD_NAMESPACE: rd.metadata.namespace}, replicas
        )


def set_runner_set(rs) -> None:
    """Record the replicas of a RunnerSet, where they are set."""
    replicas: Optional[int] = rs.spec.replicas
    if replicas is not None:
        runner_set_replicas.set(
            {_RS_NAME: rs.metadata.name, _RS_NAMESPACE: rs.metadata.namespace}, replicas
        )