import pytest

from runnerscale import metrics
from runnerscale.deployment_types import (
    RunnerDeployment,
    RunnerDeploymentSpec,
    RunnerSet,
    RunnerSetSpec,
)
from runnerscale.hra_types import (
    HorizontalRunnerAutoscalerSpec,
    HorizontalRunnerAutoscalerStatus,
    ObjectMeta,
)
from runnerscale.metrics import GaugeVec, Registry


def test_gauge_vec_set_and_value():
    gauge = GaugeVec("g", "help", ["a", "b"])
    gauge.set({"a": "x", "b": "y"}, 4)
    gauge.set({"b": "y", "a": "x"}, 7)
    assert gauge.value({"a": "x", "b": "y"}) == 7.0
    assert gauge.samples() == [({"a": "x", "b": "y"}, 7.0)]


def test_gauge_vec_unset_series_raises_key_error():
    gauge = GaugeVec("g", "help", ["a"])
    with pytest.raises(KeyError):
        gauge.value({"a": "missing"})


def test_gauge_vec_rejects_wrong_label_names():
    gauge = GaugeVec("g", "help", ["a", "b"])
    with pytest.raises(ValueError):
        gauge.set({"a": "x"}, 1)
    with pytest.raises(ValueError):
        gauge.set({"a": "x", "b": "y", "c": "z"}, 1)


def test_registry_collects_every_sample():
    registry = Registry()
    first = GaugeVec("first", "h", ["l"])
    second = GaugeVec("second", "h", ["l"])
    registry.register(first, second)
    first.set({"l": "1"}, 1)
    second.set({"l": "2"}, 2)
    assert list(registry.collect()) == [
        ("first", {"l": "1"}, 1.0),
        ("second", {"l": "2"}, 2.0),
    ]


def test_registry_rejects_duplicate_names():
    registry = Registry()
    registry.register(GaugeVec("dup", "h", ["l"]))
    with pytest.raises(ValueError):
        registry.register(GaugeVec("dup", "h", ["l"]))
    with pytest.raises(ValueError):
        registry.register(GaugeVec("twice", "h", []), GaugeVec("twice", "h", []))


def test_default_registry_holds_deployment_and_autoscaler_gauges():
    meta = ObjectMeta(name="reg-check", namespace="reg-ns")
    metrics.set_horizontal_runner_autoscaler_spec(
        meta, HorizontalRunnerAutoscalerSpec(min_replicas=1, max_replicas=2)
    )
    names = {name for name, _, _ in metrics.REGISTRY.collect()}
    assert "horizontalrunnerautoscaler_spec_min_replicas" in names
    assert "horizontalrunnerautoscaler_spec_max_replicas" in names


def test_set_hra_spec_records_min_and_max():
    meta = ObjectMeta(name="hra-spec", namespace="ns1")
    metrics.set_horizontal_runner_autoscaler_spec(
        meta, HorizontalRunnerAutoscalerSpec(min_replicas=2, max_replicas=5)
    )
    labels = {"horizontalrunnerautoscaler": "hra-spec", "namespace": "ns1"}
    assert metrics.horizontal_runner_autoscaler_min_replicas.value(labels) == 2.0
    assert metrics.horizontal_runner_autoscaler_max_replicas.value(labels) == 5.0


def test_set_hra_spec_skips_unset_fields():
    meta = ObjectMeta(name="hra-unset", namespace="ns2")
    metrics.set_horizontal_runner_autoscaler_spec(meta, HorizontalRunnerAutoscalerSpec())
    labels = {"horizontalrunnerautoscaler": "hra-unset", "namespace": "ns2"}
    with pytest.raises(KeyError):
        metrics.horizontal_runner_autoscaler_min_replicas.value(labels)


def test_set_hra_status_records_desired_replicas():
    meta = ObjectMeta(name="hra-status", namespace="ns3")
    labels = {"horizontalrunnerautoscaler": "hra-status", "namespace": "ns3"}
    metrics.set_horizontal_runner_autoscaler_status(meta, HorizontalRunnerAutoscalerStatus())
    with pytest.raises(KeyError):
        metrics.horizontal_runner_autoscaler_desired_replicas.value(labels)
    metrics.set_horizontal_runner_autoscaler_status(
        meta, HorizontalRunnerAutoscalerStatus(desired_replicas=3)
    )
    assert metrics.horizontal_runner_autoscaler_desired_replicas.value(labels) == 3.0


def test_set_runner_deployment():
    rd = RunnerDeployment(
        metadata=ObjectMeta(name="rd-metric", namespace="ns4"),
        spec=RunnerDeploymentSpec(replicas=4),
    )
    metrics.set_runner_deployment(rd)
    labels = {"runnerdeployment": "rd-metric", "namespace": "ns4"}
    assert metrics.runner_deployment_replicas.value(labels) == 4.0


def test_set_runner_set():
    rs = RunnerSet(
        metadata=ObjectMeta(name="rs-metric", namespace="ns5"),
        spec=RunnerSetSpec(replicas=6),
    )
    metrics.set_runner_set(rs)
    labels = {"runnerset": "rs-metric", "namespace": "ns5"}
    assert metrics.runner_set_replicas.value(labels) == 6.0


def test_set_runner_set_without_replicas_records_nothing():
    rs = RunnerSet(metadata=ObjectMeta(name="rs-none", namespace="ns6"))
    metrics.set_runner_set(rs)
    with pytest.raises(KeyError):
        metrics.runner_set_replicas.value({"runnerset": "rs-none", "namespace": "ns6"})