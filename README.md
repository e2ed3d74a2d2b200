# runnerscale

`runnerscale` holds the decision-making core of an autoscaler for fleets of
self-hosted CI runners. Given a `HorizontalRunnerAutoscaler` resource and a
snapshot of the state reported by the CI service, it works out how many runner
replicas a runner deployment or runner set should have, and it reacts to CI
webhook deliveries by reserving extra capacity for a while.

The package uses only the standard library.

## Modules

| Module | Purpose |
| --- | --- |
| `runnerscale.hra_types` | The `HorizontalRunnerAutoscaler` resource: spec, status, `MetricSpec`, `ScaleUpTrigger`, `CapacityReservation`, `ScheduledOverride`, `CacheEntry` and `ObjectMeta`. `HorizontalRunnerAutoscaler.to_dict` / `from_dict` convert to and from the JSON wire form; `deep_copy` returns an independent copy. |
| `runnerscale.runner_types` | `Runner`, `RunnerConfig`, `RunnerSpec` and their status types. `RunnerConfig.validate_repository` requires exactly one of enterprise, organization and repository; `Runner.validate`, `validate_create` and `validate_update` raise `InvalidResourceError` carrying `FieldError` entries. `Runner.is_registerable` checks the stored registration token. |
| `runnerscale.deployment_types` | `RunnerDeployment`, `RunnerReplicaSet`, `RunnerSet`, `RunnerTemplate` and `LabelSelector` (exact labels plus `In`, `NotIn`, `Exists`, `DoesNotExist` requirements). Deployments and replica sets validate their runner template. |
| `runnerscale.metrics` | In-process gauges (`GaugeVec`) and a `Registry`. `set_horizontal_runner_autoscaler_spec`, `set_horizontal_runner_autoscaler_status`, `set_runner_deployment` and `set_runner_set` record replica counts. `REGISTRY` holds the autoscaler and runner-deployment gauges; the runner-set gauge is kept as `runner_set_replicas` but is not registered there. |
| `runnerscale.autoscaling` | `Autoscaler` suggests replicas and applies bounds, reservations, caching and the scale-down delay. `GitHubClient` is an in-memory snapshot of workflow runs, workflow jobs and registered runners. |
| `runnerscale.controller` | `HorizontalRunnerAutoscalerReconciler` runs one reconcile pass over an autoscaler and its scale target, including scheduled overrides. `ClusterClient` is an in-memory store of autoscalers, deployments, runner sets, runners and pods. |
| `runnerscale.webhook` | `HorizontalRunnerAutoscalerGitHubWebhook.handle` processes one webhook request (`push`, `pull_request`, `check_run`, `ping`), finds the single matching scale target and adds a capacity reservation to it in an `AutoscalerStore`. `validate_payload` checks `sha1=`, `sha256=` or `sha512=` HMAC signatures. |

## How the desired replica count is reached

1. The minimum comes from `spec.min_replicas` (default 1), replaced by the
   `min_replicas` of the first active scheduled override, if it sets one.
   Overrides may recur `Daily`, `Weekly`, `Monthly` or `Yearly`, optionally
   until a given time.
2. A suggestion is taken from a still-valid `desiredReplicas` cache entry, or
   computed from the configured metrics:
   * `TotalNumberOfQueuedAndInProgressWorkflowRuns` counts queued and
     in-progress runs, job by job where a run has an id and its jobs can be
     listed. With no metrics and no scale-up triggers this metric is used for
     repository runners; organizational runners then need `repository_names`
     in the metric.
   * `PercentageRunnersBusy` compares the busy fraction of the target's own
     runners with thresholds and scales by factor or by a fixed adjustment
     (defaults: up at 0.8 busy by ×1.3, down below 0.3 busy by ×0.7).
   At most two metrics are allowed, and the only valid pair is
   `PercentageRunnersBusy` followed by
   `TotalNumberOfQueuedAndInProgressWorkflowRuns` as a fallback. Both
   `min_replicas` and `max_replicas` must be set.
3. Unexpired capacity reservations are added.
4. The result is clamped to `[min, max]`.
5. A scale-down is held back until the scale-down delay after the last
   scale-out has passed (default ten minutes).

Configuration problems are raised as `AutoscalingError`. A reconcile pass
also records a `RunnerAutoscalingFailure` entry in the reconciler's `events`
list when the computation fails.

## Examples

Computing replicas for a repository runner deployment:

```python
from datetime import datetime, timezone

from runnerscale.autoscaling import Autoscaler, GitHubClient, ScaleTarget, WorkflowRun
from runnerscale.hra_types import HorizontalRunnerAutoscaler, HorizontalRunnerAutoscalerSpec

github = GitHubClient(
    workflow_runs={
        "acme/app": [WorkflowRun("queued"), WorkflowRun("in_progress"), WorkflowRun("completed")],
    }
)
hra = HorizontalRunnerAutoscaler(spec=HorizontalRunnerAutoscalerSpec(min_replicas=1, max_replicas=5))
result = Autoscaler(github).compute_replicas_with_cache(
    datetime.now(timezone.utc), ScaleTarget(repo="acme/app"), hra, 1
)
assert result.desired_replicas == 2
```

Answering a webhook ping:

```python
from runnerscale.webhook import AutoscalerStore, HorizontalRunnerAutoscalerGitHubWebhook

hook = HorizontalRunnerAutoscalerGitHubWebhook(AutoscalerStore())
response = hook.handle("POST", {"X-GitHub-Event": "ping"}, b"{}")
assert (response.status, response.body) == (200, "pong")
```

Trigger conditions with no types match every event; otherwise the event's
action must be listed:

```python
from runnerscale.webhook import match_trigger_condition_against_event

assert match_trigger_condition_against_event([], None)
assert match_trigger_condition_against_event(["created"], "created")
assert not match_trigger_condition_against_event(["created"], None)
```

## What the package does not do

* It has no command and runs no server: `handle` takes a method, headers and
  a body and returns a `WebhookResponse`, and serving it over HTTP is left to
  the caller.
* It does not talk to a cluster or to the CI service. `ClusterClient`,
  `GitHubClient` and `AutoscalerStore` keep their data in memory; loading real
  state into them and writing changes back is up to the caller.
* It does not create runners or pods, register runners, or issue
  registration tokens.

## Requirements

Python 3.10 or later. The test suite uses pytest (the `test` extra).