import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

import pytest

from runnerscale.deployment_types import RunnerDeployment, RunnerDeploymentSpec, RunnerTemplate
from runnerscale.hra_types import (
    CapacityReservation,
    CheckRunSpec,
    GitHubEventScaleUpTriggerSpec,
    HorizontalRunnerAutoscaler,
    HorizontalRunnerAutoscalerSpec,
    ObjectMeta,
    PullRequestSpec,
    PushSpec,
    ScaleTargetRef,
    ScaleUpTrigger,
)
from runnerscale.runner_types import RunnerSpec
from runnerscale.webhook import (
    NO_TARGET_MESSAGE,
    AutoscalerStore,
    HorizontalRunnerAutoscalerGitHubWebhook,
    ScaleUpTarget,
    WebhookError,
    get_valid_capacity_reservations,
    match_trigger_condition_against_event,
    validate_payload,
)

NOW = datetime(2021, 6, 1, 12, 0, tzinfo=timezone.utc)


def _send(webhook, event_type, event, extra_headers=None):
    headers = {"X-GitHub-Event": event_type, "Content-Type": "application/json"}
    headers.update(extra_headers or {})
    return webhook.handle("POST", headers, json.dumps(event).encode())


def _empty_webhook():
    return HorizontalRunnerAutoscalerGitHubWebhook(AutoscalerStore())


def _hra(name, rd_name, triggers, namespace="default"):
    return HorizontalRunnerAutoscaler(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=HorizontalRunnerAutoscalerSpec(
            scale_target_ref=ScaleTargetRef(name=rd_name),
            scale_up_triggers=triggers,
        ),
    )


def _rd(name, repository="", organization="", namespace="default"):
    return RunnerDeployment(
        metadata=ObjectMeta(name=name, namespace=namespace),
        spec=RunnerDeploymentSpec(
            template=RunnerTemplate(
                spec=RunnerSpec(repository=repository, organization=organization)
            )
        ),
    )


def _push_trigger(amount=0, duration=timedelta(minutes=5)):
    return ScaleUpTrigger(
        github_event=GitHubEventScaleUpTriggerSpec(push=PushSpec()),
        amount=amount,
        duration=duration,
    )


PUSH_EVENT = {
    "repository": {"name": "myrepo", "owner": {"login": "myorg", "type": "Organization"}}
}


def test_get_request_reports_running():
    response = _empty_webhook().handle("GET", {}, b"")
    assert response.status == 200
    assert response.body == "webhook server is running\n"


def test_ping_returns_pong():
    response = _send(_empty_webhook(), "ping", {"zen": "zen"})
    assert (response.status, response.body) == (200, "pong")


def test_push_without_autoscalers():
    event = {"repository": {"name": "myrepo", "organization": "myorg"}}
    response = _send(_empty_webhook(), "push", event)
    assert (response.status, response.body) == (200, NO_TARGET_MESSAGE)


def test_pull_request_without_autoscalers():
    event = {
        "pull_request": {"base": {"ref": "main"}},
        "repository": {"name": "myorg/myrepo", "organization": {"name": "myorg"}},
        "action": "created",
    }
    response = _send(_empty_webhook(), "pull_request", event)
    assert (response.status, response.body) == (200, NO_TARGET_MESSAGE)


@pytest.mark.parametrize("owner_type", ["Organization", "User"])
def test_check_run_without_autoscalers(owner_type):
    event = {
        "action": "created",
        "check_run": {"status": "queued", "name": "build"},
        "repository": {"name": "myrepo", "owner": {"login": "myorg", "type": owner_type}},
    }
    response = _send(_empty_webhook(), "check_run", event)
    assert (response.status, response.body) == (200, NO_TARGET_MESSAGE)


def test_unknown_event_name_is_an_error():
    response = _send(_empty_webhook(), "no_such_event", {})
    assert response.status == 500
    assert "unknown X-Github-Event" in response.body


def test_unhandled_known_event_is_rejected_without_body():
    response = _send(_empty_webhook(), "issues", {"action": "opened"})
    assert (response.status, response.body) == (500, "")


def test_invalid_json_is_an_error():
    webhook = _empty_webhook()
    response = webhook.handle("POST", {"X-GitHub-Event": "push"}, b"{not json")
    assert response.status == 500
    assert response.body


def test_push_scales_matching_repository_deployment():
    store = AutoscalerStore(
        autoscalers=[_hra("hra1", "rd1", [_push_trigger()])],
        deployments=[_rd("rd1", repository="myorg/myrepo")],
    )
    webhook = HorizontalRunnerAutoscalerGitHubWebhook(store)
    response = _send(webhook, "push", PUSH_EVENT)
    assert (response.status, response.body) == (200, "scaled hra1 by 1")
    stored = store.get("default", "hra1")
    assert [r.replicas for r in stored.spec.capacity_reservations] == [1]


def test_push_falls_back_to_organizational_deployment():
    store = AutoscalerStore(
        autoscalers=[_hra("orghra", "orgrd", [_push_trigger()])],
        deployments=[_rd("orgrd", organization="myorg")],
    )
    webhook = HorizontalRunnerAutoscalerGitHubWebhook(store)
    response = _send(webhook, "push", PUSH_EVENT)
    assert response.body == "scaled orghra by 1"


def test_user_owned_repository_skips_organization_lookup():
    store = AutoscalerStore(
        autoscalers=[_hra("orghra", "orgrd", [_push_trigger()])],
        deployments=[_rd("orgrd", organization="myorg")],
    )
    webhook = HorizontalRunnerAutoscalerGitHubWebhook(store)
    event = {"repository": {"name": "myrepo", "owner": {"login": "myorg", "type": "User"}}}
    assert _send(webhook, "push", event).body == NO_TARGET_MESSAGE


def test_namespace_restricts_search():
    store = AutoscalerStore(
        autoscalers=[_hra("hra1", "rd1", [_push_trigger()], namespace="other")],
        deployments=[_rd("rd1", repository="myorg/myrepo", namespace="other")],
    )
    webhook = HorizontalRunnerAutoscalerGitHubWebhook(store, namespace="default")
    assert _send(webhook, "push", PUSH_EVENT).body == NO_TARGET_MESSAGE


def test_ambiguous_targets_are_not_scaled():
    store = AutoscalerStore(
        autoscalers=[
            _hra("a", "rd1", [_push_trigger()]),
            _hra("b", "rd2", [_push_trigger()]),
        ],
        deployments=[
            _rd("rd1", repository="myorg/myrepo"),
            _rd("rd2", repository="myorg/myrepo"),
        ],
    )
    webhook = HorizontalRunnerAutoscalerGitHubWebhook(store)
    predicate = webhook.match_push_event(PUSH_EVENT)
    assert webhook.get_scale_target("myorg/myrepo", predicate) is None
    assert len(webhook.search_scale_targets(store.find_by_scale_target_key("myorg/myrepo"), predicate)) == 2


def test_signed_request_is_accepted():
    store = AutoscalerStore(
        autoscalers=[_hra("hra1", "rd1", [_push_trigger()])],
        deployments=[_rd("rd1", repository="myorg/myrepo")],
    )
    secret = b"secret"
    webhook = HorizontalRunnerAutoscalerGitHubWebhook(store, secret_key=secret)
    body = json.dumps(PUSH_EVENT).encode()
    digest = hmac.new(secret, body, hashlib.sha256).hexdigest()
    headers = {
        "X-GitHub-Event": "push",
        "Content-Type": "application/json",
        "X-Hub-Signature-256": f"sha256={digest}",
    }
    assert webhook.handle("POST", headers, body).body == "scaled hra1 by 1"


def test_bad_signature_is_rejected():
    webhook = HorizontalRunnerAutoscalerGitHubWebhook(AutoscalerStore(), secret_key=b"secret")
    response = _send(webhook, "ping", {}, {"X-Hub-Signature-256": "sha256=00"})
    assert response.status == 500
    assert response.body == "payload signature check failed"


def test_validate_payload_returns_body():
    body = b'{"a": 1}'
    signature = "sha1=" + hmac.new(b"secret", body, hashlib.sha1).hexdigest()
    assert validate_payload(body, signature, b"secret") == body


@pytest.mark.parametrize(
    "signature, message",
    [(None, "missing signature"), ("md5=00", "unknown hash type prefix"), ("nohash", "error parsing")],
)
def test_validate_payload_errors(signature, message):
    with pytest.raises(WebhookError, match=message):
        validate_payload(b"{}", signature, b"secret")


def test_try_scale_up_uses_amount_and_duration_and_drops_expired():
    hra = _hra("hra1", "rd1", [])
    hra.spec.capacity_reservations = [
        CapacityReservation(expiration_time=NOW - timedelta(seconds=1), replicas=5),
        CapacityReservation(expiration_time=NOW + timedelta(minutes=1), replicas=2),
    ]
    store = AutoscalerStore(autoscalers=[hra])
    webhook = HorizontalRunnerAutoscalerGitHubWebhook(store)
    trigger = _push_trigger(amount=3, duration=timedelta(minutes=10))
    webhook.try_scale_up(ScaleUpTarget(hra=hra, trigger=trigger), now=NOW)
    stored = store.get("default", "hra1")
    assert [r.replicas for r in stored.spec.capacity_reservations] == [2, 3]
    assert stored.spec.capacity_reservations[-1].expiration_time == NOW + timedelta(minutes=10)


def test_try_scale_up_of_missing_autoscaler_fails():
    webhook = _empty_webhook()
    target = ScaleUpTarget(hra=_hra("ghost", "rd", []), trigger=_push_trigger())
    with pytest.raises(WebhookError, match="add capacity reservation"):
        webhook.try_scale_up(target, now=NOW)


def test_try_scale_up_without_target():
    assert _empty_webhook().try_scale_up(None) is None


def test_get_valid_capacity_reservations():
    hra = _hra("hra", "rd", [])
    hra.spec.capacity_reservations = [
        CapacityReservation(expiration_time=NOW - timedelta(seconds=1), replicas=1),
        CapacityReservation(expiration_time=NOW, replicas=2),
        CapacityReservation(expiration_time=NOW + timedelta(seconds=1), replicas=3),
    ]
    assert sum(r.replicas for r in get_valid_capacity_reservations(hra, NOW)) == 3


@pytest.mark.parametrize(
    "types, action, expected",
    [
        ([], None, True),
        (["created"], None, False),
        (["created"], "created", True),
        (["created", "completed"], "completed", True),
        (["created"], "rerequested", False),
    ],
)
def test_match_trigger_condition(types, action, expected):
    assert match_trigger_condition_against_event(types, action) is expected


def test_pull_request_matcher_checks_types_and_branches():
    webhook = _empty_webhook()
    trigger = ScaleUpTrigger(
        github_event=GitHubEventScaleUpTriggerSpec(
            pull_request=PullRequestSpec(types=["opened"], branches=["main"])
        )
    )
    matching = {"action": "opened", "pull_request": {"base": {"ref": "main"}}}
    other_branch = {"action": "opened", "pull_request": {"base": {"ref": "dev"}}}
    assert webhook.match_pull_request_event(matching)(trigger) is True
    assert webhook.match_pull_request_event(other_branch)(trigger) is False
    assert webhook.match_pull_request_event(matching)(_push_trigger()) is False


def test_check_run_matcher_checks_status_and_names():
    webhook = _empty_webhook()
    trigger = ScaleUpTrigger(
        github_event=GitHubEventScaleUpTriggerSpec(
            check_run=CheckRunSpec(types=["created"], status="queued", names=["build-*"])
        )
    )
    event = {"action": "created", "check_run": {"status": "queued", "name": "build-linux"}}
    wrong_name = {"action": "created", "check_run": {"status": "queued", "name": "lint"}}
    wrong_status = {"action": "created", "check_run": {"status": "completed", "name": "build-linux"}}
    assert webhook.match_check_run_event(event)(trigger) is True
    assert webhook.match_check_run_event(wrong_name)(trigger) is False
    assert webhook.match_check_run_event(wrong_status)(trigger) is False
    assert webhook.match_check_run_event(event)(ScaleUpTrigger()) is False


def test_push_matcher_requires_push_spec():
    webhook = _empty_webhook()
    predicate = webhook.match_push_event(PUSH_EVENT)
    assert predicate(_push_trigger()) is True
    assert predicate(ScaleUpTrigger()) is False