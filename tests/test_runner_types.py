from datetime import datetime, timedelta, timezone

import pytest

from runnerscale.hra_types import ObjectMeta
from runnerscale.runner_types import (
    FieldError,
    InvalidResourceError,
    Runner,
    RunnerConfig,
    RunnerSpec,
    RunnerStatus,
    RunnerStatusRegistration,
)

NOW = datetime(2021, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
NEEDS = "Spec needs enterprise, organization or repository"
TOO_MANY = "Spec cannot have many fields defined enterprise, organization and repository"


def _runner(repository="owner/repo", token="token", expires_at=NOW + timedelta(hours=1),
            registered_repository="owner/repo"):
    return Runner(
        metadata=ObjectMeta(name="r1"),
        spec=RunnerSpec(repository=repository),
        status=RunnerStatus(
            registration=RunnerStatusRegistration(
                repository=registered_repository, token=token, expires_at=expires_at
            )
        ),
    )


def test_validate_repository_requires_one_field():
    with pytest.raises(ValueError, match=NEEDS):
        RunnerConfig().validate_repository()


@pytest.mark.parametrize(
    "config",
    [
        RunnerConfig(organization="org", repository="org/repo"),
        RunnerConfig(enterprise="ent", organization="org"),
        RunnerConfig(enterprise="ent", repository="org/repo"),
        RunnerConfig(enterprise="ent", organization="org", repository="org/repo"),
    ],
)
def test_validate_repository_rejects_several_fields(config):
    with pytest.raises(ValueError, match=TOO_MANY):
        config.validate_repository()


def test_runner_validate_reports_field_error():
    runner = Runner(metadata=ObjectMeta(name="r1"), spec=RunnerSpec())
    with pytest.raises(InvalidResourceError) as info:
        runner.validate()
    err = info.value
    assert err.kind == "Runner"
    assert err.name == "r1"
    assert err.errors == [FieldError("spec.repository", "", NEEDS)]
    assert str(err) == f'Runner.actions.summerwind.dev "r1" is invalid: spec.repository: Invalid value: "": {NEEDS}'


def test_validate_create_and_update_follow_validate():
    runner = Runner(metadata=ObjectMeta(name="r2"), spec=RunnerSpec(organization="org"))
    runner.validate_create()
    runner.spec.repository = "org/repo"
    with pytest.raises(InvalidResourceError) as info:
        runner.validate_update(None)
    assert info.value.errors[0].detail == TOO_MANY
    assert info.value.errors[0].value == "org/repo"


def test_validate_delete_allows_invalid_runner():
    runner = Runner(spec=RunnerSpec())
    assert runner.validate_delete() is None


def test_registerable_when_token_fresh_and_repository_matches():
    assert _runner().is_registerable(NOW) is True


def test_registerable_at_exact_expiry():
    assert _runner(expires_at=NOW).is_registerable(NOW) is True


@pytest.mark.parametrize(
    "runner",
    [
        _runner(registered_repository="owner/other"),
        _runner(token=""),
        _runner(expires_at=NOW - timedelta(seconds=1)),
        _runner(expires_at=None),
    ],
)
def test_not_registerable(runner):
    assert runner.is_registerable(NOW) is False


def test_runner_spec_carries_config_fields():
    spec = RunnerSpec(organization="org", labels=["gpu"], containers=[{"name": "runner"}])
    with pytest.raises(ValueError, match=TOO_MANY):
        RunnerSpec(organization="org", enterprise="ent").validate_repository()
    assert spec.labels == ["gpu"]
    assert spec.containers[0]["name"] == "runner"