"""Schemas of RunnerDeployment, RunnerReplicaSet and RunnerSet resources."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional

from .hra_types import ObjectMeta
from .runner_types import FieldError, InvalidResourceError, RunnerConfig, RunnerSpec

_deployment_log = logging.getLogger("runnerscale.runnerdeployment")
_replicaset_log = logging.getLogger("runnerscale.runnerreplicaset")

_TEMPLATE_REPOSITORY_PATH = "spec.template.spec.repository"


@dataclass
class LabelSelector:
    """Selects objects by exact labels and by set-based requirements.

    Each requirement in ``match_expressions`` is a mapping with the keys
    ``key``, ``operator`` (In, NotIn, Exists or DoesNotExist) and ``values``.
    An empty selector matches everything.
    """

    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: list[dict[str, Any]] = field(default_factory=list)

    def matches(self, labels: Mapping[str, str]) -> bool:
        """Whether the given labels satisfy every term of the selector."""
        for key, value in self.match_labels.items():
            if labels.get(key) != value:
                return False
        return all(_requirement_matches(req, labels) for req in self.match_expressions)


def _requirement_matches(requirement: Mapping[str, Any], labels: Mapping[str, str]) -> bool:
    key = requirement.get("key", "")
    operator = requirement.get("operator", "")
    values = list(requirement.get("values") or [])
    if not key:
        raise ValueError("label selector requirement is missing a key")
    if operator in ("In", "NotIn"):
        if not values:
            raise ValueError("values: Invalid value: []: for 'in', 'notin' operators, values set can't be empty")
        present = key in labels and labels[key] in values
        return present if operator == "In" else not present
    if operator in ("Exists", "DoesNotExist"):
        if values:
            raise ValueError(
                "values: Invalid value: values set must be empty for exists and does not exist"
            )
        return (key in labels) == (operator == "Exists")
    raise ValueError(f"{operator!r} is not a valid pod selector operator")


@dataclass
class RunnerTemplate:
    """Template from which runners are created."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: RunnerSpec = field(default_factory=RunnerSpec)


def _validate_template(kind: str, name: str, template: RunnerTemplate) -> None:
    errors: list[FieldError] = []
    try:
        template.spec.validate_repository()
    except ValueError as exc:
        errors.append(
            FieldError(_TEMPLATE_REPOSITORY_PATH, template.spec.repository, str(exc))
        )
    if errors:
        raise InvalidResourceError(kind, name, errors)


# --- RunnerDeployment -------------------------------------------------------


@dataclass
class RunnerDeploymentSpec:
    """Desired state of a RunnerDeployment."""

    replicas: Optional[int] = None
    selector: Optional[LabelSelector] = None
    template: RunnerTemplate = field(default_factory=RunnerTemplate)


@dataclass
class RunnerDeploymentStatus:
    """Observed state of a RunnerDeployment."""

    available_replicas: Optional[int] = None
    ready_replicas: Optional[int] = None
    updated_replicas: Optional[int] = None
    desired_replicas: Optional[int] = None
    replicas: Optional[int] = None


@dataclass
class RunnerDeployment:
    """A RunnerDeployment resource."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: RunnerDeploymentSpec = field(default_factory=RunnerDeploymentSpec)
    status: RunnerDeploymentStatus = field(default_factory=RunnerDeploymentStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    def validate(self) -> None:
        """Raise InvalidResourceError if the runner template is not acceptable."""
        _validate_template("RunnerDeployment", self.name, self.spec.template)

    def validate_create(self) -> None:
        """Validate a deployment about to be created."""
        _deployment_log.info("validate resource to be created name=%s", self.name)
        self.validate()

    def validate_update(self, old: Optional[RunnerDeployment]) -> None:
        """Validate a deployment about to be updated."""
        _deployment_log.info("validate resource to be updated name=%s", self.name)
        self.validate()

    def validate_delete(self) -> None:
        """Deletion is always allowed; the request is only recorded."""
        _deployment_log.info("validate resource to be deleted name=%s", self.name)

    def deep_copy(self) -> RunnerDeployment:
        """Return an independent copy of this resource."""
        return copy.deepcopy(self)


# --- RunnerReplicaSet -------------------------------------------------------


@dataclass
class RunnerReplicaSetSpec:
    """Desired state of a RunnerReplicaSet."""

    replicas: Optional[int] = None
    selector: Optional[LabelSelector] = None
    template: RunnerTemplate = field(default_factory=RunnerTemplate)


@dataclass
class RunnerReplicaSetStatus:
    """Observed state of a RunnerReplicaSet."""

    replicas: Optional[int] = None
    ready_replicas: Optional[int] = None
    available_replicas: Optional[int] = None


@dataclass
class RunnerReplicaSet:
    """A RunnerReplicaSet resource."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: RunnerReplicaSetSpec = field(default_factory=RunnerReplicaSetSpec)
    status: RunnerReplicaSetStatus = field(default_factory=RunnerReplicaSetStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    def validate(self) -> None:
        """Raise InvalidResourceError if the runner template is not acceptable."""
        _validate_template("RunnerReplicaSet", self.name, self.spec.template)

    def validate_create(self) -> None:
        """Validate a replica set about to be created."""
        _replicaset_log.info("validate resource to be created name=%s", self.name)
        self.validate()

    def validate_update(self, old: Optional[RunnerReplicaSet]) -> None:
        """Validate a replica set about to be updated."""
        _replicaset_log.info("validate resource to be updated name=%s", self.name)
        self.validate()

    def validate_delete(self) -> None:
        """Deletion is always allowed; the request is only recorded."""
        _replicaset_log.info("validate resource to be deleted name=%s", self.name)


# --- RunnerSet --------------------------------------------------------------


@dataclass
class RunnerSetSpec(RunnerConfig):
    """Desired state of a RunnerSet: runner configuration plus stateful-set settings."""

    replicas: Optional[int] = None
    selector: Optional[LabelSelector] = None
    template: dict[str, Any] = field(default_factory=dict)
    service_name: str = ""
    volume_claim_templates: list[dict[str, Any]] = field(default_factory=list)
    pod_management_policy: str = ""
    update_strategy: dict[str, Any] = field(default_factory=dict)
    revision_history_limit: Optional[int] = None
    min_ready_seconds: int = 0


@dataclass
class RunnerSetStatus:
    """Observed state of a RunnerSet."""

    current_replicas: Optional[int] = None
    ready_replicas: Optional[int] = None
    updated_replicas: Optional[int] = None
    desired_replicas: Optional[int] = None
    replicas: Optional[int] = None


@dataclass
class RunnerSet:
    """A RunnerSet resource."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: RunnerSetSpec = field(default_factory=RunnerSetSpec)
    status: RunnerSetStatus = field(default_factory=RunnerSetStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    def deep_copy(self) -> RunnerSet:
        """Return an independent copy of this resource."""
        return copy.deepcopy(self)