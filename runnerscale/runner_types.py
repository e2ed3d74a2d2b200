"""Schema of the Runner resource and its admission validation."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .hra_types import GROUP, ObjectMeta

_log = logging.getLogger("runnerscale.runner")


@dataclass(frozen=True)
class FieldError:
    """An invalid value found at a field path."""

    path: str
    value: Any
    detail: str

    def __str__(self) -> str:
        shown = json.dumps(self.value) if isinstance(self.value, str) else str(self.value)
        return f"{self.path}: Invalid value: {shown}: {self.detail}"


class InvalidResourceError(Exception):
    """Raised when a resource fails validation."""

    def __init__(self, kind: str, name: str, errors: list[FieldError]) -> None:
        self.kind = kind
        self.name = name
        self.errors = list(errors)
        if len(self.errors) == 1:
            summary = str(self.errors[0])
        else:
            summary = "[" + ", ".join(str(e) for e in self.errors) + "]"
        super().__init__(f'{kind}.{GROUP} "{name}" is invalid: {summary}')


@dataclass
class RunnerConfig:
    """Where and how a runner registers with GitHub."""

    enterprise: str = ""
    organization: str = ""
    repository: str = ""
    labels: list[str] = field(default_factory=list)
    group: str = ""
    ephemeral: Optional[bool] = None
    image: str = ""
    work_dir: str = ""
    dockerd_within_runner_container: Optional[bool] = None
    docker_enabled: Optional[bool] = None
    docker_mtu: Optional[int] = None
    docker_registry_mirror: Optional[str] = None
    volume_size_limit: Optional[str] = None

    def validate_repository(self) -> None:
        """Require exactly one of enterprise, organization and repository."""
        found = sum(1 for value in (self.organization, self.repository, self.enterprise) if value)
        if found == 0:
            raise ValueError("Spec needs enterprise, organization or repository")
        if found > 1:
            raise ValueError(
                "Spec cannot have many fields defined enterprise, organization and repository"
            )


@dataclass
class RunnerSpec(RunnerConfig):
    """Desired state of a Runner: its configuration plus pod settings."""

    dockerd_container_resources: dict[str, Any] = field(default_factory=dict)
    docker_volume_mounts: list[dict[str, Any]] = field(default_factory=list)
    containers: list[dict[str, Any]] = field(default_factory=list)
    image_pull_policy: str = ""
    env: list[dict[str, Any]] = field(default_factory=list)
    env_from: list[dict[str, Any]] = field(default_factory=list)
    resources: dict[str, Any] = field(default_factory=dict)
    volume_mounts: list[dict[str, Any]] = field(default_factory=list)
    volumes: list[dict[str, Any]] = field(default_factory=list)
    enable_service_links: Optional[bool] = None
    init_containers: list[dict[str, Any]] = field(default_factory=list)
    node_selector: dict[str, str] = field(default_factory=dict)
    service_account_name: str = ""
    automount_service_account_token: Optional[bool] = None
    sidecar_containers: list[dict[str, Any]] = field(default_factory=list)
    security_context: Optional[dict[str, Any]] = None
    image_pull_secrets: list[dict[str, Any]] = field(default_factory=list)
    affinity: Optional[dict[str, Any]] = None
    tolerations: list[dict[str, Any]] = field(default_factory=list)
    termination_grace_period_seconds: Optional[int] = None
    ephemeral_containers: list[dict[str, Any]] = field(default_factory=list)
    host_aliases: list[dict[str, Any]] = field(default_factory=list)
    runtime_class_name: Optional[str] = None


@dataclass
class RunnerStatusRegistration:
    """Registration state of a runner."""

    enterprise: str = ""
    organization: str = ""
    repository: str = ""
    labels: list[str] = field(default_factory=list)
    token: str = ""
    expires_at: Optional[datetime] = None


@dataclass
class RunnerStatus:
    """Observed state of a runner."""

    registration: RunnerStatusRegistration = field(default_factory=RunnerStatusRegistration)
    phase: str = ""
    reason: str = ""
    message: str = ""
    last_registration_check_time: Optional[datetime] = None


@dataclass
class Runner:
    """A Runner resource."""

    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: RunnerSpec = field(default_factory=RunnerSpec)
    status: RunnerStatus = field(default_factory=RunnerStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    def is_registerable(self, now: Optional[datetime] = None) -> bool:
        """Whether the stored registration token can still be used."""
        registration = self.status.registration
        if registration.repository != self.spec.repository:
            return False
        if not registration.token:
            return False
        if registration.expires_at is None:
            return False
        current = now if now is not None else datetime.now(timezone.utc)
        expires = registration.expires_at
        if expires.tzinfo is None:
            expires = expires.replace(tzinfo=timezone.utc)
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return not expires < current

    def validate(self) -> None:
        """Raise InvalidResourceError if the spec is not acceptable."""
        errors: list[FieldError] = []
        try:
            self.spec.validate_repository()
        except ValueError as exc:
            errors.append(FieldError("spec.repository", self.spec.repository, str(exc)))
        if errors:
            raise InvalidResourceError("Runner", self.name, errors)

    def validate_create(self) -> None:
        """Validate a runner about to be created."""
        _log.info("validate resource to be created name=%s", self.name)
        self.validate()

    def validate_update(self, old: Optional[Runner]) -> None:
        """Validate a runner about to be updated."""
        _log.info("validate resource to be updated name=%s", self.name)
        self.validate()

    def validate_delete(self) -> None:
        """Deletion is always allowed; the request is only recorded."""
        _log.info("validate resource to be deleted name=%s", self.name)