"""GitHub webhook receiver that reserves extra runner capacity on matching events."""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from fnmatch import fnmatchcase
from typing import Any, Callable, Iterable, Mapping, Optional
from urllib.parse import parse_qs

from .deployment_types import RunnerDeployment
from .hra_types import CapacityReservation, HorizontalRunnerAutoscaler, ScaleUpTrigger

_log = logging.getLogger("runnerscale.webhook")

Predicate = Callable[[ScaleUpTrigger], bool]
Event = Mapping[str, Any]

NO_TARGET_MESSAGE = "no horizontalrunnerautoscaler to scale for this github event"

_SIGNATURE_HEADERS = ("x-hub-signature-256", "x-hub-signature")
_HASHES = {"sha1": hashlib.sha1, "sha256": hashlib.sha256, "sha512": hashlib.sha512}

_KNOWN_EVENTS = frozenset(
    {
        "check_run", "check_suite", "commit_comment", "content_reference", "create",
        "delete", "deploy_key", "deployment", "deployment_status", "fork",
        "github_app_authorization", "gollum", "installation", "installation_repositories",
        "issue_comment", "issues", "label", "marketplace_purchase", "member",
        "membership", "meta", "milestone", "organization", "org_block", "package",
        "page_build", "ping", "project", "project_card", "project_column", "public",
        "pull_request", "pull_request_review", "pull_request_review_comment", "push",
        "release", "repository", "repository_dispatch", "repository_vulnerability_alert",
        "star", "status", "team", "team_add", "user", "watch", "workflow_dispatch",
        "workflow_run",
    }
)


class WebhookError(Exception):
    """Raised when a webhook request cannot be validated, parsed or acted on."""


@dataclass(frozen=True)
class WebhookResponse:
    """HTTP status and body returned for a webhook request."""

    status: int
    body: str


@dataclass
class ScaleUpTarget:
    """An autoscaler together with the trigger of it that an event matched."""

    hra: HorizontalRunnerAutoscaler
    trigger: ScaleUpTrigger

    @property
    def name(self) -> str:
        return self.hra.metadata.name


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _as_timedelta(value: Any) -> timedelta:
    if value is None:
        return timedelta(0)
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=float(value))


def match_trigger_condition_against_event(
    types: Optional[Iterable[str]], event_action: Optional[str]
) -> bool:
    """An empty condition matches anything; otherwise the action must be listed."""
    wanted = list(types or [])
    if not wanted:
        return True
    if event_action is None:
        return False
    return event_action in wanted


def get_valid_capacity_reservations(
    hra: HorizontalRunnerAutoscaler, now: Optional[datetime] = None
) -> list[CapacityReservation]:
    """Return the reservations that expire strictly after now."""
    current = _aware(now) if now is not None else datetime.now(timezone.utc)
    return [
        r
        for r in hra.spec.capacity_reservations
        if r.expiration_time is not None and _aware(r.expiration_time) > current
    ]


def validate_payload(body: bytes, signature: Optional[str], secret: bytes) -> bytes:
    """Check an HMAC signature such as "sha256=<hex>" over body; return body."""
    if not signature:
        raise WebhookError("missing signature")
    prefix, sep, digest = signature.partition("=")
    if not sep:
        raise WebhookError(f"error parsing signature {signature!r}")
    algorithm = _HASHES.get(prefix)
    if algorithm is None:
        raise WebhookError(f"unknown hash type prefix: {prefix!r}")
    try:
        given = bytes.fromhex(digest)
    except ValueError:
        raise WebhookError(f"error parsing signature {signature!r}") from None
    expected = hmac.new(secret, body, algorithm).digest()
    if not hmac.compare_digest(given, expected):
        raise WebhookError("payload signature check failed")
    return body


def _payload_for_content_type(body: bytes, content_type: str) -> bytes:
    media_type = content_type.split(";", 1)[0].strip().lower()
    if media_type == "application/json":
        return body
    if media_type == "application/x-www-form-urlencoded":
        form = parse_qs(body.decode("utf-8", errors="replace"))
        return form.get("payload", [""])[0].encode("utf-8")
    raise WebhookError(f"webhook request has unsupported Content-Type {content_type!r}")


def _parse_event(event_type: str, payload: bytes) -> dict[str, Any]:
    if event_type not in _KNOWN_EVENTS:
        raise WebhookError(f"unknown X-Github-Event in message: {event_type}")
    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise WebhookError(f"could not decode {event_type} event: {exc}") from exc
    if not isinstance(event, dict):
        raise WebhookError(f"could not decode {event_type} event: expected a JSON object")
    return event


def _get(data: Optional[Mapping[str, Any]], *path: str) -> Any:
    current: Any = data
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


class AutoscalerStore:
    """Autoscalers indexed by the repository and organization of their RunnerDeployment."""

    def __init__(
        self,
        autoscalers: Iterable[HorizontalRunnerAutoscaler] = (),
        deployments: Iterable[RunnerDeployment] = (),
    ) -> None:
        self._autoscalers = {
            (h.metadata.namespace, h.metadata.name): h.deep_copy() for h in autoscalers
        }
        self._deployments = {
            (d.metadata.namespace, d.metadata.name): d.deep_copy() for d in deployments
        }

    def _keys_of(self, hra: HorizontalRunnerAutoscaler) -> list[str]:
        ref_name = hra.spec.scale_target_ref.name
        if not ref_name:
            return []
        rd = self._deployments.get((hra.metadata.namespace, ref_name))
        if rd is None:
            return []
        spec = rd.spec.template.spec
        return [spec.repository, spec.organization]

    def find_by_scale_target_key(
        self, key: str, namespace: str = ""
    ) -> list[HorizontalRunnerAutoscaler]:
        """Return copies of the autoscalers indexed under key, optionally in one namespace."""
        if not key:
            return []
        return [
            hra.deep_copy()
            for (ns, _), hra in self._autoscalers.items()
            if (not namespace or ns == namespace) and key in self._keys_of(hra)
        ]

    def get(self, namespace: str, name: str) -> Optional[HorizontalRunnerAutoscaler]:
        """Return a copy of the stored autoscaler, or None."""
        found = self._autoscalers.get((namespace, name))
        return None if found is None else found.deep_copy()

    def update(self, hra: HorizontalRunnerAutoscaler) -> None:
        """Replace a stored autoscaler; it must already exist."""
        key = (hra.metadata.namespace, hra.metadata.name)
        if key not in self._autoscalers:
            raise LookupError(f"horizontalrunnerautoscaler {key[0]}/{key[1]} not found")
        self._autoscalers[key] = hra.deep_copy()


class HorizontalRunnerAutoscalerGitHubWebhook:
    """Scales autoscalers up by adding capacity reservations on GitHub events."""

    def __init__(
        self,
        store: AutoscalerStore,
        secret_key: bytes = b"",
        namespace: str = "",
        name: str = "webhookbasedautoscaler",
    ) -> None:
        self.store = store
        self.secret_key = secret_key
        self.namespace = namespace
        self.name = name

    def handle(
        self, method: str, headers: Mapping[str, str], body: bytes = b""
    ) -> WebhookResponse:
        """Process one HTTP request and return the response to send."""
        if method.upper() == "GET":
            return WebhookResponse(200, "webhook server is running\n")

        lowered = {k.lower(): v for k, v in headers.items()}
        event_type = lowered.get("x-github-event", "")
        context = {
            "event": event_type,
            "hookID": lowered.get("x-github-hook-id", ""),
            "delivery": lowered.get("x-github-delivery", ""),
        }

        try:
            if self.secret_key:
                signature = next(
                    (lowered[h] for h in _SIGNATURE_HEADERS if lowered.get(h)), None
                )
                validate_payload(body, signature, self.secret_key)
                payload = _payload_for_content_type(body, lowered.get("content-type", ""))
            else:
                payload = body
            event = _parse_event(event_type, payload)
        except WebhookError as exc:
            _log.error("error handling webhook request: %s %s", exc, context)
            return WebhookResponse(500, str(exc))

        if event_type == "ping":
            _log.info("received ping event %s", context)
            return WebhookResponse(200, "pong")

        matchers = {
            "push": self.match_push_event,
            "pull_request": self.match_pull_request_event,
            "check_run": self.match_check_run_event,
        }
        matcher = matchers.get(event_type)
        if matcher is None:
            _log.info("unknown event type eventType=%s %s", event_type, context)
            return WebhookResponse(500, "")

        repo = event.get("repository") or {}
        try:
            target = self.get_scale_up_target(
                _get(repo, "name") or "",
                _get(repo, "owner", "login") or "",
                _get(repo, "owner", "type") or "",
                matcher(event),
            )
        except WebhookError as exc:
            _log.error("handling %s event: %s %s", event_type, exc, context)
            return WebhookResponse(500, str(exc))

        if target is None:
            _log.info(
                "Scale target not found. If this is unexpected, ensure that there is exactly "
                "one repository-wide or organizational runner deployment that matches this "
                "webhook event %s",
                context,
            )
            return WebhookResponse(200, NO_TARGET_MESSAGE)

        try:
            self.try_scale_up(target)
        except WebhookError as exc:
            _log.error("could not scale up: %s %s", exc, context)
            return WebhookResponse(500, "")

        message = f"scaled {target.name} by 1"
        _log.info(message)
        return WebhookResponse(200, message)

    def match_push_event(self, event: Event) -> Predicate:
        """Predicate accepting triggers that react to pushes."""

        def predicate(trigger: ScaleUpTrigger) -> bool:
            github_event = trigger.github_event
            return github_event is not None and github_event.push is not None

        return predicate

    def match_pull_request_event(self, event: Event) -> Predicate:
        """Predicate accepting triggers whose pull request types and branches match."""
        action = event.get("action")
        base_ref = _get(event, "pull_request", "base", "ref")

        def predicate(trigger: ScaleUpTrigger) -> bool:
            github_event = trigger.github_event
            if github_event is None or github_event.pull_request is None:
                return False
            spec = github_event.pull_request
            if not match_trigger_condition_against_event(spec.types, action):
                return False
            return match_trigger_condition_against_event(spec.branches, base_ref)

        return predicate

    def match_check_run_event(self, event: Event) -> Predicate:
        """Predicate accepting triggers whose check run types, status and names match."""
        action = event.get("action")
        check_run = event.get("check_run")

        def predicate(trigger: ScaleUpTrigger) -> bool:
            github_event = trigger.github_event
            if github_event is None or github_event.check_run is None:
                return False
            spec = github_event.check_run
            if not match_trigger_condition_against_event(spec.types, action):
                return False
            if spec.status:
                status = _get(check_run, "status")
                if status is None or status != spec.status:
                    return False
            if isinstance(check_run, Mapping) and spec.names:
                name = check_run.get("name") or ""
                return any(fnmatchcase(name, pattern) for pattern in spec.names)
            return True

        return predicate

    def search_scale_targets(
        self, hras: Iterable[HorizontalRunnerAutoscaler], predicate: Predicate
    ) -> list[ScaleUpTarget]:
        """Pair every live autoscaler with each of its triggers accepted by predicate."""
        return [
            ScaleUpTarget(hra=hra, trigger=trigger)
            for hra in hras
            if not hra.metadata.is_deleted()
            for trigger in hra.spec.scale_up_triggers
            if predicate(trigger)
        ]

    def get_scale_target(self, key: str, predicate: Predicate) -> Optional[ScaleUpTarget]:
        """Return the single target found under key, or None if none or ambiguous."""
        hras = self.store.find_by_scale_target_key(key, self.namespace)
        _log.debug("Found %d HRAs by key key=%s", len(hras), key)
        targets = self.search_scale_targets(hras, predicate)
        if not targets:
            return None
        if len(targets) > 1:
            _log.info(
                "Found too many scale targets: It must be exactly one to avoid ambiguity. "
                "Either set Namespace for the webhook-based autoscaler to let it only find "
                "HRAs in the namespace, or update Repository or Organization fields in your "
                "RunnerDeployment resources to fix the ambiguity. scaleTargets=%s",
                ",".join(t.name for t in targets),
            )
            return None
        return targets[0]

    def get_scale_up_target(
        self, repo: str, owner: str, owner_type: str, predicate: Predicate
    ) -> Optional[ScaleUpTarget]:
        """Look for repository-wide runners first, then organizational ones."""
        repository_key = f"{owner}/{repo}"
        target = self.get_scale_target(repository_key, predicate)
        if target is not None:
            _log.info("scale up target is repository-wide runners repository=%s", repo)
            return target

        if owner_type == "User":
            _log.debug("no repository runner found organization=%s", owner)
            return None

        target = self.get_scale_target(owner, predicate)
        if target is not None:
            _log.info("scale up target is organizational runners organization=%s", owner)
            return target

        _log.debug(
            "no repository runner or organizational runner found repository=%s organization=%s",
            repository_key,
            owner,
        )
        return None

    def try_scale_up(
        self, target: Optional[ScaleUpTarget], now: Optional[datetime] = None
    ) -> Optional[HorizontalRunnerAutoscaler]:
        """Add a capacity reservation for the target; return the stored autoscaler."""
        if target is None:
            return None
        current = _aware(now) if now is not None else datetime.now(timezone.utc)
        updated = target.hra.deep_copy()
        amount = target.trigger.amount if target.trigger.amount > 0 else 1
        updated.spec.capacity_reservations = get_valid_capacity_reservations(
            updated, current
        ) + [
            CapacityReservation(
                expiration_time=current + _as_timedelta(target.trigger.duration),
                replicas=amount,
            )
        ]
        try:
            self.store.update(updated)
        except LookupError as exc:
            raise WebhookError(
                f"patching horizontalrunnerautoscaler to add capacity reservation: {exc}"
            ) from exc
        return updated