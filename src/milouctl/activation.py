"""Service activation: pre-flight, conflict handling, bulk start, readiness polling.

The orchestrator moves through::

    NotStarted -> ConflictDetected -> ConflictResolved -> Starting
               -> WaitingForHealth -> Healthy | Failed | TimedOut

``ConflictDetected``/``ConflictResolved`` are skipped when no containers of
this deployment are running. A readiness timeout produces a ``TimedOut``
outcome carrying the healthy/total fraction; deciding whether that is
acceptable is left to the caller.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .config import ActivationConfig
from .errors import FailureKind, StageFailure, classify_output
from .providers.docker import ComposeService, ContainerStatus, DockerEngine, EngineError
from .retry import RetryPolicy

LOGGER = logging.getLogger(__name__)

STAGE = "activation"
DIAGNOSTIC_LOG_LINES = 50


class ActivationState(str, Enum):
    """Lifecycle states of a single activation run."""

    NOT_STARTED = "not-started"
    CONFLICT_DETECTED = "conflict-detected"
    CONFLICT_RESOLVED = "conflict-resolved"
    STARTING = "starting"
    WAITING_FOR_HEALTH = "waiting-for-health"
    HEALTHY = "healthy"
    FAILED = "failed"
    TIMED_OUT = "timed-out"


class ConflictDecision(str, Enum):
    """How to treat containers of this deployment that are already running."""

    STOP = "stop"
    RECREATE = "recreate"
    ABORT = "abort"


class ActivationError(RuntimeError):
    """Raised when activation cannot proceed."""

    def __init__(
        self,
        message: str,
        *,
        classification: str,
        kind: FailureKind = FailureKind.PERMANENT,
        raw_output: str | None = None,
    ) -> None:
        """Record the classification used to pick remediation steps."""
        super().__init__(message)
        self.classification = classification
        self.kind = kind
        self.raw_output = raw_output

    def to_failure(self) -> StageFailure:
        """Return the terminal failure record for this error."""
        return StageFailure.build(
            STAGE, self.classification, str(self), kind=self.kind, raw_output=self.raw_output
        )


@dataclass(frozen=True, slots=True)
class ServiceDescriptor:
    """A service the deployment expects to be running."""

    name: str
    container_name: str
    desired_state: str = "running"
    has_healthcheck: bool = False
    bindings: tuple[str, ...] = ()

    @classmethod
    def from_compose(cls, service: ComposeService, project: str) -> ServiceDescriptor:
        """Build a descriptor from a compose service declaration."""
        return cls(
            name=service.name,
            container_name=service.container_name or f"{project}-{service.name}-1",
            has_healthcheck=service.has_healthcheck,
            bindings=service.bindings,
        )

    def is_healthy(self, status: ContainerStatus | None) -> bool:
        """Return ``True`` when *status* satisfies this service.

        Without a healthcheck a running container counts as healthy.
        """
        if status is None or not status.running:
            return False
        if status.health is not None:
            return status.health == "healthy"
        return not self.has_healthcheck


@dataclass(frozen=True, slots=True)
class ActivationPlan:
    """Services to converge plus the conflict decision taken for this run."""

    services: tuple[ServiceDescriptor, ...]
    conflicts: tuple[str, ...] = ()
    decision: ConflictDecision | None = None

    def __post_init__(self) -> None:
        """Reject plans where two services would bind the same address."""
        overlaps = self.overlapping_bindings()
        if overlaps:
            described = "; ".join(
                f"{binding} ({', '.join(names)})" for binding, names in overlaps.items()
            )
            raise ActivationError(
                f"Services declare overlapping bindings: {described}",
                classification="configuration",
                kind=FailureKind.VALIDATION,
            )

    def overlapping_bindings(self) -> dict[str, list[str]]:
        """Return bindings claimed by more than one service."""
        overlaps: dict[str, list[str]] = {}
        claimed: list[tuple[str, str]] = []
        for service in self.services:
            for binding in service.bindings:
                for other_binding, owner in claimed:
                    if owner != service.name and _bindings_overlap(binding, other_binding):
                        names = overlaps.setdefault(binding, [owner])
                        if service.name not in names:
                            names.append(service.name)
                claimed.append((binding, service.name))
        return overlaps

    def with_decision(
        self, conflicts: Sequence[str], decision: ConflictDecision | None
    ) -> ActivationPlan:
        """Return a copy recording the conflict resolution."""
        return ActivationPlan(services=self.services, conflicts=tuple(conflicts), decision=decision)


@dataclass(frozen=True, slots=True)
class ServiceHealth:
    """Health of one service at a poll tick."""

    name: str
    container: str
    state: str
    health: str | None
    healthy: bool

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "container": self.container,
            "state": self.state,
            "health": self.health,
            "healthy": self.healthy,
        }


@dataclass(frozen=True, slots=True)
class ActivationOutcome:
    """Final result of :meth:`ActivationOrchestrator.activate`."""

    state: ActivationState
    services: tuple[ServiceHealth, ...] = ()
    plan: ActivationPlan | None = None
    elapsed: float = 0.0
    diagnostics: dict[str, str] = field(default_factory=dict)
    failure: StageFailure | None = None
    history: tuple[ActivationState, ...] = ()

    @property
    def healthy(self) -> int:
        """Return the number of healthy services."""
        return sum(1 for service in self.services if service.healthy)

    @property
    def total(self) -> int:
        """Return the number of services polled."""
        return len(self.services)

    @property
    def fraction(self) -> float:
        """Return healthy/total (0.0 when nothing was polled)."""
        return self.healthy / self.total if self.total else 0.0

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when every service became healthy in time."""
        return self.state is ActivationState.HEALTHY

    @property
    def timed_out(self) -> bool:
        """Return ``True`` when readiness polling ran out of time."""
        return self.state is ActivationState.TIMED_OUT

    @property
    def terminal_failure(self) -> StageFailure:
        """Return the recorded failure, or a generic one naming the final state."""
        if self.failure is not None:
            return self.failure
        return StageFailure.build(
            "activation", "activation", f"Activation ended in state {self.state.value}."
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "healthy": self.healthy,
            "total": self.total,
            "fraction": round(self.fraction, 3),
            "elapsed": round(self.elapsed, 1),
            "services": [service.to_dict() for service in self.services],
            "conflicts": list(self.plan.conflicts) if self.plan else [],
            "decision": self.plan.decision.value if self.plan and self.plan.decision else None,
            "diagnostics": dict(self.diagnostics),
            "failure": self.failure.to_dict() if self.failure else None,
            "history": [state.value for state in self.history],
        }


ConflictPrompt = Callable[[Sequence[ContainerStatus]], ConflictDecision]


class ActivationOrchestrator:
    """Bring the declared services to a healthy running state."""

    def __init__(
        self,
        config: ActivationConfig,
        engine: DockerEngine,
        *,
        decide: ConflictPrompt | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        """Wire the engine, the interactive conflict prompt and the poll policy."""
        self._config = config
        self._engine = engine
        self._decide = decide
        self._policy = policy or RetryPolicy(max_attempts=1, interval=config.health_interval)
        self._history: list[ActivationState] = []

    @property
    def state(self) -> ActivationState:
        """Return the current state."""
        return self._history[-1] if self._history else ActivationState.NOT_STARTED

    def network_names(self) -> list[str]:
        """Return the project-scoped network names required by the deployment."""
        return [f"{self._config.project}_{network}" for network in self._config.networks]

    def preflight(self, *, cert_path: Path | None = None, key_path: Path | None = None) -> None:
        """Check hard preconditions, creating missing networks."""
        try:
            version = self._engine.info()
        except EngineError as exc:
            raise ActivationError(
                f"Container engine unreachable: {exc}",
                classification="engine",
                kind=FailureKind.TRANSIENT,
                raw_output=exc.output,
            ) from exc
        LOGGER.debug("Container engine %s reachable", version)
        try:
            self._engine.ensure_compose(self._config.min_compose_version)
        except EngineError as exc:
            raise ActivationError(str(exc), classification="engine", raw_output=exc.output) from exc

        for path, label in ((cert_path, "certificate"), (key_path, "private key")):
            if path is not None and not path.is_file():
                raise ActivationError(
                    f"TLS {label} missing at {path}.", classification="certificate"
                )
        if not self._config.compose_file.is_file():
            raise ActivationError(
                f"Compose file {self._config.compose_file} not found.",
                classification="configuration",
                kind=FailureKind.VALIDATION,
            )

        for network in self.network_names():
            if self._engine.network_exists(network):
                continue
            LOGGER.info("Creating network %s", network)
            try:
                self._engine.network_create(network)
            except EngineError as exc:
                raise ActivationError(
                    f"Cannot create network {network}: {exc}",
                    classification="engine",
                    raw_output=exc.output,
                ) from exc

    def build_plan(self) -> ActivationPlan:
        """Return the plan derived from the compose file."""
        try:
            declared = self._engine.compose_services()
        except EngineError as exc:
            raise ActivationError(
                f"Cannot read compose services: {exc}",
                classification="configuration",
                raw_output=exc.output,
            ) from exc
        services = tuple(
            ServiceDescriptor.from_compose(service, self._config.project) for service in declared
        )
        if not services:
            raise ActivationError(
                "Compose file declares no services.",
                classification="configuration",
                kind=FailureKind.VALIDATION,
            )
        return ActivationPlan(services=services)

    def detect_conflicts(self) -> list[ContainerStatus]:
        """Return running containers that belong to this deployment."""
        try:
            containers = self._engine.list_containers(self._config.container_prefix)
        except EngineError as exc:
            raise ActivationError(
                f"Cannot list existing containers: {exc}",
                classification="engine",
                kind=FailureKind.TRANSIENT,
                raw_output=exc.output,
            ) from exc
        return [container for container in containers if container.running]

    def resolve_conflicts(
        self,
        conflicts: Sequence[ContainerStatus],
        *,
        force_replace: bool,
        interactive: bool,
    ) -> ConflictDecision | None:
        """Stop or remove conflicting containers according to the flags."""
        if not conflicts:
            return None
        self._enter(ActivationState.CONFLICT_DETECTED)
        names = [container.name for container in conflicts]
        LOGGER.warning("Found running containers: %s", ", ".join(names))

        if force_replace:
            decision = ConflictDecision.RECREATE
        elif interactive and self._decide is not None:
            decision = self._decide(conflicts)
        elif self._config.stop_conflicts:
            decision = ConflictDecision.STOP
        else:
            decision = ConflictDecision.ABORT

        if decision is ConflictDecision.ABORT:
            raise ActivationError(
                f"Containers already running: {', '.join(names)}.",
                classification="conflict",
            )
        try:
            self._engine.stop(names)
            if decision is ConflictDecision.RECREATE:
                self._engine.remove(names)
        except EngineError as exc:
            raise ActivationError(
                f"Cannot {decision.value} existing containers: {exc}",
                classification=classify_output(exc.output).value,
                raw_output=exc.output,
            ) from exc
        LOGGER.info("Resolved %s conflicting container(s) with %s", len(names), decision.value)
        self._enter(ActivationState.CONFLICT_RESOLVED)
        return decision

    def check_health(self, plan: ActivationPlan) -> tuple[ServiceHealth, ...]:
        """Return the health of every planned service right now.

        An engine error yields an ``unknown`` snapshot so polling can continue.
        """
        try:
            listed = self._engine.list_containers(
                self._config.container_prefix, include_stopped=True
            )
        except EngineError as exc:
            LOGGER.warning("Cannot read container status: %s", exc)
            return tuple(
                ServiceHealth(
                    name=service.name,
                    container=service.container_name,
                    state="unknown",
                    health=None,
                    healthy=False,
                )
                for service in plan.services
            )
        containers = {container.name: container for container in listed}
        snapshot: list[ServiceHealth] = []
        for service in plan.services:
            status = containers.get(service.container_name)
            snapshot.append(
                ServiceHealth(
                    name=service.name,
                    container=service.container_name,
                    state=status.state if status else "missing",
                    health=status.health if status else None,
                    healthy=service.is_healthy(status),
                )
            )
        return tuple(snapshot)

    def activate(
        self,
        *,
        cert_path: Path | None = None,
        key_path: Path | None = None,
        force_replace: bool | None = None,
        interactive: bool | None = None,
    ) -> ActivationOutcome:
        """Run the whole activation and return its outcome."""
        self._history = [ActivationState.NOT_STARTED]
        force_replace = self._config.force_replace if force_replace is None else force_replace
        interactive = self._config.interactive if interactive is None else interactive

        plan: ActivationPlan | None = None
        try:
            self.preflight(cert_path=cert_path, key_path=key_path)
            plan = self.build_plan()
            conflicts = self.detect_conflicts()
            decision = self.resolve_conflicts(
                conflicts, force_replace=force_replace, interactive=interactive
            )
            plan = plan.with_decision([c.name for c in conflicts], decision)
        except ActivationError as exc:
            LOGGER.error("Activation aborted: %s", exc)
            return self._finish(ActivationState.FAILED, plan=plan, failure=exc.to_failure())

        self._enter(ActivationState.STARTING)
        try:
            self._engine.compose_up()
        except EngineError as exc:
            LOGGER.error("Bulk start failed: %s", exc)
            failure = StageFailure.build(
                STAGE, classify_output(exc.output), str(exc), raw_output=exc.output
            )
            return self._finish(ActivationState.FAILED, plan=plan, failure=failure)

        self._enter(ActivationState.WAITING_FOR_HEALTH)
        polled = self._policy.poll(
            lambda: self._observe(plan),
            done=lambda snapshot: bool(snapshot) and all(item.healthy for item in snapshot),
            timeout=self._config.health_timeout,
        )
        if not polled.timed_out:
            LOGGER.info("All %s services healthy after %.0fs", len(polled.value), polled.elapsed)
            return self._finish(
                ActivationState.HEALTHY, plan=plan, services=polled.value, elapsed=polled.elapsed
            )

        unhealthy = [item for item in polled.value if not item.healthy]
        diagnostics = {item.name: self._tail_logs(item.container) for item in unhealthy}
        healthy = len(polled.value) - len(unhealthy)
        message = (
            f"{healthy}/{len(polled.value)} services healthy after {polled.elapsed:.0f}s; "
            f"waiting for {', '.join(item.name for item in unhealthy)}."
        )
        LOGGER.warning(message)
        failure = StageFailure.build(STAGE, "timeout", message, kind=FailureKind.TRANSIENT)
        return self._finish(
            ActivationState.TIMED_OUT,
            plan=plan,
            services=polled.value,
            elapsed=polled.elapsed,
            diagnostics=diagnostics,
            failure=failure,
        )

    # ------------------------------------------------------------------
    def _observe(self, plan: ActivationPlan) -> tuple[ServiceHealth, ...]:
        snapshot = self.check_health(plan)
        healthy = sum(1 for item in snapshot if item.healthy)
        LOGGER.info("Services healthy: %s/%s", healthy, len(snapshot))
        return snapshot

    def _tail_logs(self, container: str) -> str:
        try:
            return self._engine.logs(container, tail=DIAGNOSTIC_LOG_LINES)
        except EngineError as exc:
            LOGGER.warning("Cannot read logs of %s: %s", container, exc)
            return f"logs unavailable: {exc}"

    def _enter(self, state: ActivationState) -> None:
        LOGGER.debug("Activation state -> %s", state.value)
        self._history.append(state)

    def _finish(
        self,
        state: ActivationState,
        *,
        plan: ActivationPlan | None,
        services: Sequence[ServiceHealth] = (),
        elapsed: float = 0.0,
        diagnostics: dict[str, str] | None = None,
        failure: StageFailure | None = None,
    ) -> ActivationOutcome:
        self._enter(state)
        return ActivationOutcome(
            state=state,
            services=tuple(services),
            plan=plan,
            elapsed=elapsed,
            diagnostics=diagnostics or {},
            failure=failure,
            history=tuple(self._history),
        )


def _bindings_overlap(first: str, second: str) -> bool:
    first_host, first_port = _split_binding(first)
    second_host, second_port = _split_binding(second)
    if first_port != second_port:
        return False
    wildcard = {"0.0.0.0", "::", ""}  # noqa: S104
    return first_host == second_host or first_host in wildcard or second_host in wildcard


def _split_binding(binding: str) -> tuple[str, str]:
    host, _, port = binding.rpartition(":")
    if "/" not in port:
        port = f"{port}/tcp"
    return host.strip("[]"), port


__all__ = [
    "ActivationError",
    "ActivationOrchestrator",
    "ActivationOutcome",
    "ActivationPlan",
    "ActivationState",
    "ConflictDecision",
    "ConflictPrompt",
    "ServiceDescriptor",
    "ServiceHealth",
]
