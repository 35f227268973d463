"""Tests for service activation."""
from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest

from milouctl.activation import (
    ActivationError,
    ActivationOrchestrator,
    ActivationPlan,
    ActivationState,
    ConflictDecision,
    ServiceDescriptor,
)
from milouctl.config import ActivationConfig
from milouctl.errors import FailureKind
from milouctl.providers.docker import ComposeService, ContainerStatus, EngineError
from milouctl.retry import RetryPolicy

HEALTHY = "Up 2 minutes (healthy)"
STARTING = "Up 5 minutes (health: starting)"


class FakeClock:
    """Clock advanced only by the policy's sleep calls."""

    def __init__(self) -> None:
        self.now = 0.0

    def sleep(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


class FakeEngine:
    """Container engine with declared services and canned container listings."""

    def __init__(
        self,
        services: Sequence[ComposeService],
        *,
        existing: Sequence[ContainerStatus] = (),
        after_up: Sequence[ContainerStatus] = (),
        networks: Sequence[str] = ("milou_milou_network", "milou_proxy"),
        reachable: bool = True,
    ) -> None:
        self.services = list(services)
        self.existing = list(existing)
        self.after_up = list(after_up)
        self.networks = set(networks)
        self.reachable = reachable
        self.started = False
        self.calls: list[tuple[str, tuple[str, ...]]] = []

    def info(self) -> str:
        if not self.reachable:
            raise EngineError("Cannot connect to the Docker daemon", output="connection refused")
        return "24.0.7"

    def ensure_compose(self, minimum: str) -> None:
        self.calls.append(("ensure_compose", (minimum,)))

    def network_exists(self, name: str) -> bool:
        return name in self.networks

    def network_create(self, name: str) -> None:
        self.calls.append(("network_create", (name,)))
        self.networks.add(name)

    def compose_services(self) -> list[ComposeService]:
        return list(self.services)

    def list_containers(
        self, prefix: str, *, include_stopped: bool = False
    ) -> list[ContainerStatus]:
        containers = self.after_up if self.started else self.existing
        return [
            container
            for container in containers
            if container.name.startswith(prefix) and (include_stopped or container.running)
        ]

    def stop(self, names: Sequence[str]) -> None:
        self.calls.append(("stop", tuple(names)))

    def remove(self, names: Sequence[str]) -> None:
        self.calls.append(("remove", tuple(names)))

    def compose_up(self) -> None:
        self.calls.append(("compose_up", ()))
        self.started = True

    def logs(self, name: str, *, tail: int = 50) -> str:
        self.calls.append(("logs", (name, str(tail))))
        return f"last {tail} lines of {name}"

    def called(self, name: str) -> list[tuple[str, ...]]:
        return [args for call, args in self.calls if call == name]


SERVICES = (
    ComposeService("database", None, has_healthcheck=True),
    ComposeService("backend", None, has_healthcheck=True),
    ComposeService("nginx", "milou-nginx", has_healthcheck=False, bindings=("0.0.0.0:443",)),
)


def _all_up(status: str = HEALTHY) -> list[ContainerStatus]:
    return [
        ContainerStatus("milou-database-1", "running", status),
        ContainerStatus("milou-backend-1", "running", status),
        ContainerStatus("milou-nginx", "running", "Up 2 minutes"),
    ]


@pytest.fixture()
def activation_config(tmp_path: Path) -> ActivationConfig:
    compose_file = tmp_path / "docker-compose.yml"
    compose_file.write_text("services: {}\n", encoding="utf-8")
    return ActivationConfig(compose_file=compose_file)


def _orchestrator(
    config: ActivationConfig,
    engine: FakeEngine,
    *,
    decide=None,
    clock: FakeClock | None = None,
) -> ActivationOrchestrator:
    clock = clock or FakeClock()
    policy = RetryPolicy(
        max_attempts=1, interval=config.health_interval, sleep=clock.sleep, clock=clock
    )
    return ActivationOrchestrator(
        config, engine, decide=decide, policy=policy  # type: ignore[arg-type]
    )


def test_activation_without_conflicts_reaches_healthy(
    activation_config: ActivationConfig,
) -> None:
    """A clean host goes straight from start to healthy."""
    engine = FakeEngine(SERVICES, after_up=_all_up())

    outcome = _orchestrator(activation_config, engine).activate()

    assert outcome.succeeded
    assert (outcome.healthy, outcome.total) == (3, 3)
    assert outcome.plan is not None and outcome.plan.decision is None
    assert outcome.history == (
        ActivationState.NOT_STARTED,
        ActivationState.STARTING,
        ActivationState.WAITING_FOR_HEALTH,
        ActivationState.HEALTHY,
    )
    assert engine.called("ensure_compose") == [("2.0.0",)]


def test_force_replace_removes_running_containers(activation_config: ActivationConfig) -> None:
    """Force replace stops and removes the deployment's running containers."""
    engine = FakeEngine(
        SERVICES,
        existing=[ContainerStatus("milou-backend-1", "running", HEALTHY)],
        after_up=_all_up(),
    )

    outcome = _orchestrator(activation_config, engine).activate(force_replace=True)

    assert outcome.succeeded
    assert engine.called("stop") == [("milou-backend-1",)]
    assert engine.called("remove") == [("milou-backend-1",)]
    assert outcome.plan is not None
    assert outcome.plan.decision is ConflictDecision.RECREATE
    assert outcome.plan.conflicts == ("milou-backend-1",)
    assert ActivationState.CONFLICT_RESOLVED in outcome.history


def test_conflicts_are_stopped_by_default(activation_config: ActivationConfig) -> None:
    """Non-interactive runs stop conflicting containers without removing them."""
    engine = FakeEngine(
        SERVICES,
        existing=[
            ContainerStatus("milou-nginx", "running", "Up 3 days"),
            ContainerStatus("milou-old-1", "exited", "Exited (0) 2 days ago"),
        ],
        after_up=_all_up(),
    )

    outcome = _orchestrator(activation_config, engine).activate()

    assert outcome.succeeded
    assert engine.called("stop") == [("milou-nginx",)]
    assert engine.called("remove") == []


def test_conflicts_abort_when_stopping_is_disabled(tmp_path: Path) -> None:
    """Without force, prompt or stop permission, activation aborts."""
    compose_file = tmp_path / "docker-compose.yml"
    compose_file.write_text("services: {}\n", encoding="utf-8")
    config = ActivationConfig(compose_file=compose_file, stop_conflicts=False)
    engine = FakeEngine(SERVICES, existing=[ContainerStatus("milou-nginx", "running", "Up")])

    outcome = _orchestrator(config, engine).activate()

    assert outcome.state is ActivationState.FAILED
    assert outcome.failure is not None
    assert outcome.failure.classification == "conflict"
    assert engine.called("compose_up") == []
    assert ActivationState.CONFLICT_DETECTED in outcome.history


def test_interactive_runs_use_the_decision_callback(
    activation_config: ActivationConfig,
) -> None:
    """Interactive mode hands the conflicting containers to the callback."""
    seen: list[list[str]] = []

    def decide(conflicts: Sequence[ContainerStatus]) -> ConflictDecision:
        seen.append([container.name for container in conflicts])
        return ConflictDecision.RECREATE

    engine = FakeEngine(
        SERVICES,
        existing=[ContainerStatus("milou-database-1", "running", HEALTHY)],
        after_up=_all_up(),
    )

    outcome = _orchestrator(activation_config, engine, decide=decide).activate(interactive=True)

    assert outcome.succeeded
    assert seen == [["milou-database-1"]]
    assert engine.called("remove") == [("milou-database-1",)]


def test_interactive_abort_leaves_containers_alone(activation_config: ActivationConfig) -> None:
    """Choosing abort fails activation without touching anything."""
    engine = FakeEngine(SERVICES, existing=[ContainerStatus("milou-nginx", "running", "Up")])
    orchestrator = _orchestrator(
        activation_config, engine, decide=lambda conflicts: ConflictDecision.ABORT
    )

    outcome = orchestrator.activate(interactive=True)

    assert outcome.state is ActivationState.FAILED
    assert engine.called("stop") == []


def test_readiness_timeout_reports_fraction_and_diagnostics(
    activation_config: ActivationConfig,
) -> None:
    """A service stuck starting times out with logs collected for it."""
    statuses = _all_up()
    statuses[1] = ContainerStatus("milou-backend-1", "running", STARTING)
    engine = FakeEngine(SERVICES, after_up=statuses)
    clock = FakeClock()

    outcome = _orchestrator(activation_config, engine, clock=clock).activate()

    assert outcome.timed_out
    assert (outcome.healthy, outcome.total) == (2, 3)
    assert outcome.fraction == pytest.approx(2 / 3)
    assert outcome.elapsed == pytest.approx(300.0)
    assert clock.now == pytest.approx(300.0)
    assert outcome.diagnostics == {"backend": "last 50 lines of milou-backend-1"}
    assert outcome.failure is not None
    assert outcome.failure.classification == "timeout"
    assert outcome.failure.kind is FailureKind.TRANSIENT
    assert "2/3 services healthy" in outcome.failure.message


def test_missing_containers_count_as_unhealthy(activation_config: ActivationConfig) -> None:
    """A planned service with no container never becomes healthy."""
    engine = FakeEngine(SERVICES, after_up=_all_up()[:2])

    outcome = _orchestrator(activation_config, engine).activate()

    assert outcome.timed_out
    nginx = [service for service in outcome.services if service.name == "nginx"][0]
    assert nginx.state == "missing"


class FlakyListingEngine(FakeEngine):
    """Raises for the first *failures* container listings made after ``compose_up``."""

    def __init__(
        self,
        services: Sequence[ComposeService],
        *,
        failures: int,
        after_up: Sequence[ContainerStatus],
    ) -> None:
        super().__init__(services, after_up=after_up)
        self.failures = failures

    def list_containers(
        self, prefix: str, *, include_stopped: bool = False
    ) -> list[ContainerStatus]:
        if self.started and self.failures:
            self.failures -= 1
            raise EngineError("docker ps failed (exit 1)", output="Cannot connect to the daemon")
        return super().list_containers(prefix, include_stopped=include_stopped)


def test_engine_hiccup_while_polling_is_tolerated(activation_config: ActivationConfig) -> None:
    """A failed status read counts as unknown and the next tick recovers."""
    engine = FlakyListingEngine(SERVICES, failures=1, after_up=_all_up())
    clock = FakeClock()

    outcome = _orchestrator(activation_config, engine, clock=clock).activate()

    assert outcome.succeeded
    assert engine.failures == 0
    assert clock.now == pytest.approx(activation_config.health_interval)


def test_engine_down_for_whole_poll_times_out_with_unknown_states(
    activation_config: ActivationConfig,
) -> None:
    """Status that never becomes readable ends in a timeout, not a crash."""
    engine = FlakyListingEngine(SERVICES, failures=10_000, after_up=_all_up())

    outcome = _orchestrator(activation_config, engine).activate()

    assert outcome.timed_out
    assert {service.state for service in outcome.services} == {"unknown"}
    assert outcome.healthy == 0


def test_engine_error_listing_conflicts_fails_activation(
    activation_config: ActivationConfig,
) -> None:
    """A listing failure before start aborts with an engine classification."""

    class BrokenListing(FakeEngine):
        def list_containers(
            self, prefix: str, *, include_stopped: bool = False
        ) -> list[ContainerStatus]:
            raise EngineError("docker not found: [Errno 2] No such file or directory")

    engine = BrokenListing(SERVICES, after_up=_all_up())

    outcome = _orchestrator(activation_config, engine).activate()

    assert outcome.state is ActivationState.FAILED
    assert outcome.failure is not None
    assert outcome.failure.classification == "engine"
    assert engine.called("compose_up") == []


def test_unreadable_logs_do_not_hide_the_timeout(activation_config: ActivationConfig) -> None:
    """Diagnostics record a log read failure instead of raising."""

    class NoLogs(FakeEngine):
        def logs(self, name: str, *, tail: int = 50) -> str:
            raise EngineError("docker not found")

    statuses = _all_up()
    statuses[0] = ContainerStatus("milou-database-1", "running", STARTING)
    engine = NoLogs(SERVICES, after_up=statuses)

    outcome = _orchestrator(activation_config, engine).activate()

    assert outcome.timed_out
    assert outcome.diagnostics == {"database": "logs unavailable: docker not found"}


def test_missing_certificate_fails_preflight(
    activation_config: ActivationConfig, tmp_path: Path
) -> None:
    """The TLS pair must exist before anything is started."""
    engine = FakeEngine(SERVICES, after_up=_all_up())
    key_path = tmp_path / "milou.key"
    key_path.write_text("key", encoding="utf-8")

    outcome = _orchestrator(activation_config, engine).activate(
        cert_path=tmp_path / "milou.crt", key_path=key_path
    )

    assert outcome.state is ActivationState.FAILED
    assert outcome.failure is not None
    assert outcome.failure.classification == "certificate"
    assert engine.called("compose_up") == []


def test_unreachable_engine_fails_preflight(activation_config: ActivationConfig) -> None:
    """An unreachable engine is an environment failure."""
    engine = FakeEngine(SERVICES, reachable=False)

    outcome = _orchestrator(activation_config, engine).activate()

    assert outcome.failure is not None
    assert outcome.failure.classification == "engine"
    assert outcome.failure.raw_output == "connection refused"


def test_preflight_creates_missing_networks(activation_config: ActivationConfig) -> None:
    """Project-scoped networks are created when absent."""
    engine = FakeEngine(SERVICES, after_up=_all_up(), networks=("milou_milou_network",))

    _orchestrator(activation_config, engine).preflight()

    assert engine.called("network_create") == [("milou_proxy",)]


def test_overlapping_bindings_fail_activation(activation_config: ActivationConfig) -> None:
    """Two services claiming the same port are rejected before starting."""
    services = (
        ComposeService("nginx", None, has_healthcheck=False, bindings=("0.0.0.0:443",)),
        ComposeService("proxy", None, has_healthcheck=False, bindings=("127.0.0.1:443",)),
    )
    engine = FakeEngine(services)

    outcome = _orchestrator(activation_config, engine).activate()

    assert outcome.state is ActivationState.FAILED
    assert outcome.failure is not None
    assert outcome.failure.kind is FailureKind.VALIDATION
    assert "443" in outcome.failure.message


def test_plan_accepts_distinct_bindings() -> None:
    """Different ports or different specific hosts do not overlap."""
    plan = ActivationPlan(
        services=(
            ServiceDescriptor("a", "milou-a-1", bindings=("127.0.0.1:80",)),
            ServiceDescriptor("b", "milou-b-1", bindings=("10.0.0.2:80", "0.0.0.0:8080")),
        )
    )

    assert plan.overlapping_bindings() == {}


def test_plan_keeps_tcp_and_udp_on_one_port_apart() -> None:
    """The same port over TCP and UDP is two bindings, not a conflict."""
    plan = ActivationPlan(
        services=(
            ServiceDescriptor("a", "milou-a-1", bindings=("0.0.0.0:53/udp",)),
            ServiceDescriptor("b", "milou-b-1", bindings=("0.0.0.0:53/tcp",)),
        )
    )

    assert plan.overlapping_bindings() == {}


def test_plan_rejects_wildcard_overlap() -> None:
    with pytest.raises(ActivationError) as excinfo:
        ActivationPlan(
            services=(
                ServiceDescriptor("a", "milou-a-1", bindings=("[::]:443",)),
                ServiceDescriptor("b", "milou-b-1", bindings=("10.0.0.2:443",)),
            )
        )

    assert excinfo.value.classification == "configuration"


def test_descriptor_health_rules() -> None:
    """Services without a healthcheck are healthy once running."""
    plain = ServiceDescriptor("nginx", "milou-nginx")
    checked = ServiceDescriptor("backend", "milou-backend-1", has_healthcheck=True)

    assert plain.is_healthy(ContainerStatus("milou-nginx", "running", "Up 1 minute"))
    assert not plain.is_healthy(ContainerStatus("milou-nginx", "exited", "Exited (1)"))
    assert not checked.is_healthy(ContainerStatus("milou-backend-1", "running", "Up 1 minute"))
    assert not checked.is_healthy(ContainerStatus("milou-backend-1", "running", STARTING))
    assert checked.is_healthy(ContainerStatus("milou-backend-1", "running", HEALTHY))
    assert not checked.is_healthy(None)


def test_descriptor_from_compose_defaults_container_name() -> None:
    descriptor = ServiceDescriptor.from_compose(ComposeService("engine", None, True), "milou")

    assert descriptor.container_name == "milou-engine-1"
