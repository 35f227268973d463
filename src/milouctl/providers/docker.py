"""Container engine provider wrapping the docker CLI and compose plugin."""
from __future__ import annotations

import json
import logging
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

LOGGER = logging.getLogger(__name__)


class EngineError(RuntimeError):
    """Raised when the container engine cannot be reached or a command fails."""

    def __init__(self, message: str, *, output: str | None = None) -> None:
        """Store *message* and the captured command *output*."""
        super().__init__(message)
        self.output = output


@dataclass(frozen=True, slots=True)
class ContainerStatus:
    """A container as reported by ``docker ps``."""

    name: str
    state: str
    status: str
    ports: str = ""

    @property
    def running(self) -> bool:
        """Return ``True`` when the container is running."""
        return self.state.lower() == "running"

    @property
    def health(self) -> str | None:
        """Return ``healthy``/``unhealthy``/``starting`` or ``None`` without a healthcheck."""
        text = self.status.lower()
        if "(healthy)" in text:
            return "healthy"
        if "(unhealthy)" in text:
            return "unhealthy"
        if "(health: starting)" in text:
            return "starting"
        return None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "name": self.name,
            "state": self.state,
            "status": self.status,
            "health": self.health,
            "ports": self.ports,
        }


@dataclass(frozen=True, slots=True)
class ComposeService:
    """A service declared in the compose file."""

    name: str
    container_name: str | None
    has_healthcheck: bool
    bindings: tuple[str, ...] = ()


@dataclass(slots=True)
class DockerEngine:
    """Thin wrapper over ``docker`` used by the acquisition and activation stages."""

    docker_bin: str = "docker"
    compose_file: Path | None = None
    env_file: Path | None = None
    project: str | None = None

    # -- engine ---------------------------------------------------------
    def info(self) -> str:
        """Return the engine server version, raising when unreachable."""
        result = self._docker(["info", "--format", "{{.ServerVersion}}"], check=True)
        return (result.stdout or "").strip()

    def compose_version(self) -> Version:
        """Return the compose plugin version."""
        result = self._docker(["compose", "version", "--short"], check=True)
        raw = (result.stdout or "").strip().lstrip("v")
        try:
            return Version(raw)
        except InvalidVersion as exc:
            raise EngineError(f"Unrecognised compose version {raw!r}.") from exc

    def ensure_compose(self, minimum: str) -> Version:
        """Raise :class:`EngineError` when compose is older than *minimum*."""
        version = self.compose_version()
        if version < Version(minimum):
            raise EngineError(f"docker compose {version} is older than the required {minimum}.")
        return version

    # -- registry -------------------------------------------------------
    def login(
        self, registry: str, username: str, password: str
    ) -> subprocess.CompletedProcess[str]:
        """Log in to *registry*, passing the password on stdin."""
        return self._docker(
            ["login", registry, "-u", username, "--password-stdin"],
            check=False,
            input_text=password,
        )

    def manifest_inspect(self, reference: str) -> subprocess.CompletedProcess[str]:
        """Probe *reference* in the remote registry without downloading layers."""
        return self._docker(["manifest", "inspect", reference], check=False)

    # -- images ---------------------------------------------------------
    def image_present(self, reference: str) -> bool:
        """Return ``True`` when *reference* exists in the local image store."""
        return self._docker(["image", "inspect", reference], check=False).returncode == 0

    def pull(self, reference: str) -> subprocess.CompletedProcess[str]:
        """Pull *reference*, capturing output for classification."""
        return self._docker(["pull", reference], check=False)

    # -- networks -------------------------------------------------------
    def network_exists(self, name: str) -> bool:
        """Return ``True`` when the network *name* exists."""
        return self._docker(["network", "inspect", name], check=False).returncode == 0

    def network_create(self, name: str) -> None:
        """Create the bridge network *name*."""
        self._docker(["network", "create", name], check=True)

    # -- containers -----------------------------------------------------
    def list_containers(
        self, prefix: str, *, include_stopped: bool = False
    ) -> list[ContainerStatus]:
        """Return containers whose name starts with *prefix*."""
        args = ["ps", "--filter", f"name={prefix}", "--format", "{{json .}}"]
        if include_stopped:
            args.insert(1, "-a")
        result = self._docker(args, check=True)
        containers: list[ContainerStatus] = []
        for line in (result.stdout or "").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                LOGGER.debug("Skipping unparsable docker ps line: %s", line)
                continue
            name = str(payload.get("Names", ""))
            # The name filter is a substring match; keep real prefix matches only.
            if not name.startswith(prefix):
                continue
            containers.append(
                ContainerStatus(
                    name=name,
                    state=str(payload.get("State", "")),
                    status=str(payload.get("Status", "")),
                    ports=str(payload.get("Ports", "")),
                )
            )
        return containers

    def stop(self, names: Sequence[str]) -> None:
        """Stop the named containers."""
        if names:
            self._docker(["stop", *names], check=True)

    def remove(self, names: Sequence[str]) -> None:
        """Force-remove the named containers."""
        if names:
            self._docker(["rm", "-f", *names], check=True)

    def logs(self, name: str, *, tail: int = 50) -> str:
        """Return the last *tail* log lines of container *name*."""
        return combined_output(self._docker(["logs", "--tail", str(tail), name], check=False))

    # -- compose --------------------------------------------------------
    def compose_services(self) -> list[ComposeService]:
        """Return the services declared by the compose file."""
        result = self._compose(["config", "--format", "json"], check=True)
        try:
            document = json.loads(result.stdout or "{}")
        except json.JSONDecodeError as exc:
            raise EngineError("docker compose config returned invalid JSON.") from exc
        services = document.get("services") or {}
        declared: list[ComposeService] = []
        for name, spec in services.items():
            spec = spec or {}
            healthcheck = spec.get("healthcheck") or {}
            has_healthcheck = bool(healthcheck) and not healthcheck.get("disable", False)
            declared.append(
                ComposeService(
                    name=str(name),
                    container_name=spec.get("container_name"),
                    has_healthcheck=has_healthcheck,
                    bindings=_published_bindings(spec.get("ports") or []),
                )
            )
        return declared

    def compose_up(self) -> subprocess.CompletedProcess[str]:
        """Converge every declared service in one call, removing orphans."""
        return self._compose(["up", "-d", "--remove-orphans"], check=True)

    # ------------------------------------------------------------------
    def _compose(self, args: Sequence[str], *, check: bool) -> subprocess.CompletedProcess[str]:
        command: list[str] = ["compose"]
        if self.compose_file is not None:
            command.extend(["-f", str(self.compose_file)])
        if self.env_file is not None and self.env_file.exists():
            command.extend(["--env-file", str(self.env_file)])
        if self.project:
            command.extend(["-p", self.project])
        command.extend(args)
        return self._docker(command, check=check)

    def _docker(
        self,
        args: Sequence[str],
        *,
        check: bool,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, *args]
        verb = " ".join(args[:2]) if args and args[0] == "compose" else (args[0] if args else "")
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.docker_bin} {verb}".rstrip(),
            input_text=input_text,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        input_text: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                input=input_text,
            )
        except FileNotFoundError as exc:
            raise EngineError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = (result.stdout or "").strip()
            stderr = (result.stderr or "").strip()
            message = stderr or stdout or "no output"
            raise EngineError(
                f"{error_prefix} failed (exit {result.returncode}): {message}",
                output="\n".join(part for part in (stdout, stderr) if part),
            )
        return result


def combined_output(result: subprocess.CompletedProcess[str]) -> str:
    """Return stdout and stderr of *result* joined into one string."""
    return "\n".join(part for part in (result.stdout, result.stderr) if part).strip()


def _published_bindings(ports: Sequence[object]) -> tuple[str, ...]:
    bindings: list[str] = []
    for entry in ports:
        if isinstance(entry, Mapping):
            published = entry.get("published")
            if not published:
                continue
            host_ip = entry.get("host_ip") or "0.0.0.0"  # noqa: S104 - compose default
            protocol = entry.get("protocol") or "tcp"
            bindings.append(f"{host_ip}:{published}/{protocol}")
        elif isinstance(entry, str) and ":" in entry:
            mapping, _, protocol = entry.partition("/")
            host_part = mapping.rsplit(":", 1)[0]
            if ":" not in host_part:
                host_part = f"0.0.0.0:{host_part}"  # noqa: S104
            bindings.append(f"{host_part}/{protocol or 'tcp'}")
    return tuple(bindings)


__all__ = [
    "ComposeService",
    "ContainerStatus",
    "DockerEngine",
    "EngineError",
    "combined_output",
]
