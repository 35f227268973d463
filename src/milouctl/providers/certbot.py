"""ACME provider wrapping the certbot command line tool."""
from __future__ import annotations

import logging
import os
import re
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

# Tried in order; only the first manager present on the host is used.
INSTALL_COMMANDS: tuple[tuple[str, tuple[tuple[str, ...], ...]], ...] = (
    (
        "apt-get",
        (
            ("apt-get", "update", "-qq"),
            ("apt-get", "install", "-y", "certbot"),
        ),
    ),
    ("dnf", (("dnf", "install", "-y", "certbot"),)),
    ("yum", (("yum", "install", "-y", "certbot"),)),
    ("snap", (("snap", "install", "certbot", "--classic"),)),
)


# Port 80 holders that belong to the stack's own reverse proxy.
PROXY_PROCESSES = ("docker-proxy", "nginx")

_SS_USER = re.compile(r'users:\(\("(?P<name>[^"]+)"')
_NETSTAT_PROGRAM = re.compile(r"\s\d+/(?P<name>[^\s:]+)")


class CertbotError(RuntimeError):
    """Raised when certbot cannot be installed or fails to issue a certificate."""


@dataclass(frozen=True, slots=True)
class AcmeMaterial:
    """Paths of an issued certificate in certbot's live directory."""

    fullchain: Path
    privkey: Path


@dataclass(slots=True)
class CertbotProvider:
    """Obtain publicly trusted certificates via certbot's standalone mode."""

    certbot_bin: str = "certbot"
    live_dir: Path = Path("/etc/letsencrypt/live")
    proxy_container: str | None = "milou-nginx"
    docker_bin: str = "docker"

    def available(self) -> bool:
        """Return ``True`` when the certbot binary is on ``PATH``."""
        return self._which(self.certbot_bin) is not None

    def is_privileged(self) -> bool:
        """Return ``True`` when running as root (certbot standalone needs it)."""
        geteuid = getattr(os, "geteuid", None)
        return geteuid is not None and geteuid() == 0

    def install(self) -> str:
        """Install certbot with the first available package manager; return its name."""
        for manager, commands in INSTALL_COMMANDS:
            if self._which(manager) is None:
                continue
            LOGGER.info("Installing certbot with %s", manager)
            for command in commands:
                self._run_command(command, error_prefix=f"{manager} install certbot")
            if not self.available():
                raise CertbotError(f"{manager} reported success but certbot is still missing.")
            return manager
        raise CertbotError("No supported package manager found to install certbot.")

    def ensure_available(self, *, allow_install: bool) -> None:
        """Raise :class:`CertbotError` unless certbot is (or can be made) available."""
        if self.available():
            return
        if not allow_install:
            raise CertbotError(f"{self.certbot_bin} is not installed.")
        self.install()

    def obtain(self, domain: str, email: str) -> AcmeMaterial:
        """Request a certificate for *domain* and return the live-directory paths.

        Standalone mode needs port 80. When the stack's own proxy holds it the
        proxy container is stopped for the request and started again afterwards;
        any other holder is reported as an error.
        """
        if not self.is_privileged():
            raise CertbotError("certbot standalone mode requires root privileges.")
        holder = self.port_80_holder()
        if holder is None:
            LOGGER.info("Port 80 is free; using certbot standalone mode")
            return self._certonly(domain, email)
        if holder in PROXY_PROCESSES and self.proxy_container:
            return self._certonly_with_proxy_stopped(domain, email, holder)
        raise CertbotError(
            f"Port 80 is held by {holder}; stop that service and retry "
            "(check with: ss -tlnp | grep :80)."
        )

    def port_80_holder(self) -> str | None:
        """Return the process listening on TCP port 80, or ``None`` when it is free.

        ``unknown`` is returned when the port is taken but the owning process is
        hidden from the current user.
        """
        if self._which("ss") is not None:
            result = self._run_command(["ss", "-tlnp"], error_prefix="ss", check=False)
            pattern = _SS_USER
        elif self._which("netstat") is not None:
            result = self._run_command(["netstat", "-tlnp"], error_prefix="netstat", check=False)
            pattern = _NETSTAT_PROGRAM
        else:
            LOGGER.debug("Neither ss nor netstat is installed; assuming port 80 is free")
            return None
        for line in (result.stdout or "").splitlines():
            if not any(field.endswith(":80") for field in line.split()):
                continue
            match = pattern.search(line)
            return match.group("name") if match else "unknown"
        return None

    def _certonly_with_proxy_stopped(self, domain: str, email: str, holder: str) -> AcmeMaterial:
        container = self.proxy_container or ""
        if not self._container_running(container):
            raise CertbotError(
                f"Port 80 is held by {holder} outside the {container} container; "
                "stop it and retry (systemctl stop nginx)."
            )
        LOGGER.info("Stopping %s while certbot answers the HTTP challenge", container)
        self._run_command([self.docker_bin, "stop", container], error_prefix="docker stop")
        try:
            return self._certonly(domain, email)
        finally:
            LOGGER.info("Restarting %s", container)
            self._run_command([self.docker_bin, "start", container], error_prefix="docker start")

    def _container_running(self, name: str) -> bool:
        result = self._run_command(
            [self.docker_bin, "ps", "--filter", f"name=^{name}$", "--format", "{{.Names}}"],
            error_prefix="docker ps",
        )
        return name in (result.stdout or "").split()

    def _certonly(self, domain: str, email: str) -> AcmeMaterial:
        self._run_command(
            [
                self.certbot_bin,
                "certonly",
                "--standalone",
                "--non-interactive",
                "--agree-tos",
                "--email",
                email,
                "-d",
                domain,
                "--preferred-challenges",
                "http",
            ],
            error_prefix=f"{self.certbot_bin} certonly",
        )
        material = AcmeMaterial(
            fullchain=self.live_dir / domain / "fullchain.pem",
            privkey=self.live_dir / domain / "privkey.pem",
        )
        if not material.fullchain.exists() or not material.privkey.exists():
            raise CertbotError(
                f"certbot finished but no certificate exists under {material.fullchain.parent}."
            )
        return material

    # ------------------------------------------------------------------
    def _which(self, binary: str) -> str | None:
        return shutil.which(binary)

    def _run_command(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise CertbotError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise CertbotError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = [
    "AcmeMaterial",
    "CertbotError",
    "CertbotProvider",
    "INSTALL_COMMANDS",
    "PROXY_PROCESSES",
]
