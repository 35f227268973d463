"""Configuration loader for milouctl.

Values are resolved from several layers, later layers winning:

1. Built-in defaults.
2. ``/etc/milouctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``MILOUCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MILOUCTL_ACTIVATION__HEALTH_TIMEOUT=600
    export MILOUCTL_IMAGES__USE_LATEST=false

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The registry credential is deliberately absent: it is passed
to the pipeline explicitly and never persisted.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "MILOUCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR, f"{ENV_PREFIX}TOKEN"}

SSL_STRATEGIES = ("auto", "existing", "self-signed", "public-ca")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SSLConfig:
    """Certificate bundle location and generation parameters."""

    path: Path = Path("./ssl")
    name: str = "milou"
    strategy: str = "auto"
    legacy_paths: tuple[Path, ...] = ()
    key_size: int = 2048
    validity_days: int = 365
    localhost_validity_days: int = 365
    minimal_validity_days: int = 30
    acme_live_dir: Path = Path("/etc/letsencrypt/live")
    certbot_bin: str = "certbot"
    install_acme_tool: bool = True
    proxy_container: str = "milou-nginx"
    docker_bin: str = "docker"

    @property
    def cert_file(self) -> Path:
        """Return the fixed certificate path."""
        return self.path / f"{self.name}.crt"

    @property
    def key_file(self) -> Path:
        """Return the fixed private key path."""
        return self.path / f"{self.name}.key"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "path": str(self.path),
            "name": self.name,
            "strategy": self.strategy,
            "legacy_paths": [str(path) for path in self.legacy_paths],
            "key_size": self.key_size,
            "validity_days": self.validity_days,
            "localhost_validity_days": self.localhost_validity_days,
            "minimal_validity_days": self.minimal_validity_days,
            "acme_live_dir": str(self.acme_live_dir),
            "certbot_bin": self.certbot_bin,
            "install_acme_tool": self.install_acme_tool,
            "proxy_container": self.proxy_container,
            "docker_bin": self.docker_bin,
        }


@dataclass(frozen=True)
class RegistryConfig:
    """Container registry and API endpoints."""

    host: str = "ghcr.io"
    namespace: str = "milou-sh/milou"
    api_base: str = "https://api.github.com"
    probe_image: str = "nginx"
    login_attempts: int = 3
    login_interval: float = 2.0
    request_timeout: float = 10.0

    def repository(self, image: str) -> str:
        """Return the fully qualified repository for *image*."""
        return f"{self.host}/{self.namespace}/{image}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "host": self.host,
            "namespace": self.namespace,
            "api_base": self.api_base,
            "probe_image": self.probe_image,
            "login_attempts": self.login_attempts,
            "login_interval": self.login_interval,
            "request_timeout": self.request_timeout,
        }


@dataclass(frozen=True)
class ImagesConfig:
    """Required image manifest and pull policy."""

    manifest: tuple[str, ...] = ("database", "backend", "frontend", "engine", "nginx")
    use_latest: bool = True
    fixed_tag: str = "v1.0.0"
    pull_attempts: int = 2
    pull_interval: float = 5.0
    accept_missing: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "manifest": list(self.manifest),
            "use_latest": self.use_latest,
            "fixed_tag": self.fixed_tag,
            "pull_attempts": self.pull_attempts,
            "pull_interval": self.pull_interval,
            "accept_missing": self.accept_missing,
        }


@dataclass(frozen=True)
class ActivationConfig:
    """Service activation and readiness polling settings."""

    project: str = "milou"
    container_prefix: str = "milou-"
    compose_file: Path = Path("./static/docker-compose.yml")
    env_file: Path = Path("./.env")
    networks: tuple[str, ...] = ("milou_network", "proxy")
    health_interval: float = 10.0
    health_timeout: float = 300.0
    interactive: bool = False
    force_replace: bool = False
    stop_conflicts: bool = True
    docker_bin: str = "docker"
    min_compose_version: str = "2.0.0"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "project": self.project,
            "container_prefix": self.container_prefix,
            "compose_file": str(self.compose_file),
            "env_file": str(self.env_file),
            "networks": list(self.networks),
            "health_interval": self.health_interval,
            "health_timeout": self.health_timeout,
            "interactive": self.interactive,
            "force_replace": self.force_replace,
            "stop_conflicts": self.stop_conflicts,
            "docker_bin": self.docker_bin,
            "min_compose_version": self.min_compose_version,
        }


def contact_email_for(domain: str, admin_email: str | None = None) -> str:
    """Return the ACME contact address for *domain*."""
    return admin_email or f"admin@{domain}"


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for milouctl."""

    config_file: Path
    domain: str
    admin_email: str | None
    logs_dir: Path
    ssl: SSLConfig
    registry: RegistryConfig
    images: ImagesConfig
    activation: ActivationConfig

    @property
    def contact_email(self) -> str:
        """Return the ACME contact address, deriving one from the domain."""
        return contact_email_for(self.domain, self.admin_email)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "domain": self.domain,
            "admin_email": self.admin_email,
            "logs_dir": str(self.logs_dir),
            "ssl": self.ssl.to_dict(),
            "registry": self.registry.to_dict(),
            "images": self.images.to_dict(),
            "activation": self.activation.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/milouctl/config.yml",
    "domain": "localhost",
    "admin_email": None,
    "logs_dir": "/var/log/milouctl",
    "ssl": {
        "path": "./ssl",
        "name": "milou",
        "strategy": "auto",
        "legacy_paths": [
            "./ssl",
            "../ssl",
            "/etc/ssl/certs",
            "/etc/nginx/ssl",
            "/etc/apache2/ssl",
            "/opt/ssl",
            "~/ssl",
            "./static/ssl",
            "../static/ssl",
        ],
        "key_size": 2048,
        "validity_days": 365,
        "localhost_validity_days": 365,
        "minimal_validity_days": 30,
        "acme_live_dir": "/etc/letsencrypt/live",
        "certbot_bin": "certbot",
        "install_acme_tool": True,
        "proxy_container": "milou-nginx",
        "docker_bin": "docker",
    },
    "registry": {
        "host": "ghcr.io",
        "namespace": "milou-sh/milou",
        "api_base": "https://api.github.com",
        "probe_image": "nginx",
        "login_attempts": 3,
        "login_interval": 2.0,
        "request_timeout": 10.0,
    },
    "images": {
        "manifest": ["database", "backend", "frontend", "engine", "nginx"],
        "use_latest": True,
        "fixed_tag": "v1.0.0",
        "pull_attempts": 2,
        "pull_interval": 5.0,
        "accept_missing": False,
    },
    "activation": {
        "project": "milou",
        "container_prefix": "milou-",
        "compose_file": "./static/docker-compose.yml",
        "env_file": "./.env",
        "networks": ["milou_network", "proxy"],
        "health_interval": 10.0,
        "health_timeout": 300.0,
        "interactive": False,
        "force_replace": False,
        "stop_conflicts": True,
        "docker_bin": "docker",
        "min_compose_version": "2.0.0",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: Mapping[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("ssl", "registry", "images", "activation")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    ssl_map = _as_dict(raw.get("ssl"), "ssl")
    strategy = str(ssl_map.get("strategy", "auto")).strip().lower()
    if strategy not in SSL_STRATEGIES:
        allowed_values = ", ".join(SSL_STRATEGIES)
        raise ConfigError(f"Unsupported SSL strategy '{strategy}'. Allowed: {allowed_values}.")

    domain = raw.get("domain")
    if not isinstance(domain, str) or not domain.strip():
        raise ConfigError("domain must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    ssl_map = _as_dict(raw.get("ssl"), "ssl")
    registry_map = _as_dict(raw.get("registry"), "registry")
    images_map = _as_dict(raw.get("images"), "images")
    activation_map = _as_dict(raw.get("activation"), "activation")

    ssl = SSLConfig(
        path=_to_path(ssl_map.get("path", "./ssl")),
        name=_expect_name(ssl_map.get("name", "milou"), "ssl.name"),
        strategy=str(ssl_map.get("strategy", "auto")).strip().lower(),
        legacy_paths=tuple(
            _to_path(item)
            for item in _as_sequence(ssl_map.get("legacy_paths", []), "ssl.legacy_paths")
        ),
        key_size=_expect_positive_int(ssl_map.get("key_size"), "ssl.key_size", default=2048),
        validity_days=_expect_positive_int(
            ssl_map.get("validity_days"), "ssl.validity_days", default=365
        ),
        localhost_validity_days=_expect_positive_int(
            ssl_map.get("localhost_validity_days"), "ssl.localhost_validity_days", default=365
        ),
        minimal_validity_days=_expect_positive_int(
            ssl_map.get("minimal_validity_days"), "ssl.minimal_validity_days", default=30
        ),
        acme_live_dir=_to_path(ssl_map.get("acme_live_dir", "/etc/letsencrypt/live")),
        certbot_bin=str(ssl_map.get("certbot_bin", "certbot")),
        install_acme_tool=_expect_bool(
            ssl_map.get("install_acme_tool"), "ssl.install_acme_tool", default=True
        ),
        proxy_container=str(ssl_map.get("proxy_container", "milou-nginx")).strip(),
        docker_bin=str(ssl_map.get("docker_bin", "docker")),
    )

    registry = RegistryConfig(
        host=str(registry_map.get("host", "ghcr.io")).strip("/"),
        namespace=str(registry_map.get("namespace", "milou-sh/milou")).strip("/"),
        api_base=str(registry_map.get("api_base", "https://api.github.com")).rstrip("/"),
        probe_image=str(registry_map.get("probe_image", "nginx")),
        login_attempts=_expect_positive_int(
            registry_map.get("login_attempts"), "registry.login_attempts", default=3
        ),
        login_interval=_expect_non_negative_float(
            registry_map.get("login_interval"), "registry.login_interval", default=2.0
        ),
        request_timeout=_expect_positive_float(
            registry_map.get("request_timeout"), "registry.request_timeout", default=10.0
        ),
    )

    manifest = tuple(
        str(item).strip()
        for item in _as_sequence(images_map.get("manifest", []), "images.manifest")
        if str(item).strip()
    )
    if not manifest:
        raise ConfigError("images.manifest must list at least one image.")
    images = ImagesConfig(
        manifest=manifest,
        use_latest=_expect_bool(images_map.get("use_latest"), "images.use_latest", default=True),
        fixed_tag=str(images_map.get("fixed_tag", "v1.0.0")),
        pull_attempts=_expect_positive_int(
            images_map.get("pull_attempts"), "images.pull_attempts", default=2
        ),
        pull_interval=_expect_non_negative_float(
            images_map.get("pull_interval"), "images.pull_interval", default=5.0
        ),
        accept_missing=_expect_bool(
            images_map.get("accept_missing"), "images.accept_missing", default=False
        ),
    )

    activation = ActivationConfig(
        project=str(activation_map.get("project", "milou")),
        container_prefix=str(activation_map.get("container_prefix", "milou-")),
        compose_file=_to_path(activation_map.get("compose_file", "./static/docker-compose.yml")),
        env_file=_to_path(activation_map.get("env_file", "./.env")),
        networks=tuple(
            str(item)
            for item in _as_sequence(activation_map.get("networks", []), "activation.networks")
        ),
        health_interval=_expect_positive_float(
            activation_map.get("health_interval"), "activation.health_interval", default=10.0
        ),
        health_timeout=_expect_positive_float(
            activation_map.get("health_timeout"), "activation.health_timeout", default=300.0
        ),
        interactive=_expect_bool(
            activation_map.get("interactive"), "activation.interactive", default=False
        ),
        force_replace=_expect_bool(
            activation_map.get("force_replace"), "activation.force_replace", default=False
        ),
        stop_conflicts=_expect_bool(
            activation_map.get("stop_conflicts"), "activation.stop_conflicts", default=True
        ),
        docker_bin=str(activation_map.get("docker_bin", "docker")),
        min_compose_version=str(activation_map.get("min_compose_version", "2.0.0")),
    )

    admin_email_raw = raw.get("admin_email")
    admin_email = str(admin_email_raw).strip() if admin_email_raw else None

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        domain=str(raw.get("domain")).strip(),
        admin_email=admin_email or None,
        logs_dir=_to_path(raw.get("logs_dir")),
        ssl=ssl,
        registry=registry,
        images=images,
        activation=activation,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, str):
        # Comma separated strings are accepted from the environment.
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, bytes) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_name(value: object, label: str) -> str:
    text = str(value).strip() if value is not None else ""
    if not text or "/" in text:
        raise ConfigError(f"{label} must be a plain file name without directories.")
    return text


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "1", "on"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "0", "off"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_positive_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        number = value
    elif isinstance(value, str):
        try:
            number = int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {number}.")
    return number


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "ActivationConfig",
    "AppConfig",
    "ConfigError",
    "ImagesConfig",
    "RegistryConfig",
    "SSL_STRATEGIES",
    "SSLConfig",
    "contact_email_for",
    "load_config",
]
