"""Registry authentication and tag resolution."""
from __future__ import annotations

from .auth import (
    Principal,
    RegistryAuthenticator,
    RegistryAuthError,
    RegistrySession,
    redact,
    validate_credential_shape,
)
from .tags import RegistryTagSource, TagResolver, TagSource

__all__ = [
    "Principal",
    "RegistryAuthError",
    "RegistryAuthenticator",
    "RegistrySession",
    "RegistryTagSource",
    "TagResolver",
    "TagSource",
    "redact",
    "validate_credential_shape",
]
