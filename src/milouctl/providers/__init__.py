"""Wrappers around external tools used by milouctl."""
from __future__ import annotations

from .certbot import AcmeMaterial, CertbotError, CertbotProvider
from .docker import ComposeService, ContainerStatus, DockerEngine, EngineError

__all__ = [
    "AcmeMaterial",
    "CertbotError",
    "CertbotProvider",
    "ComposeService",
    "ContainerStatus",
    "DockerEngine",
    "EngineError",
]
