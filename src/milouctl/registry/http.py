"""Shared HTTP client construction for registry and API calls."""
from __future__ import annotations

import httpx

from .. import __version__
from ..config import RegistryConfig

USER_AGENT = f"milouctl/{__version__}"


def build_client(
    config: RegistryConfig,
    *,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Return an ``httpx.Client`` with the configured timeout and default headers.

    *transport* lets callers (and tests) substitute ``httpx.MockTransport``.
    """
    return httpx.Client(
        timeout=httpx.Timeout(config.request_timeout),
        follow_redirects=True,
        headers={"User-Agent": USER_AGENT},
        transport=transport,
    )


def bearer_headers(credential: str) -> dict[str, str]:
    """Return API headers authenticating with *credential*."""
    return {
        "Authorization": f"Bearer {credential}",
        "Accept": "application/vnd.github+json",
    }


__all__ = ["USER_AGENT", "bearer_headers", "build_client"]
