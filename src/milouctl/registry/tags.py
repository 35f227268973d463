"""Tag resolution for registry images.

With ``use_latest`` disabled every image resolves to the fixed release tag
without touching the network. Otherwise the resolver probes ``latest``
directly and, when that is missing, lists the image's tags and applies an
ordered list of :class:`TagRule` objects, first match wins:

``latest`` > highest semantic version > ``main`` > ``master`` > the
version-sorted last tag.

If nothing matches, ``latest`` is returned with a warning.
"""
from __future__ import annotations

import logging
import re
from collections.abc import Sequence
from typing import Protocol

import httpx

from ..config import ImagesConfig, RegistryConfig
from .auth import RegistrySession
from .http import build_client

LOGGER = logging.getLogger(__name__)

SEMVER_PATTERN = re.compile(
    r"^v?(?P<major>0|[1-9]\d*)\.(?P<minor>0|[1-9]\d*)\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<pre>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)
MANIFEST_ACCEPT = ", ".join(
    (
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
    )
)
DEFAULT_TAG = "latest"


def semver_key(tag: str) -> tuple[object, ...] | None:
    """Return a semantic-version precedence key for *tag*, or ``None``."""
    match = SEMVER_PATTERN.match(tag)
    if match is None:
        return None
    pre = match.group("pre")
    core = (int(match.group("major")), int(match.group("minor")), int(match.group("patch")))
    if pre is None:
        # A release sorts above any of its pre-releases.
        return (*core, 1, ())
    identifiers = tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part) for part in pre.split(".")
    )
    return (*core, 0, identifiers)


def natural_key(tag: str) -> tuple[tuple[int, int, str], ...]:
    """Return a key ordering embedded numbers numerically (``sort -V`` style)."""
    return tuple(
        (0, int(chunk), "") if chunk.isdigit() else (1, 0, chunk)
        for chunk in re.findall(r"\d+|\D+", tag)
    )


class TagRule(Protocol):
    """One step of the tag selection cascade."""

    name: str

    def select(self, tags: Sequence[str]) -> str | None:
        """Return the chosen tag from *tags* or ``None``."""


class ExactTag:
    """Select a literal tag when it is listed."""

    def __init__(self, tag: str) -> None:
        """Match *tag* exactly."""
        self.tag = tag
        self.name = f"exact:{tag}"

    def select(self, tags: Sequence[str]) -> str | None:
        return self.tag if self.tag in tags else None


class HighestSemver:
    """Select the greatest ``[v]MAJOR.MINOR.PATCH[-pre]`` tag."""

    name = "semver"

    def select(self, tags: Sequence[str]) -> str | None:
        versioned = [(key, tag) for tag in tags if (key := semver_key(tag)) is not None]
        if not versioned:
            return None
        return max(versioned, key=lambda item: item[0])[1]


class VersionSortedLast:
    """Select the last tag in natural version order."""

    name = "version-sorted"

    def select(self, tags: Sequence[str]) -> str | None:
        if not tags:
            return None
        return sorted(tags, key=natural_key)[-1]


def default_rules() -> list[TagRule]:
    """Return the standard selection cascade in priority order."""
    return [
        ExactTag("latest"),
        HighestSemver(),
        ExactTag("main"),
        ExactTag("master"),
        VersionSortedLast(),
    ]


def select_tag(tags: Sequence[str], rules: Sequence[TagRule] | None = None) -> str | None:
    """Apply *rules* to *tags* and return the first selection."""
    for rule in rules if rules is not None else default_rules():
        chosen = rule.select(tags)
        if chosen is not None:
            LOGGER.debug("Tag rule %s selected %s", rule.name, chosen)
            return chosen
    return None


class TagSource(Protocol):
    """Where tags and tag existence come from."""

    def tag_exists(self, image: str, tag: str) -> bool:
        """Return ``True`` when *image:tag* exists remotely."""

    def list_tags(self, image: str) -> list[str]:
        """Return every tag published for *image*."""


class RegistryTagSource:
    """Tag source backed by the GitHub packages API and the registry v2 API."""

    def __init__(
        self,
        config: RegistryConfig,
        session: RegistrySession | None = None,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        """Use *session* (when given) to authenticate requests."""
        self._config = config
        self._session = session
        self._client = client or build_client(config)

    def tag_exists(self, image: str, tag: str) -> bool:
        url = f"{self._registry_base(image)}/manifests/{tag}"
        headers = {"Accept": MANIFEST_ACCEPT, **self._registry_auth()}
        try:
            response = self._client.get(url, headers=headers)
        except httpx.RequestError as exc:
            LOGGER.warning("Manifest probe for %s:%s failed: %s", image, tag, exc)
            return False
        LOGGER.debug("Manifest probe %s returned %s", url, response.status_code)
        return response.status_code == httpx.codes.OK

    def list_tags(self, image: str) -> list[str]:
        tags = self._package_versions(image)
        if tags:
            return tags
        return self._registry_tags(image)

    def package_urls(self, image: str) -> list[str]:
        """Return the packages API endpoints tried for *image*, in order."""
        owner, _, repo = self._config.namespace.partition("/")
        patterns = [image]
        if repo:
            patterns = [f"{repo}%2F{image}", f"{repo}-{image}", image]
        base = self._config.api_base
        urls = [f"{base}/orgs/{owner}/packages/container/{name}/versions" for name in patterns]
        urls.extend(f"{base}/user/packages/container/{name}/versions" for name in patterns)
        return urls

    def _package_versions(self, image: str) -> list[str]:
        if self._session is None:
            return []
        for url in self.package_urls(image):
            try:
                response = self._client.get(
                    url, headers=self._session.api_headers(), params={"per_page": 100}
                )
            except httpx.RequestError as exc:
                LOGGER.debug("Packages API request %s failed: %s", url, exc)
                continue
            if response.status_code != httpx.codes.OK:
                LOGGER.debug("Packages API %s returned %s", url, response.status_code)
                continue
            try:
                versions = response.json()
            except ValueError:
                continue
            tags = _tags_from_versions(versions)
            if tags:
                return tags
        return []

    def _registry_tags(self, image: str) -> list[str]:
        url = f"{self._registry_base(image)}/tags/list"
        try:
            response = self._client.get(url, headers=self._registry_auth())
        except httpx.RequestError as exc:
            LOGGER.warning("Tag listing for %s failed: %s", image, exc)
            return []
        if response.status_code != httpx.codes.OK:
            LOGGER.debug("Tag listing %s returned %s", url, response.status_code)
            return []
        try:
            payload = response.json()
        except ValueError:
            return []
        return [str(tag) for tag in payload.get("tags") or []]

    def _registry_base(self, image: str) -> str:
        return f"https://{self._config.host}/v2/{self._config.namespace}/{image}"

    def _registry_auth(self) -> dict[str, str]:
        if self._session is None:
            return {}
        return {"Authorization": f"Bearer {self._session.credential}"}


class TagResolver:
    """Resolve exactly one tag per image and remember it for the run."""

    def __init__(
        self,
        config: ImagesConfig,
        source: TagSource,
        *,
        rules: Sequence[TagRule] | None = None,
    ) -> None:
        """Resolve tags for images described by *config* using *source*."""
        self._config = config
        self._source = source
        self._rules = tuple(rules) if rules is not None else tuple(default_rules())
        self._resolved: dict[str, str] = {}

    @property
    def resolved(self) -> dict[str, str]:
        """Return a copy of the tags resolved so far, keyed by image."""
        return dict(self._resolved)

    def resolve(self, image: str, use_latest: bool | None = None, *, force: bool = False) -> str:
        """Return the tag to use for *image*.

        A previous resolution for the same image is reused unless *force* is set.
        """
        use_latest = self._config.use_latest if use_latest is None else use_latest
        if not use_latest:
            return self._config.fixed_tag
        if not force and image in self._resolved:
            return self._resolved[image]
        tag = self._resolve_remote(image)
        self._resolved[image] = tag
        return tag

    def available_tags(self, image: str) -> list[str]:
        """Return the published tags for *image*, newest version first."""
        tags = self._source.list_tags(image)
        return sorted(tags, key=natural_key, reverse=True)

    def _resolve_remote(self, image: str) -> str:
        if self._source.tag_exists(image, DEFAULT_TAG):
            LOGGER.debug("Found '%s' tag for %s", DEFAULT_TAG, image)
            return DEFAULT_TAG
        tags = self._source.list_tags(image)
        chosen = select_tag(tags, self._rules)
        if chosen is None:
            LOGGER.warning("No tags found for %s; falling back to '%s'", image, DEFAULT_TAG)
            return DEFAULT_TAG
        LOGGER.info("Resolved %s to tag %s", image, chosen)
        return chosen


def _tags_from_versions(versions: object) -> list[str]:
    if not isinstance(versions, list):
        return []
    tags: list[str] = []
    for version in versions:
        if not isinstance(version, dict):
            continue
        metadata = version.get("metadata") or {}
        container = metadata.get("container") or {}
        for tag in container.get("tags") or []:
            if tag not in tags:
                tags.append(str(tag))
    return tags


__all__ = [
    "DEFAULT_TAG",
    "ExactTag",
    "HighestSemver",
    "RegistryTagSource",
    "SEMVER_PATTERN",
    "TagResolver",
    "TagRule",
    "TagSource",
    "VersionSortedLast",
    "default_rules",
    "natural_key",
    "select_tag",
    "semver_key",
]
