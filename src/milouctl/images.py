"""Image acquisition: existence checks, pulls, fallbacks and summaries."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from .config import ImagesConfig, RegistryConfig
from .errors import PullFailureKind, StageFailure, classify_output, remediation_for
from .providers.docker import DockerEngine, EngineError, combined_output
from .registry.tags import DEFAULT_TAG, SEMVER_PATTERN, TagResolver
from .retry import RetryPolicy

LOGGER = logging.getLogger(__name__)

BRANCH_TAGS = ("latest", "main", "master")
MAX_SUGGESTED_TAGS = 5


class PullOutcome(str, Enum):
    """What happened to an image during acquisition."""

    PULLED = "pulled"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class ImageReference:
    """A repository plus exactly one resolved tag."""

    name: str
    repository: str
    tag: str
    digest: str | None = None

    @classmethod
    def for_image(cls, config: RegistryConfig, name: str, tag: str) -> ImageReference:
        """Return the reference for manifest entry *name* at *tag*."""
        return cls(name=name, repository=config.repository(name), tag=tag)

    @property
    def full(self) -> str:
        """Return ``repository:tag`` (or ``repository@digest`` when pinned)."""
        if self.digest:
            return f"{self.repository}@{self.digest}"
        return f"{self.repository}:{self.tag}"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "reference": self.full, "tag": self.tag, "digest": self.digest}


@dataclass(frozen=True, slots=True)
class PullResult:
    """Outcome of acquiring one image."""

    reference: ImageReference
    outcome: PullOutcome
    classification: PullFailureKind | None = None
    raw_output: str | None = None

    @property
    def succeeded(self) -> bool:
        """Return ``True`` when the image is available locally."""
        return self.outcome is not PullOutcome.FAILED

    def to_failure(self, stage: str = "images") -> StageFailure:
        """Return the terminal failure record for a failed pull."""
        classification = self.classification or PullFailureKind.UNKNOWN
        return StageFailure.build(
            stage,
            classification,
            f"Failed to pull {self.reference.full} ({classification.value}).",
            raw_output=self.raw_output,
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "reference": self.reference.to_dict(),
            "outcome": self.outcome.value,
            "classification": self.classification.value if self.classification else None,
        }


@dataclass(frozen=True, slots=True)
class PullSummary:
    """Aggregate of every pull in a run."""

    results: tuple[PullResult, ...]

    @property
    def successes(self) -> list[PullResult]:
        """Return the pulled or already-present images."""
        return [result for result in self.results if result.succeeded]

    @property
    def failures(self) -> list[PullResult]:
        """Return the images that could not be acquired."""
        return [result for result in self.results if not result.succeeded]

    @property
    def classifications(self) -> list[PullFailureKind]:
        """Return the distinct failure classifications in first-seen order."""
        seen: list[PullFailureKind] = []
        for result in self.failures:
            kind = result.classification or PullFailureKind.UNKNOWN
            if kind not in seen:
                seen.append(kind)
        return seen

    @property
    def remediation(self) -> tuple[str, ...]:
        """Return remediation steps for every classification that occurred."""
        steps: list[str] = []
        for kind in self.classifications:
            for step in remediation_for(kind):
                if step not in steps:
                    steps.append(step)
        return tuple(steps)

    @property
    def all_failed(self) -> bool:
        """Return ``True`` when no image at all was acquired."""
        return bool(self.results) and not self.successes

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "successes": len(self.successes),
            "failures": len(self.failures),
            "classifications": [kind.value for kind in self.classifications],
            "remediation": list(self.remediation),
            "results": [result.to_dict() for result in self.results],
        }


@dataclass(frozen=True, slots=True)
class ImageCheck:
    """Remote existence of one image, with suggestions when missing."""

    reference: ImageReference
    exists: bool
    available_tags: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class ValidationReport:
    """Result of :meth:`ImageAcquisitionEngine.validate_all`."""

    checks: tuple[ImageCheck, ...] = field(default_factory=tuple)

    @property
    def missing(self) -> list[ImageCheck]:
        """Return the checks for images that were not found."""
        return [check for check in self.checks if not check.exists]

    @property
    def ok(self) -> bool:
        """Return ``True`` when every image exists."""
        return not self.missing

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ok": self.ok,
            "images": [
                {
                    "reference": check.reference.full,
                    "exists": check.exists,
                    "available_tags": list(check.available_tags),
                }
                for check in self.checks
            ],
        }


def fallback_tags(primary: str) -> list[str]:
    """Return the ordered tags tried for an image whose *primary* tag failed."""
    if primary in BRANCH_TAGS:
        ordered = [primary, *BRANCH_TAGS]
    elif SEMVER_PATTERN.match(primary):
        ordered = [primary, "latest", "main", "master"]
    else:
        ordered = [primary, DEFAULT_TAG, "main", "master"]
    return list(dict.fromkeys(ordered))


class ImageAcquisitionEngine:
    """Pull the manifest's images through the container engine."""

    def __init__(
        self,
        registry: RegistryConfig,
        images: ImagesConfig,
        engine: DockerEngine,
        resolver: TagResolver,
        *,
        policy: RetryPolicy | None = None,
    ) -> None:
        """Wire the engine, tag resolver and per-image pull retry policy."""
        self._registry = registry
        self._images = images
        self._engine = engine
        self._resolver = resolver
        self._policy = policy or RetryPolicy(
            max_attempts=images.pull_attempts, interval=images.pull_interval
        )

    def reference(self, name: str, use_latest: bool | None = None) -> ImageReference:
        """Return the reference for *name* at its resolved tag."""
        tag = self._resolver.resolve(name, use_latest)
        return ImageReference.for_image(self._registry, name, tag)

    def exists(self, reference: ImageReference) -> bool:
        """Return ``True`` when the registry has *reference*; nothing is downloaded."""
        result = self._engine.manifest_inspect(reference.full)
        if result.returncode != 0:
            LOGGER.debug(
                "Manifest check failed for %s: %s", reference.full, combined_output(result)
            )
            return False
        return True

    def pull(self, reference: ImageReference) -> PullResult:
        """Pull *reference* unless it is already present locally."""
        try:
            present = self._engine.image_present(reference.full)
        except EngineError as exc:
            return _engine_failure(reference, exc)
        if present:
            LOGGER.info("Image %s already present; skipping pull", reference.full)
            return PullResult(reference=reference, outcome=PullOutcome.SKIPPED)
        return self._policy.run(
            lambda attempt: self._pull_once(reference, attempt),
            retry_if=_retryable,
        )

    def try_with_fallback(self, name: str, primary_tag: str) -> PullResult:
        """Pull *name* at the first fallback tag that exists and pulls cleanly."""
        last: PullResult | None = None
        for tag in fallback_tags(primary_tag):
            reference = ImageReference.for_image(self._registry, name, tag)
            try:
                found = self.exists(reference)
            except EngineError as exc:
                return _engine_failure(reference, exc)
            if not found:
                LOGGER.debug("Fallback tag %s not found for %s", tag, name)
                last = last or PullResult(
                    reference=reference,
                    outcome=PullOutcome.FAILED,
                    classification=PullFailureKind.NOT_FOUND,
                )
                continue
            result = self.pull(reference)
            if result.succeeded:
                if tag != primary_tag:
                    LOGGER.warning("Using fallback tag %s for %s", tag, name)
                return result
            last = result
        if last is None:
            raise ValueError(f"No fallback tags derived from {primary_tag!r}.")
        return last

    def pull_all(
        self,
        manifest: Sequence[str] | None = None,
        *,
        use_latest: bool | None = None,
        fallback: bool = True,
    ) -> PullSummary:
        """Pull every image independently; one failure never stops the rest.

        A ``not-found`` failure on the resolved tag is retried through
        :meth:`try_with_fallback` when *fallback* is set.
        """
        results: list[PullResult] = []
        for name in manifest or self._images.manifest:
            reference = self.reference(name, use_latest)
            LOGGER.info("Pulling %s", reference.full)
            result = self.pull(reference)
            if (
                not result.succeeded
                and fallback
                and result.classification is PullFailureKind.NOT_FOUND
            ):
                result = self.try_with_fallback(name, reference.tag)
            if result.succeeded:
                LOGGER.info("Image %s %s", result.reference.full, result.outcome.value)
            else:
                LOGGER.error(
                    "Image %s failed (%s)",
                    result.reference.full,
                    (result.classification or PullFailureKind.UNKNOWN).value,
                )
            results.append(result)
        return PullSummary(results=tuple(results))

    def validate_all(
        self,
        manifest: Sequence[str] | None = None,
        *,
        use_latest: bool | None = None,
    ) -> ValidationReport:
        """Check every image exists remotely, suggesting tags for missing ones."""
        checks: list[ImageCheck] = []
        for name in manifest or self._images.manifest:
            reference = self.reference(name, use_latest)
            if self.exists(reference):
                checks.append(ImageCheck(reference=reference, exists=True))
                continue
            suggestions = tuple(self._resolver.available_tags(name)[:MAX_SUGGESTED_TAGS])
            LOGGER.warning("Image %s not found in the registry", reference.full)
            checks.append(ImageCheck(reference=reference, exists=False, available_tags=suggestions))
        return ValidationReport(checks=tuple(checks))

    def _pull_once(self, reference: ImageReference, attempt: int) -> PullResult:
        LOGGER.debug("Pull attempt %s for %s", attempt, reference.full)
        try:
            result = self._engine.pull(reference.full)
        except EngineError as exc:
            return _engine_failure(reference, exc)
        output = combined_output(result)
        if result.returncode == 0:
            return PullResult(reference=reference, outcome=PullOutcome.PULLED, raw_output=output)
        return PullResult(
            reference=reference,
            outcome=PullOutcome.FAILED,
            classification=classify_output(output),
            raw_output=output,
        )


def _engine_failure(reference: ImageReference, exc: EngineError) -> PullResult:
    LOGGER.error("Container engine failed while handling %s: %s", reference.full, exc)
    return PullResult(
        reference=reference,
        outcome=PullOutcome.FAILED,
        classification=PullFailureKind.ENGINE,
        raw_output=exc.output or str(exc),
    )


def _retryable(result: PullResult) -> bool:
    if result.succeeded or result.classification is None:
        return False
    return result.classification.failure_kind.retryable


__all__ = [
    "ImageAcquisitionEngine",
    "ImageCheck",
    "ImageReference",
    "PullOutcome",
    "PullResult",
    "PullSummary",
    "ValidationReport",
    "fallback_tags",
]
