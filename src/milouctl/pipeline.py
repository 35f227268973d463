"""End-to-end pre-flight run: certificates, registry, images, activation.

Each stage runs inside a :class:`~milouctl.logging.StructuredLogger`
operation. Stage results are collected in a :class:`PipelineReport`; whether
a failure stops the run is decided here:

* certificate provisioning failing is fatal;
* registry authentication failing is fatal (nothing can be pulled);
* image failures are fatal only when every image failed and missing images
  were not accepted;
* an activation timeout is reported as a partial outcome.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from .activation import ActivationOrchestrator, ActivationOutcome, ConflictPrompt
from .certificates import CertificateProvisioner, CertificateProvisionError, ProvisionResult
from .config import AppConfig
from .errors import FailureKind, PullFailureKind, StageFailure, remediation_for
from .exit_codes import ExitCode
from .images import ImageAcquisitionEngine, PullSummary
from .logging import StructuredLogger
from .providers.docker import DockerEngine
from .registry.auth import RegistryAuthenticator, RegistryAuthError, RegistrySession
from .registry.http import build_client
from .registry.tags import RegistryTagSource, TagResolver, TagSource

LOGGER = logging.getLogger(__name__)

ENVIRONMENT_CLASSIFICATIONS = {"engine", "network", "disk-space"}


def exit_code_for(failure: StageFailure) -> ExitCode:
    """Return the exit code for a run stopped by *failure*."""
    if failure.kind is FailureKind.VALIDATION:
        return ExitCode.VALIDATION
    if failure.classification in ENVIRONMENT_CLASSIFICATIONS:
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


@dataclass(frozen=True, slots=True)
class PipelineOptions:
    """Caller-supplied inputs for a single run."""

    domain: str
    credential: str | None = None
    ssl_path: Path | None = None
    strategy: str | None = None
    force_certificate: bool = False
    use_latest: bool | None = None
    force_replace: bool | None = None
    interactive: bool | None = None
    accept_missing: bool | None = None

    def log_args(self) -> dict[str, object]:
        """Return the options safe to write to the operations log."""
        return {
            "domain": self.domain,
            "ssl_path": str(self.ssl_path) if self.ssl_path else None,
            "strategy": self.strategy,
            "force_certificate": self.force_certificate,
            "use_latest": self.use_latest,
            "force_replace": self.force_replace,
            "interactive": self.interactive,
            "accept_missing": self.accept_missing,
            "credential_supplied": bool(self.credential),
        }


@dataclass(slots=True)
class PipelineReport:
    """Everything a run produced, in stage order."""

    certificate: ProvisionResult | None = None
    session: RegistrySession | None = None
    pulls: PullSummary | None = None
    activation: ActivationOutcome | None = None
    failures: list[StageFailure] = field(default_factory=list)
    halted_at: str | None = None

    @property
    def ok(self) -> bool:
        """Return ``True`` when every stage completed without failures."""
        return not self.failures and self.halted_at is None

    @property
    def exit_code(self) -> ExitCode:
        """Map the report onto a process exit code."""
        if self.ok:
            return ExitCode.OK
        if self.halted_at is None:
            return ExitCode.PARTIAL
        # The halting failure is always recorded last.
        return exit_code_for(self.failures[-1])

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ok": self.ok,
            "exit_code": int(self.exit_code),
            "halted_at": self.halted_at,
            "certificate": self.certificate.to_dict() if self.certificate else None,
            "session": self.session.to_dict() if self.session else None,
            "images": self.pulls.to_dict() if self.pulls else None,
            "activation": self.activation.to_dict() if self.activation else None,
            "failures": [failure.to_dict() for failure in self.failures],
        }


class ProvisioningPipeline:
    """Run every stage in order with explicit configuration and collaborators."""

    def __init__(
        self,
        config: AppConfig,
        *,
        logger: StructuredLogger | None = None,
        engine: DockerEngine | None = None,
        provisioner: CertificateProvisioner | None = None,
        authenticator: RegistryAuthenticator | None = None,
        tag_source: TagSource | None = None,
        orchestrator: ActivationOrchestrator | None = None,
        client: httpx.Client | None = None,
        decide: ConflictPrompt | None = None,
    ) -> None:
        """Build default collaborators from *config* where none are injected."""
        self._config = config
        self._logger = logger or StructuredLogger(config.logs_dir)
        self._client = client or build_client(config.registry)
        self._engine = engine or DockerEngine(
            docker_bin=config.activation.docker_bin,
            compose_file=config.activation.compose_file,
            env_file=config.activation.env_file,
            project=config.activation.project,
        )
        self._provisioner = provisioner or CertificateProvisioner(
            config.ssl, admin_email=config.admin_email
        )
        self._authenticator = authenticator or RegistryAuthenticator(
            config.registry, self._engine, client=self._client
        )
        self._tag_source = tag_source
        self._orchestrator = orchestrator or ActivationOrchestrator(
            config.activation, self._engine, decide=decide
        )

    def run(self, options: PipelineOptions) -> PipelineReport:
        """Execute the stages and return the report; never raises for stage failures."""
        report = PipelineReport()
        LOGGER.info("Starting provisioning for %s", options.domain)
        with self._logger.operation("provision", args=options.log_args()) as op:
            for stage in (self._certificates, self._registry, self._images, self._activation):
                if not stage(options, report):
                    break
            if report.ok:
                op.success("Provisioning complete.", context={"domain": options.domain})
            elif report.halted_at is None:
                op.warning(
                    "Provisioning finished with warnings.",
                    warnings=[failure.message for failure in report.failures],
                )
            else:
                op.error(
                    f"Provisioning halted at {report.halted_at}.",
                    errors=[failure.message for failure in report.failures],
                )
        return report

    # -- stages ---------------------------------------------------------
    def _certificates(self, options: PipelineOptions, report: PipelineReport) -> bool:
        with self._logger.operation("certificates", args={"domain": options.domain}) as op:
            try:
                result = self._provisioner.provision(
                    options.domain,
                    options.ssl_path,
                    strategy=options.strategy,
                    force=options.force_certificate,
                )
            except CertificateProvisionError as exc:
                failure = StageFailure.build(
                    "certificates",
                    "certificate",
                    str(exc),
                    kind=FailureKind.VALIDATION if exc.invalid_input else None,
                )
                op.error(str(exc), context={"attempts": [a.to_dict() for a in exc.attempts]})
                return self._halt(report, failure)
            report.certificate = result
            op.success(
                f"Certificate ready via {result.strategy}.",
                context={"cert_path": str(result.bundle.cert_path)},
            )
            return True

    def _registry(self, options: PipelineOptions, report: PipelineReport) -> bool:
        with self._logger.operation("registry-auth") as op:
            try:
                report.session = self._authenticator.authenticate(options.credential or "")
            except RegistryAuthError as exc:
                failure = exc.to_failure()
                op.error(str(exc), context={"classification": failure.classification})
                return self._halt(report, failure)
            op.success(
                f"Authenticated as {report.session.principal.login}.",
                context={"scope": report.session.scope},
            )
            return True

    def _images(self, options: PipelineOptions, report: PipelineReport) -> bool:
        images = self._config.images
        accept_missing = (
            images.accept_missing if options.accept_missing is None else options.accept_missing
        )
        source = self._tag_source or RegistryTagSource(
            self._config.registry, report.session, client=self._client
        )
        acquisition = ImageAcquisitionEngine(
            self._config.registry, images, self._engine, TagResolver(images, source)
        )
        with self._logger.operation("images", args={"manifest": list(images.manifest)}) as op:
            summary = acquisition.pull_all(use_latest=options.use_latest)
            report.pulls = summary
            failures = [result.to_failure() for result in summary.failures]
            context = summary.to_dict()
            if not failures:
                op.success(f"{len(summary.successes)} image(s) available.", context=context)
                return True
            if summary.all_failed and not accept_missing:
                report.failures.extend(failures)
                op.error("No image could be acquired.", context=context)
                # A dead engine is an environment problem, not a registry one.
                label = "no-images"
                if summary.classifications == [PullFailureKind.ENGINE]:
                    label = PullFailureKind.ENGINE.value
                return self._halt(
                    report,
                    StageFailure.build(
                        "images",
                        label,
                        "No image could be acquired.",
                        remediation=(*summary.remediation, *remediation_for("no-images")),
                    ),
                )
            report.failures.extend(failures)
            op.warning(
                f"{len(summary.failures)} of {len(summary.results)} image(s) missing.",
                warnings=[failure.message for failure in failures],
                context=context,
            )
            return True

    def _activation(self, options: PipelineOptions, report: PipelineReport) -> bool:
        bundle = report.certificate.bundle if report.certificate else None
        with self._logger.operation("activation") as op:
            outcome = self._orchestrator.activate(
                cert_path=bundle.cert_path if bundle else None,
                key_path=bundle.key_path if bundle else None,
                force_replace=options.force_replace,
                interactive=options.interactive,
            )
            report.activation = outcome
            context = outcome.to_dict()
            if outcome.succeeded:
                op.success(f"{outcome.healthy}/{outcome.total} services healthy.", context=context)
                return True
            failure = outcome.terminal_failure
            if outcome.timed_out:
                report.failures.append(failure)
                op.warning(failure.message, context=context)
                return True
            op.error(failure.message, context=context)
            return self._halt(report, failure)

    @staticmethod
    def _halt(report: PipelineReport, failure: StageFailure) -> bool:
        LOGGER.error("%s failed: %s", failure.stage, failure.message)
        report.failures.append(failure)
        report.halted_at = failure.stage
        return False


__all__ = ["PipelineOptions", "PipelineReport", "ProvisioningPipeline", "exit_code_for"]
