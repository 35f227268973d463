"""Typer-powered command line for ``milouctl``.

Commands stay thin: they load configuration, wire the library components and
render what those components return. Every decision about certificates,
credentials, tags, pulls and activation lives in the library modules.
"""
from __future__ import annotations

import json
import logging
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import httpx
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Prompt
from rich.table import Table

from . import __version__
from .activation import ActivationOrchestrator, ActivationOutcome, ConflictDecision
from .certificates import CertificateProvisioner, CertificateProvisionError, ProvisionResult
from .config import AppConfig, ConfigError, load_config
from .errors import StageFailure
from .exit_codes import ExitCode
from .images import ImageAcquisitionEngine, PullSummary, ValidationReport
from .logging import OperationScope, StructuredLogger
from .pipeline import PipelineOptions, PipelineReport, ProvisioningPipeline, exit_code_for
from .providers.docker import ContainerStatus, DockerEngine, EngineError
from .registry import (
    RegistryAuthenticator,
    RegistryAuthError,
    RegistrySession,
    RegistryTagSource,
    TagResolver,
)
from .registry.http import build_client
from .tls import CertificateError, check_expiration, describe_certificate

console = Console()
err_console = Console(stderr=True)

TOKEN_ENV_VARS = ["MILOUCTL_TOKEN", "GITHUB_TOKEN"]

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to milouctl's YAML config file.",
)
DOMAIN_OPTION = typer.Option(
    None,
    "--domain",
    help="Domain the deployment is served on (defaults to the configured domain).",
)
SSL_PATH_OPTION = typer.Option(
    None,
    "--ssl-path",
    dir_okay=True,
    file_okay=False,
    help="Directory holding the certificate pair (defaults to ssl.path).",
)
STRATEGY_OPTION = typer.Option(
    None,
    "--strategy",
    help="Certificate strategy hint: auto, existing, self-signed or public-ca.",
)
TOKEN_OPTION = typer.Option(
    None,
    "--token",
    envvar=TOKEN_ENV_VARS,
    show_envvar=True,
    help="Registry access token (falls back to MILOUCTL_TOKEN or GITHUB_TOKEN).",
)
LATEST_OPTION = typer.Option(
    None,
    "--latest/--fixed",
    help="Resolve the newest published tag or use the configured fixed release tag.",
)
FORCE_REPLACE_OPTION = typer.Option(
    False,
    "--force-replace",
    help="Stop and remove running containers of this deployment before starting.",
)
INTERACTIVE_OPTION = typer.Option(
    False,
    "--interactive",
    help="Ask how to handle running containers instead of applying the configured policy.",
)
ACCEPT_MISSING_OPTION = typer.Option(
    False,
    "--accept-missing",
    help="Continue to activation even when no image could be pulled.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON instead of tables.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Milou pre-flight provisioning CLI.

        Prepares TLS certificates, authenticates against the image registry,
        resolves and pulls the service images, then brings the services up
        and waits for them to report healthy.
        """
    ).strip(),
)
ssl_app = typer.Typer(help="Provision and inspect the TLS certificate pair.")
images_app = typer.Typer(help="Pull and validate service images.")
services_app = typer.Typer(help="Start the services and wait for readiness.")

app.add_typer(ssl_app, name="ssl")
app.add_typer(images_app, name="images")
app.add_typer(services_app, name="services")


@dataclass(slots=True)
class RuntimeContext:
    """Objects shared by every command of one invocation."""

    config: AppConfig
    logger: StructuredLogger
    engine: DockerEngine


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        err_console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    activation = config.activation
    runtime = RuntimeContext(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        engine=DockerEngine(
            docker_bin=activation.docker_bin,
            compose_file=activation.compose_file,
            env_file=activation.env_file,
            project=activation.project,
        ),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the milouctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log debug detail to stderr.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    _configure_logging(verbose)
    if version:
        console.print(f"milouctl {__version__}")
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(op: OperationScope, message: str, *, rc: ExitCode) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"[red]{message}[/red]")
    op.error(message, context={"rc": int(rc)})
    raise typer.Exit(code=int(rc))


def _print_json(payload: object) -> None:
    console.print(
        json.dumps(payload, indent=2, sort_keys=True),
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


def _prompt_conflicts(conflicts: Sequence[ContainerStatus]) -> ConflictDecision:
    table = Table("Container", "Status", "Ports")
    for container in conflicts:
        table.add_row(container.name, container.status, container.ports or "-")
    console.print("[yellow]Containers of this deployment are already running.[/yellow]")
    console.print(table)
    choice = Prompt.ask(
        "How should they be handled?",
        choices=[decision.value for decision in ConflictDecision],
        default=ConflictDecision.STOP.value,
        console=console,
    )
    return ConflictDecision(choice)


def _flag(value: bool) -> bool | None:
    """Return ``None`` for an unset flag so the configured default applies."""
    return True if value else None


# -- rendering -----------------------------------------------------------
def _render_failures(failures: Sequence[StageFailure]) -> None:
    for failure in failures:
        console.print(f"[red]{failure.stage}[/red]: {failure.message}")
        for step in failure.remediation:
            console.print(f"  - {step}")


def _render_certificate(result: ProvisionResult) -> None:
    bundle = result.bundle
    table = Table("Field", "Value", title="Certificate")
    table.add_row("Strategy", result.strategy)
    table.add_row("Certificate", str(bundle.cert_path))
    table.add_row("Key", str(bundle.key_path))
    table.add_row("Issuer", bundle.issuer or "-")
    table.add_row("Expires", bundle.not_after.isoformat() if bundle.not_after else "-")
    for path in result.moved_aside:
        table.add_row("Moved aside", str(path))
    console.print(table)


def _render_pulls(summary: PullSummary) -> None:
    table = Table("Image", "Outcome", "Classification", title="Images")
    for result in summary.results:
        classification = result.classification.value if result.classification else "-"
        style = "green" if result.succeeded else "red"
        table.add_row(
            result.reference.full,
            f"[{style}]{result.outcome.value}[/{style}]",
            classification,
        )
    console.print(table)
    console.print(f"{len(summary.successes)} succeeded, {len(summary.failures)} failed.")
    for step in summary.remediation:
        console.print(f"  - {step}")


def _render_activation(outcome: ActivationOutcome) -> None:
    table = Table("Service", "Container", "State", "Health", title="Services")
    for service in outcome.services:
        style = "green" if service.healthy else "yellow"
        table.add_row(
            service.name,
            service.container,
            service.state,
            f"[{style}]{service.health or ('ok' if service.healthy else '-')}[/{style}]",
        )
    console.print(table)
    console.print(
        f"Activation {outcome.state.value}: {outcome.healthy}/{outcome.total} services healthy "
        f"after {outcome.elapsed:.0f}s."
    )
    for name, output in outcome.diagnostics.items():
        console.print(f"[bold]Last log lines of {name}:[/bold]")
        console.print(output or "(no output)", markup=False, highlight=False)


def _render_report(report: PipelineReport) -> None:
    if report.certificate is not None:
        _render_certificate(report.certificate)
    if report.session is not None:
        console.print(
            f"Registry: authenticated as [bold]{report.session.principal.login}[/bold] "
            f"for {report.session.scope}."
        )
    if report.pulls is not None:
        _render_pulls(report.pulls)
    if report.activation is not None:
        _render_activation(report.activation)
    _render_failures(report.failures)
    if report.ok:
        console.print("[green]Provisioning complete.[/green]")
    elif report.halted_at is None:
        console.print("[yellow]Provisioning finished with warnings.[/yellow]")
    else:
        console.print(f"[red]Provisioning halted at {report.halted_at}.[/red]")


def _render_validation(report: ValidationReport) -> None:
    table = Table("Image", "Exists", "Available tags", title="Image validation")
    for check in report.checks:
        table.add_row(
            check.reference.full,
            "[green]yes[/green]" if check.exists else "[red]no[/red]",
            ", ".join(check.available_tags) or "-",
        )
    console.print(table)


# -- helpers shared by the image commands -----------------------------------
def _authenticate(
    runtime: RuntimeContext,
    op: OperationScope,
    token: str | None,
    client: httpx.Client,
) -> RegistrySession:
    authenticator = RegistryAuthenticator(runtime.config.registry, runtime.engine, client=client)
    try:
        return authenticator.authenticate(token or "")
    except RegistryAuthError as exc:
        failure = exc.to_failure()
        _render_failures([failure])
        _command_error(op, str(exc), rc=exit_code_for(failure))


def _acquisition(
    runtime: RuntimeContext,
    session: RegistrySession | None,
    client: httpx.Client,
) -> ImageAcquisitionEngine:
    config = runtime.config
    source = RegistryTagSource(config.registry, session, client=client)
    return ImageAcquisitionEngine(
        config.registry, config.images, runtime.engine, TagResolver(config.images, source)
    )


def _outcome_code(succeeded: int, failed: int) -> ExitCode:
    if not failed:
        return ExitCode.OK
    return ExitCode.PARTIAL if succeeded else ExitCode.PROVIDER


# -- commands ----------------------------------------------------------------
@app.command()
def provision(
    ctx: typer.Context,
    domain: str | None = DOMAIN_OPTION,
    ssl_path: Path | None = SSL_PATH_OPTION,
    strategy: str | None = STRATEGY_OPTION,
    token: str | None = TOKEN_OPTION,
    latest: bool | None = LATEST_OPTION,
    force_certificate: bool = typer.Option(
        False,
        "--force-certificate",
        help="Regenerate the certificate even when the current pair is valid.",
    ),
    force_replace: bool = FORCE_REPLACE_OPTION,
    interactive: bool = INTERACTIVE_OPTION,
    accept_missing: bool = ACCEPT_MISSING_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Run the full pre-flight: certificates, registry, images and activation."""
    runtime = _get_runtime(ctx)
    options = PipelineOptions(
        domain=domain or runtime.config.domain,
        credential=token,
        ssl_path=ssl_path,
        strategy=strategy,
        force_certificate=force_certificate,
        use_latest=latest,
        force_replace=_flag(force_replace),
        interactive=_flag(interactive),
        accept_missing=_flag(accept_missing),
    )
    pipeline = ProvisioningPipeline(
        runtime.config,
        logger=runtime.logger,
        engine=runtime.engine,
        decide=_prompt_conflicts,
    )
    report = pipeline.run(options)
    if json_output:
        _print_json(report.to_dict())
    else:
        _render_report(report)
    raise typer.Exit(code=int(report.exit_code))


@ssl_app.command("setup")
def ssl_setup(
    ctx: typer.Context,
    domain: str | None = DOMAIN_OPTION,
    ssl_path: Path | None = SSL_PATH_OPTION,
    strategy: str | None = STRATEGY_OPTION,
    force: bool = typer.Option(
        False,
        "--force",
        help="Move the current pair aside and generate a new one.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Make sure a valid certificate pair exists for the domain."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    target = domain or config.domain
    provisioner = CertificateProvisioner(config.ssl, admin_email=config.admin_email)
    args = {
        "domain": target,
        "ssl_path": str(ssl_path) if ssl_path else None,
        "strategy": strategy,
        "force": force,
    }
    with runtime.logger.operation("ssl setup", args=args) as op:
        try:
            result = provisioner.provision(target, ssl_path, strategy=strategy, force=force)
        except CertificateProvisionError as exc:
            for attempt in exc.attempts:
                err_console.print(f"  {attempt.strategy}: {attempt.detail}")
            rc = ExitCode.VALIDATION if exc.invalid_input else ExitCode.PROVIDER
            _command_error(op, str(exc), rc=rc)
        op.success(f"Certificate ready via {result.strategy}.", context=result.to_dict())

    if json_output:
        _print_json(result.to_dict())
    else:
        _render_certificate(result)


@ssl_app.command("check")
def ssl_check(
    ctx: typer.Context,
    domain: str | None = DOMAIN_OPTION,
    ssl_path: Path | None = SSL_PATH_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Report whether the installed pair is valid for the domain and when it expires."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    target = domain or config.domain
    provisioner = CertificateProvisioner(config.ssl, admin_email=config.admin_email)
    bundle, valid = provisioner.inspect(target, ssl_path)
    expiry = check_expiration(bundle)
    try:
        details: dict[str, object] = describe_certificate(bundle.cert_path)
    except CertificateError as exc:
        details = {"error": str(exc)}

    payload = {
        "domain": target,
        "valid": valid,
        "expiry": expiry.to_dict(),
        "certificate": details,
    }
    if json_output:
        _print_json(payload)
    else:
        table = Table("Field", "Value", title=f"Certificate for {target}")
        table.add_row("Path", str(bundle.cert_path))
        table.add_row("Valid", "[green]yes[/green]" if valid else "[red]no[/red]")
        table.add_row("Expiry", f"{expiry.status.value} ({expiry.days_remaining} days)")
        for key in ("subject", "issuer", "not_before", "not_after", "error"):
            if key in details:
                table.add_row(key.replace("_", " ").capitalize(), str(details[key]))
        names = details.get("names")
        if isinstance(names, list):
            table.add_row("Names", ", ".join(str(name) for name in names))
        console.print(table)

    if not valid:
        raise typer.Exit(code=int(ExitCode.VALIDATION))


@images_app.command("pull")
def images_pull(
    ctx: typer.Context,
    token: str | None = TOKEN_OPTION,
    latest: bool | None = LATEST_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Authenticate and pull every image of the manifest."""
    runtime = _get_runtime(ctx)
    client = build_client(runtime.config.registry)
    with runtime.logger.operation("images pull", args={"use_latest": latest}) as op:
        session = _authenticate(runtime, op, token, client)
        summary = _acquisition(runtime, session, client).pull_all(use_latest=latest)
        rc = _outcome_code(len(summary.successes), len(summary.failures))
        if rc is ExitCode.OK:
            op.success(f"{len(summary.successes)} image(s) available.", context=summary.to_dict())
        else:
            op.warning(
                f"{len(summary.failures)} image(s) failed.",
                warnings=[result.to_failure().message for result in summary.failures],
                context=summary.to_dict(),
            )

    if json_output:
        _print_json(summary.to_dict())
    else:
        _render_pulls(summary)
    raise typer.Exit(code=int(rc))


@images_app.command("validate")
def images_validate(
    ctx: typer.Context,
    token: str | None = TOKEN_OPTION,
    latest: bool | None = LATEST_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Check every manifest image exists remotely without downloading it."""
    runtime = _get_runtime(ctx)
    client = build_client(runtime.config.registry)
    with runtime.logger.operation("images validate", args={"use_latest": latest}) as op:
        session = _authenticate(runtime, op, token, client) if token else None
        try:
            report = _acquisition(runtime, session, client).validate_all(use_latest=latest)
        except EngineError as exc:
            _command_error(op, f"Container engine unavailable: {exc}", rc=ExitCode.ENVIRONMENT)
        missing = len(report.missing)
        rc = _outcome_code(len(report.checks) - missing, missing)
        if report.ok:
            op.success("All images exist.", context=report.to_dict())
        else:
            op.warning(
                f"{missing} image(s) missing.",
                warnings=[check.reference.full for check in report.missing],
                context=report.to_dict(),
            )

    if json_output:
        _print_json(report.to_dict())
    else:
        _render_validation(report)
    raise typer.Exit(code=int(rc))


@services_app.command("up")
def services_up(
    ctx: typer.Context,
    ssl_path: Path | None = SSL_PATH_OPTION,
    force_replace: bool = FORCE_REPLACE_OPTION,
    interactive: bool = INTERACTIVE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Start the services and wait until they report healthy."""
    runtime = _get_runtime(ctx)
    ssl = runtime.config.ssl
    directory = (ssl_path or ssl.path).expanduser()
    orchestrator = ActivationOrchestrator(
        runtime.config.activation, runtime.engine, decide=_prompt_conflicts
    )
    args = {"force_replace": force_replace, "interactive": interactive}
    with runtime.logger.operation("services up", args=args) as op:
        outcome = orchestrator.activate(
            cert_path=directory / f"{ssl.name}.crt",
            key_path=directory / f"{ssl.name}.key",
            force_replace=_flag(force_replace),
            interactive=_flag(interactive),
        )
        if outcome.succeeded:
            rc = ExitCode.OK
            op.success(f"{outcome.healthy}/{outcome.total} services healthy.")
        else:
            failure = outcome.terminal_failure
            rc = ExitCode.PARTIAL if outcome.timed_out else exit_code_for(failure)
            op.error(failure.message, context=outcome.to_dict())

    if json_output:
        _print_json(outcome.to_dict())
    else:
        _render_activation(outcome)
        if not outcome.succeeded:
            _render_failures([outcome.terminal_failure])
    raise typer.Exit(code=int(rc))


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
