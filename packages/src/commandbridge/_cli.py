"""CLI entrypoint (Typer-based).

Two subcommands, one per long-running process::

    commandbridge bridge       # HTTP trigger + poll reconciler
    commandbridge subscriber   # device status consumer

Both accept ``--env-file``, ``--log-level`` and ``--log-format``; the
global ``--version`` prints the version and exits.
"""

from __future__ import annotations

import logging
import sys
from typing import Annotated, get_args

import pydantic
import typer

from commandbridge._app import BridgeApp, SubscriberApp, _Service
from commandbridge._errors import ConfigurationError
from commandbridge._settings import LoggingSettings, Settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Exit codes
# ---------------------------------------------------------------------------

EXIT_OK = 0
EXIT_CONFIG_ERROR = 1
EXIT_RUNTIME_ERROR = 3

_VALID_LOG_LEVELS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["level"].annotation,
)
_VALID_LOG_FORMATS: tuple[str, ...] = get_args(
    LoggingSettings.model_fields["format"].annotation,
)

EnvFileOption = Annotated[str, typer.Option("--env-file", help="Path to .env file.")]
LogLevelOption = Annotated[
    str | None,
    typer.Option("--log-level", help="Override log level."),
]
LogFormatOption = Annotated[
    str | None,
    typer.Option("--log-format", help="Override log format."),
]


def load_settings(
    *,
    env_file: str = ".env",
    log_level: str | None = None,
    log_format: str | None = None,
    settings_class: type[Settings] = Settings,
) -> Settings:
    """Build settings from the environment and apply CLI overrides.

    Raises:
        typer.BadParameter: An override is not an allowed value.
        SystemExit: The environment does not validate
            (``EXIT_CONFIG_ERROR``).
    """
    if log_level is not None and log_level.upper() not in _VALID_LOG_LEVELS:
        raise typer.BadParameter(
            f"Invalid log level '{log_level}'. "
            f"Choose from: {', '.join(_VALID_LOG_LEVELS)}",
            param_hint="'--log-level'",
        )
    if log_format is not None and log_format.lower() not in _VALID_LOG_FORMATS:
        raise typer.BadParameter(
            f"Invalid log format '{log_format}'. "
            f"Choose from: {', '.join(_VALID_LOG_FORMATS)}",
            param_hint="'--log-format'",
        )

    try:
        settings = settings_class(_env_file=env_file)  # type: ignore[call-arg]
    except pydantic.ValidationError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(EXIT_CONFIG_ERROR) from exc

    if log_level is not None:
        settings.logging = settings.logging.model_copy(
            update={"level": log_level.upper()},
        )
    if log_format is not None:
        settings.logging = settings.logging.model_copy(
            update={"format": log_format.lower()},
        )
    return settings


def run_service(service: _Service, settings: Settings) -> None:
    """Run *service* until shutdown, mapping failures to exit codes."""
    try:
        service.run(settings=settings)
    except SystemExit:
        raise
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        sys.exit(EXIT_CONFIG_ERROR)
    except Exception as exc:
        logger.error("Runtime error: %s", exc)
        sys.exit(EXIT_RUNTIME_ERROR)


def build_cli(*, version: str) -> typer.Typer:
    """Construct the Typer CLI.

    Args:
        version: Version string reported by ``--version`` and
            passed to the services.
    """
    cli = typer.Typer(
        help=f"commandbridge v{version}: MQTT command dispatch and reconciliation",
    )

    @cli.callback(invoke_without_command=True)
    def main(
        ctx: typer.Context,
        version_flag: Annotated[
            bool | None,
            typer.Option("--version", is_eager=True, help="Show version and exit."),
        ] = None,
    ) -> None:
        if version_flag:
            typer.echo(f"commandbridge v{version}")
            raise typer.Exit()
        if ctx.invoked_subcommand is None:
            typer.echo(ctx.get_help())
            raise typer.Exit()

    @cli.command("bridge")
    def bridge(
        env_file: EnvFileOption = ".env",
        log_level: LogLevelOption = None,
        log_format: LogFormatOption = None,
    ) -> None:
        """Run the dispatcher: HTTP trigger and pending-command polling."""
        settings = load_settings(
            env_file=env_file,
            log_level=log_level,
            log_format=log_format,
        )
        run_service(BridgeApp(version), settings)

    @cli.command("subscriber")
    def subscriber(
        env_file: EnvFileOption = ".env",
        log_level: LogLevelOption = None,
        log_format: LogFormatOption = None,
    ) -> None:
        """Run the status consumer: device reports to command records."""
        settings = load_settings(
            env_file=env_file,
            log_level=log_level,
            log_format=log_format,
        )
        run_service(SubscriberApp(version), settings)

    return cli


def main() -> None:
    """Console-script entrypoint."""
    from commandbridge import __version__  # noqa: PLC0415

    build_cli(version=__version__)()
