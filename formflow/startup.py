"""Command line entry point: ``formflow run | db init | db reset | resume-due | config show``."""

import argparse
import sys
from typing import Callable, Dict

from .config import (
    PRESETS,
    AppConfig,
    LogLevel,
    get_preset_config,
    load_config,
    validate_config,
)
from .core.exceptions import WorkflowEngineError
from .core.logging import get_logger, setup_logging

logger = get_logger(__name__)

# Options named after a settings field; a given option wins over the environment.
OVERRIDE_OPTIONS = (
    "host", "port", "reload", "database_url", "log_level", "log_file", "debug", "max_loop_iterations",
)


def create_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="formflow",
        description="FormFlow - graph-based workflow execution engine for form submissions"
    )
    parser.add_argument("--env", choices=sorted(PRESETS), help="Start from a settings preset")
    parser.add_argument("--config", help="Path to a dotenv file with FORMFLOW_* settings")
    parser.add_argument("--host", help="Interface to bind (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, help="Port to bind (default: 8000)")
    parser.add_argument("--reload", action="store_true", default=None, help="Restart on code changes")
    parser.add_argument("--database-url", help="SQLAlchemy database URL")
    parser.add_argument("--log-level", choices=[level.value for level in LogLevel])
    parser.add_argument("--log-file", help="Also write logs to this rotating file")
    parser.add_argument("--debug", action="store_true", default=None)
    parser.add_argument(
        "--max-loop-iterations",
        type=int,
        help="Visits of a single node per run before the path is forced terminal"
    )

    commands = parser.add_subparsers(dest="command")

    run_parser = commands.add_parser("run", help="Serve the HTTP API (default)")
    run_parser.add_argument("--workers", type=int, default=1, help="Worker processes (default: 1)")

    db_parser = commands.add_parser("db", help="Manage the database schema")
    db_parser.add_argument("db_command", choices=["init", "reset"],
                           help="init creates missing tables, reset drops and recreates them")

    # Meant to be called from cron or another scheduler
    commands.add_parser("resume-due", help="Resume waiting executions whose resume time has passed")

    config_parser = commands.add_parser("config", help="Inspect the effective settings")
    config_parser.add_argument("config_command", choices=["show", "validate"])

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Preset or environment settings with the command line options applied on top."""
    config = get_preset_config(args.env) if args.env else load_config(args.config)
    overrides = {
        option: getattr(args, option)
        for option in OVERRIDE_OPTIONS
        if getattr(args, option, None) is not None
    }
    if not overrides:
        return config
    # Re-validate so a bad override fails like a bad environment variable
    return AppConfig(**{**config.model_dump(), **overrides})


def run_server(config: AppConfig, workers: int = 1) -> int:
    import uvicorn

    logger.info(f"Starting server with {workers} worker(s)")
    if workers > 1:
        # Worker processes rebuild the app from the environment
        uvicorn.run("formflow.factory:create_app", factory=True, workers=workers, **config.get_uvicorn_config())
    else:
        from .factory import create_app
        uvicorn.run(create_app(config), **config.get_uvicorn_config())
    return 0


def run_database_command(config: AppConfig, command: str) -> int:
    from .storage.database import configure_database, create_tables, drop_tables

    configure_database(config.database_url, echo=config.database_echo)
    if command == "reset":
        logger.warning("Dropping all workflow tables")
        drop_tables()
    create_tables()
    logger.info(f"Database {command} completed")
    return 0


def run_resume_due(config: AppConfig) -> int:
    """Resume every due execution once; the exit status is 1 if any resume failed."""
    from .factory import initialize_core_components, initialize_database

    initialize_database(config)
    state = initialize_core_components(config)

    summary = state.resumer.resume_due_executions()
    print(f"Waiting executions: {summary.total_waiting}")
    print(f"Resumed: {summary.resumed_count}")
    for error in summary.errors:
        print(f"  Error: {error}")
    return 1 if summary.errors else 0


def show_configuration(config: AppConfig) -> int:
    for name, value in config.model_dump(mode="json").items():
        print(f"{name}: {value}")
    return 0


def validate_configuration(config: AppConfig) -> int:
    try:
        validate_config(config)
    except WorkflowEngineError as e:
        print(f"Configuration is invalid: {e.message}")
        return 1
    print("Configuration is valid")
    return 0


def dispatch(args: argparse.Namespace, config: AppConfig) -> int:
    if args.command == "config":
        handlers: Dict[str, Callable[[AppConfig], int]] = {
            "show": show_configuration,
            "validate": validate_configuration,
        }
        return handlers[args.config_command](config)

    validate_config(config)
    setup_logging(config)

    if args.command == "db":
        return run_database_command(config, args.db_command)
    if args.command == "resume-due":
        return run_resume_due(config)
    return run_server(config, getattr(args, "workers", 1))


def main(argv=None):
    args = create_argument_parser().parse_args(argv)
    try:
        config = load_configuration(args)
        exit_code = dispatch(args, config)
    except WorkflowEngineError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        exit_code = 1
    except ValueError as e:
        # pydantic validation of the settings
        print(f"Error: {e}", file=sys.stderr)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
