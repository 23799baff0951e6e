"""Command line interface: run the API server and manage the database."""

import sys
import argparse

from .config import (
    AppConfig,
    LogLevel,
    load_config,
    get_development_config,
    get_production_config,
    get_testing_config,
    validate_config
)
from .core.logging import setup_logging, get_logger


def create_argument_parser() -> argparse.ArgumentParser:
    """Create command line argument parser."""
    parser = argparse.ArgumentParser(
        description="bizflow - workflow execution core for business process automation"
    )

    parser.add_argument("--host", help="Host to bind the server to")
    parser.add_argument("--port", type=int, help="Port to bind the server to")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument(
        "--env",
        choices=["development", "production", "testing"],
        help="Environment configuration preset"
    )
    parser.add_argument("--config", help="Path to a .env configuration file")
    parser.add_argument("--database-url", help="Database connection URL")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level"
    )
    parser.add_argument("--log-file", help="Path to log file")
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run the API server")
    run_parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="Number of worker processes (default: 1)"
    )

    db_parser = subparsers.add_parser("db", help="Database management commands")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database commands")
    db_subparsers.add_parser("init", help="Create tables and indexes")
    db_subparsers.add_parser("migrate", help="Create missing indexes")
    db_subparsers.add_parser("reset", help="Drop and recreate all tables")
    db_subparsers.add_parser("seed", help="Install the built-in workflow definitions")

    config_parser = subparsers.add_parser("config", help="Configuration management")
    config_subparsers = config_parser.add_subparsers(dest="config_command", help="Config commands")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_subparsers.add_parser("validate", help="Validate configuration")

    return parser


def load_configuration(args: argparse.Namespace) -> AppConfig:
    """Load configuration based on command line arguments."""
    if args.env == "development":
        config = get_development_config()
    elif args.env == "production":
        config = get_production_config()
    elif args.env == "testing":
        config = get_testing_config()
    else:
        config = load_config(args.config)

    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    if args.reload:
        overrides["reload"] = True
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = LogLevel(args.log_level)
    if args.log_file:
        overrides["log_file"] = args.log_file
    if args.debug:
        overrides["debug"] = True

    if not overrides:
        return config
    return AppConfig.model_validate({**config.model_dump(), **overrides})


def run_server(config: AppConfig, workers: int = 1):
    """Run the API server."""
    import uvicorn
    from .factory import create_app

    logger = get_logger(__name__)
    logger.info(f"Starting server with {workers} worker(s)")

    uvicorn_config = config.get_uvicorn_config()

    if workers > 1:
        # Worker processes build their app from the environment
        uvicorn.run("bizflow.main:app", workers=workers, **uvicorn_config)
    else:
        uvicorn.run(create_app(config), **uvicorn_config)


def run_database_command(command: str, config: AppConfig) -> None:
    """Run database management commands."""
    from .storage.database import create_database_engine, create_session_factory, create_tables, drop_tables
    from .storage.migrations import run_index_migrations

    logger = get_logger(__name__)
    engine = create_database_engine(
        config.database_url,
        echo=config.database_echo,
        connect_args=config.get_database_connect_args()
    )

    try:
        if command == "init":
            logger.info("Initializing database tables...")
            create_tables(engine)
            run_index_migrations(engine)
            logger.info("Database tables created successfully")

        elif command == "migrate":
            logger.info("Running index migrations...")
            run_index_migrations(engine)

        elif command == "reset":
            logger.info("Resetting database...")
            drop_tables(engine)
            create_tables(engine)
            run_index_migrations(engine)
            logger.info("Database reset completed successfully")

        elif command == "seed":
            from .core.definition_service import WorkflowDefinitionService
            from .seeds import seed_default_workflows

            create_tables(engine)
            service = WorkflowDefinitionService(
                create_session_factory(engine),
                default_retry_config=config.default_retry_config,
                default_timeout_minutes=config.default_step_timeout_minutes
            )
            created = seed_default_workflows(service)
            logger.info(f"Installed {created} workflow definition(s)")
    finally:
        engine.dispose()


def show_configuration(config: AppConfig):
    """Show current configuration."""
    print("Current Configuration:")
    print(f"  App Name: {config.app_name}")
    print(f"  Version: {config.app_version}")
    print(f"  Debug: {config.debug}")
    print(f"  Host: {config.host}")
    print(f"  Port: {config.port}")
    print(f"  Database URL: {config.database_url}")
    print(f"  Log Level: {config.log_level.value}")
    print(f"  Default Max Retries: {config.default_max_retries}")
    print(f"  Default Retry Delay: {config.default_retry_delay_seconds}s")
    print(f"  Anthropic Model: {config.anthropic_model}")
    print(f"  Anthropic API Key: {'set' if config.anthropic_api_key else 'not set'}")
    print(f"  Seed Default Workflows: {config.seed_default_workflows}")


def validate_configuration_command(config: AppConfig):
    """Validate configuration and show results."""
    try:
        validate_config(config)
        print("Configuration validation: PASSED")
    except ValueError as e:
        print("Configuration validation: FAILED")
        print(f"Error: {e}")
        sys.exit(1)


def main(argv=None):
    """Main entry point for the command line interface."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        config = load_configuration(args)
        validate_config(config)
        setup_logging(level=config.log_level.value, log_file=config.log_file, structured=config.log_structured)

        if args.command == "run" or args.command is None:
            run_server(config, getattr(args, "workers", 1))

        elif args.command == "db":
            if not args.db_command:
                print("Database command required. Use --help for options.")
                sys.exit(1)
            run_database_command(args.db_command, config)

        elif args.command == "config":
            if args.config_command == "show":
                show_configuration(config)
            elif args.config_command == "validate":
                validate_configuration_command(config)
            else:
                print("Configuration command required. Use --help for options.")
                sys.exit(1)
        else:
            parser.print_help()

    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
