"""Application factory for creating FastAPI instances."""

from typing import Optional
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.engine import Engine

from .config import AppConfig, get_config, validate_config
from .core.definition_service import WorkflowDefinitionService
from .core.execution_engine import WorkflowExecutionEngine
from .core.interfaces import CompletionClient
from .core.logging import setup_logging, get_logger
from .core.step_processor import StepProcessor
from .core.tool_registry import ToolRegistry
from .api.endpoints import router, init_dependencies, WorkflowServices
from .storage.database import create_database_engine, create_session_factory, create_tables
from .storage.migrations import run_index_migrations
from .storage.store import SqlWorkflowStore
from .tools import register_default_tools
from .seeds import seed_default_workflows


class ApplicationState:
    """Container for application state and components."""

    def __init__(self, config: AppConfig):
        self.config = config
        self.engine: Optional[Engine] = None
        self.tool_registry: Optional[ToolRegistry] = None
        self.definition_service: Optional[WorkflowDefinitionService] = None
        self.execution_engine: Optional[WorkflowExecutionEngine] = None
        self.completion_client: Optional[CompletionClient] = None


def initialize_database(config: AppConfig, logger) -> Engine:
    """Create the database engine, tables and indexes."""
    try:
        engine = create_database_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )
        create_tables(engine)
        logger.info("Database tables created")

        try:
            run_index_migrations(engine)
            logger.info("Index migrations completed")
        except Exception as e:
            logger.warning(f"Index migrations failed: {str(e)}")

        return engine

    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


def create_completion_client(config: AppConfig, logger) -> Optional[CompletionClient]:
    """Build the Anthropic completion client when an API key is configured."""
    if not config.anthropic_api_key:
        logger.warning("No Anthropic API key configured; ai_processing steps will fail")
        return None

    from .llm import AnthropicCompletionClient
    return AnthropicCompletionClient(
        api_key=config.anthropic_api_key,
        model=config.anthropic_model,
        max_tokens=config.anthropic_max_tokens
    )


def initialize_core_components(
    state: ApplicationState,
    logger,
    completion_client: Optional[CompletionClient] = None
) -> None:
    """Initialize the services of one application."""
    config = state.config
    try:
        session_factory = create_session_factory(state.engine)

        tool_registry = ToolRegistry(session_factory)
        register_default_tools(tool_registry)
        logger.info(f"Registered tools: {', '.join(sorted(tool_registry.list_tools()))}")

        definition_service = WorkflowDefinitionService(
            session_factory,
            default_retry_config=config.default_retry_config,
            default_timeout_minutes=config.default_step_timeout_minutes
        )

        if completion_client is None:
            completion_client = create_completion_client(config, logger)

        step_processor = StepProcessor(completion_client=completion_client, tool_invoker=tool_registry)
        execution_engine = WorkflowExecutionEngine(
            definitions=definition_service,
            store=SqlWorkflowStore(session_factory),
            step_processor=step_processor
        )

        state.tool_registry = tool_registry
        state.definition_service = definition_service
        state.execution_engine = execution_engine
        state.completion_client = completion_client

        logger.info("Core components initialized")

    except Exception as e:
        logger.error(f"Core components initialization failed: {e}")
        raise


def create_lifespan_handler(state: ApplicationState, completion_client: Optional[CompletionClient] = None):
    """Create the application lifespan handler for one application state."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = state.config
        setup_logging(
            level=config.log_level.value,
            log_file=config.log_file,
            log_format=config.log_format,
            structured=config.log_structured,
            max_size=config.log_max_size,
            backup_count=config.log_backup_count
        )
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            state.engine = initialize_database(config, logger)
            initialize_core_components(state, logger, completion_client)

            if config.seed_default_workflows:
                created = seed_default_workflows(state.definition_service)
                logger.info(f"Seeded {created} default workflow(s)")

            init_dependencies(app, WorkflowServices(
                definition_service=state.definition_service,
                execution_engine=state.execution_engine
            ))
            logger.info("Application startup completed successfully")

        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        logger.info(f"Shutting down {config.app_name}")
        if state.engine is not None:
            state.engine.dispose()

    return lifespan


def create_app(config: Optional[AppConfig] = None, completion_client: Optional[CompletionClient] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""

    # Use provided config or load from environment
    if config is None:
        config = get_config()

    validate_config(config)

    state = ApplicationState(config)

    app = FastAPI(
        title=config.app_name,
        description="Workflow execution core for business process automation",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(state, completion_client)
    )
    app.state.application = state

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.include_router(router)

    add_health_endpoints(app, state)

    return app


def add_health_endpoints(app: FastAPI, state: ApplicationState) -> None:
    """Add health check endpoints to the application."""
    config = state.config

    @app.get("/")
    def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    def health_check():
        """Health check including database connectivity."""
        database = "unavailable"
        if state.engine is not None:
            try:
                with state.engine.connect() as connection:
                    connection.execute(text("SELECT 1"))
                database = "healthy"
            except Exception as e:
                get_logger(__name__).error(f"Database health check failed: {str(e)}")
                database = "unhealthy"

        return {
            "status": "healthy" if database == "healthy" else "degraded",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version,
            "database": database,
            "tools": len(state.tool_registry.list_tools()) if state.tool_registry else 0
        }
