"""Application factory for creating FastAPI instances."""

from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from .config import AppConfig, get_config, validate_config
from .core.action_registry import ActionRegistry
from .core.condition_evaluator import ConditionEvaluator
from .core.logging import get_logger, setup_logging
from .core.middleware import ErrorHandlingMiddleware
from .core.orchestrator import WorkflowOrchestrator
from .core.resumer import WorkflowResumer
from .core.trigger import WorkflowExecutionService
from .core.workflow_manager import WorkflowManager
from .storage.database import configure_database, create_tables
from .storage.repository import WorkflowStore
from .api.endpoints import router, init_dependencies

logger = get_logger(__name__)


class ApplicationState:
    """Engine components shared by the API, the CLI and the resume job."""

    def __init__(self):
        self.config: Optional[AppConfig] = None
        self.store: Optional[WorkflowStore] = None
        self.action_registry: Optional[ActionRegistry] = None
        self.orchestrator: Optional[WorkflowOrchestrator] = None
        self.workflow_manager: Optional[WorkflowManager] = None
        self.execution_service: Optional[WorkflowExecutionService] = None
        self.resumer: Optional[WorkflowResumer] = None


def initialize_database(config: AppConfig) -> None:
    """Bind the global engine to the configured database and create missing tables."""
    configure_database(config.database_url, echo=config.database_echo)
    create_tables()
    logger.info(f"Database ready at {config.database_type.value} URL")


def initialize_core_components(
    config: AppConfig,
    action_registry: Optional[ActionRegistry] = None,
    store: Optional[WorkflowStore] = None
) -> ApplicationState:
    """Build the engine components around one shared store."""
    state = ApplicationState()
    state.config = config
    state.store = store or WorkflowStore()
    state.action_registry = action_registry or ActionRegistry()
    state.orchestrator = WorkflowOrchestrator(
        store=state.store,
        action_registry=state.action_registry,
        config=config
    )
    state.workflow_manager = WorkflowManager(state.store)
    state.execution_service = WorkflowExecutionService(store=state.store, orchestrator=state.orchestrator)
    state.resumer = WorkflowResumer(orchestrator=state.orchestrator, store=state.store)
    return state


def create_lifespan_handler(config: AppConfig, action_registry: Optional[ActionRegistry] = None):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(config)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            initialize_database(config)

            state = initialize_core_components(config, action_registry)
            app.state.engine = state

            init_dependencies(
                workflow_manager=state.workflow_manager,
                execution_service=state.execution_service,
                resumer=state.resumer,
                store=state.store,
                condition_evaluator=ConditionEvaluator()
            )
            logger.info("Application startup completed successfully")
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        yield

        logger.info(f"Shutting down {config.app_name}")

    return lifespan


def create_app(config: Optional[AppConfig] = None, action_registry: Optional[ActionRegistry] = None) -> FastAPI:
    """Create and configure FastAPI application instance.

    Args:
        config: Application settings; loaded from the environment when omitted
        action_registry: Delegates for action and approval nodes; the built-in
            registry is used when omitted
    """
    if config is None:
        config = get_config()

    validate_config(config)

    app = FastAPI(
        title=config.app_name,
        description="Graph-based workflow execution engine for form-driven business processes",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, action_registry)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=config.cors_methods,
            allow_headers=["*"],
        )

    app.add_middleware(ErrorHandlingMiddleware)

    app.include_router(router)

    add_health_endpoints(app, config)

    return app


def add_health_endpoints(app: FastAPI, config: AppConfig) -> None:
    """Add health check endpoints to the application."""

    @app.get("/")
    async def root():
        """Root endpoint for basic health check."""
        return {"message": f"{config.app_name} is running", "version": config.app_version}

    @app.get("/health")
    async def health_check():
        """Basic health check endpoint."""
        return {
            "status": "healthy",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version
        }