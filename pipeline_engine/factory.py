"""Application factory for creating FastAPI instances."""

from contextlib import asynccontextmanager
from typing import Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.endpoints import init_dependencies, router
from .api.middleware import ErrorHandlingMiddleware, PerformanceMonitoringMiddleware
from .config import AppConfig, get_config, validate_config
from .core.dispatcher import NodeDispatcher, build_default_dispatcher
from .core.execution_engine import ExecutionEngine
from .core.logging import configure_logging, get_logger
from .core.scheduler import ExecutionSettings
from .services.client import ServiceClient
from .services.delivery import DeliveryTarget, DirectoryDelivery
from .services.http_client import HttpServiceClient
from .storage.base import WorkflowStore
from .storage.database import create_tables, get_database_engine, get_session_factory
from .storage.sql_store import SqlWorkflowStore


class ApplicationState:
    """Container for application components."""

    def __init__(
        self,
        config: AppConfig,
        store: WorkflowStore,
        dispatcher: NodeDispatcher,
        engine: ExecutionEngine,
        clients: Optional[Dict[str, ServiceClient]] = None
    ):
        self.config = config
        self.store = store
        self.dispatcher = dispatcher
        self.engine = engine
        self.clients = clients or {}

    async def aclose(self) -> None:
        logger = get_logger(__name__)
        await self.engine.shutdown()
        for name, client in self.clients.items():
            try:
                await client.aclose()
            except Exception as e:
                logger.error(f"Error closing service client '{name}': {str(e)}")


def build_components(
    config: AppConfig,
    store: Optional[WorkflowStore] = None,
    clients: Optional[Dict[str, ServiceClient]] = None,
    delivery: Optional[DeliveryTarget] = None
) -> ApplicationState:
    """Wire store, service clients, dispatcher and engine from configuration."""
    logger = get_logger(__name__)

    if store is None:
        db_engine = get_database_engine(
            config.database_url,
            echo=config.database_echo,
            connect_args=config.get_database_connect_args()
        )
        create_tables(db_engine)
        logger.info("Database tables created")
        store = SqlWorkflowStore(get_session_factory(db_engine))

    if clients is None:
        clients = {}
        if config.service_base_url:
            clients["*"] = HttpServiceClient(
                config.service_base_url,
                api_key=config.service_api_key,
                timeout=config.service_timeout
            )
        else:
            logger.warning("No service_base_url configured; processing nodes will fail at dispatch")

    if delivery is None:
        delivery = DirectoryDelivery(config.download_dir)

    dispatcher = build_default_dispatcher(clients, store=store, delivery=delivery)
    engine = ExecutionEngine(
        store,
        dispatcher,
        settings=ExecutionSettings.from_config(config),
        history_size=config.run_history_size
    )
    logger.info(f"Core components initialized; handlers for: {', '.join(dispatcher.registered_types)}")
    return ApplicationState(config, store, dispatcher, engine, clients)


def create_lifespan_handler(config: AppConfig, state: Optional[ApplicationState] = None):
    """Create application lifespan handler."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = get_logger(__name__)
        logger.info(f"Starting {config.app_name} v{config.app_version}")

        try:
            components = state or build_components(config)
        except Exception as e:
            logger.error(f"Application startup failed: {e}")
            raise

        app.state.components = components
        init_dependencies(components.store, components.engine)
        logger.info("Application startup completed successfully")

        yield

        logger.info(f"Shutting down {config.app_name}")
        await components.aclose()
        logger.info("Execution engine shutdown completed")

    return lifespan


def create_app(config: Optional[AppConfig] = None, state: Optional[ApplicationState] = None) -> FastAPI:
    """Create and configure FastAPI application instance."""

    # Use provided config or load from environment
    if config is None:
        config = get_config()

    validate_config(config)
    configure_logging(config)

    app = FastAPI(
        title=config.app_name,
        description="Validates and executes node-based media generation workflows",
        version=config.app_version,
        debug=config.debug,
        lifespan=create_lifespan_handler(config, state)
    )

    if config.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=config.cors_origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
        )

    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(PerformanceMonitoringMiddleware, slow_request_threshold=config.slow_request_threshold)

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
        components: Optional[ApplicationState] = getattr(app.state, "components", None)
        return {
            "status": "healthy",
            "service": config.app_name.lower().replace(" ", "-"),
            "version": config.app_version,
            "active_runs": len(components.engine.active_runs()) if components else 0,
        }
