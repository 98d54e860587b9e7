"""Application entry point for the mail gateway.

Builds the shared services (audit trail, config store, trust store,
security layer, router, inbound pipeline) from ``Settings`` and serves the
admin API, health checks, metrics and an inbound-email hook with FastAPI.

Configures:
- **structlog** with JSON rendering (production) or colored console (development)
- **Sentry** forwarding of ERROR events when ``SENTRY_DSN`` is set
- **Prometheus** ``/metrics`` via prometheus-fastapi-instrumentator
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator, Mapping
from contextlib import asynccontextmanager
from typing import Any

import structlog
import uvicorn
from fastapi import Depends, FastAPI, Request

from mailgate.admin.router import require_admin_token
from mailgate.admin.router import router as admin_router
from mailgate.audit.logger import SecurityAuditLogger
from mailgate.audit.store import close_audit_db, init_audit_db
from mailgate.config import Settings, get_settings, validate_settings
from mailgate.domain.models import EmailData
from mailgate.health import register_health_routes
from mailgate.observability.metrics import setup_metrics
from mailgate.observability.middleware import SERVICE_NAME, RequestIdMiddleware
from mailgate.observability.sentry import get_sentry_processor, init_sentry
from mailgate.pipeline import InboundPipeline, PipelineOutcome
from mailgate.routing.router import EmailRouter
from mailgate.security.defaults import load_agents_file, seed_agent_configs
from mailgate.security.layer import SecurityLayer
from mailgate.security.store import (
    ConfigStore,
    InMemoryConfigStore,
    SqliteConfigStore,
    init_config_db,
)
from mailgate.security.trust import HttpTrustStore, InMemoryTrustStore, TrustStore

logger = structlog.get_logger()


def configure_logging(production: bool = False, sentry_dsn: str = "") -> None:
    """Configure structlog for production (JSON) or development (console).

    Production mode (*production=True*): JSON rendering at INFO level.
    Development mode: colored console rendering at DEBUG level.  When
    *sentry_dsn* is set, ERROR events are also forwarded to Sentry.

    Args:
        production: Enable production mode if ``True``.
        sentry_dsn: Sentry DSN; empty disables Sentry.
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
    ]

    if init_sentry(sentry_dsn, production=production):
        shared_processors.append(get_sentry_processor())

    shared_processors += [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if production:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
        log_level = logging.INFO
    else:
        renderer = structlog.dev.ConsoleRenderer()
        log_level = logging.DEBUG

    structlog.configure(
        processors=[*shared_processors, renderer],
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.bind_contextvars(service=SERVICE_NAME)


def initialize_services(
    settings: Settings | None = None,
    handlers: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Set up all shared services for the application.

    Creates the audit database and logger, the agent config store (SQLite
    when ``CONFIG_DB_PATH`` is set, in-memory otherwise), the trust store
    (HTTP when ``TRUST_STORE_URL`` is set), the security layer seeded from
    the agents file, the router, and the inbound pipeline.

    Args:
        settings: Application settings.  If ``None``, ``get_settings()`` is used.
        handlers: Business handlers keyed by agent name.

    Returns:
        A dict of initialized service instances keyed by name.
    """
    if settings is None:
        settings = get_settings()

    services: dict[str, Any] = {"_settings": settings}

    # a. Audit trail
    audit_db_path = settings.audit_db_path
    audit_db_path.parent.mkdir(parents=True, exist_ok=True)
    audit_conn = init_audit_db(audit_db_path)
    services["audit_conn"] = audit_conn
    audit_logger = SecurityAuditLogger(audit_conn)
    services["audit_logger"] = audit_logger

    # b. Agent configuration store
    config_store: ConfigStore
    if settings.config_db_path is not None:
        settings.config_db_path.parent.mkdir(parents=True, exist_ok=True)
        config_conn = init_config_db(settings.config_db_path)
        services["config_conn"] = config_conn
        config_store = SqliteConfigStore(config_conn)
        store_is_atomic = True
        logger.info("config_store_initialized", backend="sqlite", path=str(settings.config_db_path))
    else:
        config_store = InMemoryConfigStore()
        store_is_atomic = False
        logger.info("config_store_initialized", backend="memory")
    services["config_store"] = config_store

    # c. Trust store
    trust_store: TrustStore
    if settings.trust_store_url:
        trust_store = HttpTrustStore(settings.trust_store_url)
        logger.info("trust_store_initialized", backend="http", url=settings.trust_store_url)
    else:
        trust_store = InMemoryTrustStore()
        logger.info("trust_store_initialized", backend="memory")
    services["trust_store"] = trust_store

    # d. Security layer, seeded from the agents file
    security_layer = SecurityLayer(
        config_store,
        store_is_atomic=store_is_atomic,
        trust_store=trust_store,
        audit_logger=audit_logger,
        window_seconds=settings.rate_limit_window_seconds,
        trust_lookup_timeout=settings.trust_lookup_timeout_seconds,
    )
    services["security_layer"] = security_layer

    agents_file = load_agents_file(settings.agents_config_path)
    services["agents_file"] = agents_file
    seed_agent_configs(security_layer, agents_file)

    # e. Router and inbound pipeline
    router = EmailRouter(agents_file.routing_addresses(settings.service_domain))
    services["router"] = router
    services["pipeline"] = InboundPipeline(
        router,
        security_layer,
        handlers or {},
        agent_for_mailbox=agents_file.agent_for_mailbox,
    )

    logger.info(
        "services_initialized",
        service_domain=settings.service_domain,
        handlers=sorted(handlers or {}),
    )
    return services


async def close_services(services: dict[str, Any]) -> None:
    """Release database connections and HTTP clients held by *services*."""
    trust_store = services.get("trust_store")
    if isinstance(trust_store, HttpTrustStore):
        await trust_store.aclose()

    config_conn = services.pop("config_conn", None)
    if config_conn is not None:
        config_conn.close()
        logger.info("config_db_closed")

    audit_conn = services.pop("audit_conn", None)
    if audit_conn is not None:
        close_audit_db(audit_conn)
        logger.info("audit_db_closed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Lifespan context manager for FastAPI startup and shutdown.

    On shutdown: closes the databases and the trust store's HTTP client.
    """
    logger.info("application_starting")
    yield
    await close_services(app.state.services)


def create_app(services: dict[str, Any]) -> FastAPI:
    """Create the FastAPI app with admin, health, metrics and inbound routes.

    Args:
        services: The initialized services dict from ``initialize_services``.

    Returns:
        The configured FastAPI application.
    """
    fastapi_app = FastAPI(title="Mailgate", lifespan=lifespan)
    fastapi_app.state.services = services
    fastapi_app.state.settings = services.get("_settings") or get_settings()
    fastapi_app.add_middleware(RequestIdMiddleware)
    fastapi_app.include_router(admin_router)
    register_health_routes(fastapi_app)
    setup_metrics(fastapi_app)

    @fastapi_app.post("/api/inbound", dependencies=[Depends(require_admin_token)])
    async def inbound_email(email: EmailData, request: Request) -> PipelineOutcome:
        """Route and process one message handed over by an ingestion component."""
        pipeline: InboundPipeline = request.app.state.services["pipeline"]
        return await pipeline.process(email)

    return fastapi_app


async def main() -> None:
    """Main entry point: configure, initialize, and serve.

    1. Configure logging
    2. Validate settings
    3. Initialize services
    4. Serve the FastAPI app with uvicorn
    """
    settings = get_settings()
    configure_logging(production=settings.production, sentry_dsn=settings.sentry_dsn)
    logger.info("application_starting", production=settings.production)

    validate_settings(settings)

    services = initialize_services(settings)
    fastapi_app = create_app(services)

    config = uvicorn.Config(
        fastapi_app,
        host="0.0.0.0",
        port=settings.admin_port,
        log_level="info",
    )
    server = uvicorn.Server(config)
    try:
        await server.serve()
    finally:
        await close_services(services)


def run() -> None:
    """Console-script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
