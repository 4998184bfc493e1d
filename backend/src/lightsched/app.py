"""FastAPI application wiring the schedule lifecycle components together."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings
from .device_control import DeviceControlClient
from .dispatcher import ActionDispatcher, Dispatcher
from .errors import StoreUnavailableError
from .reconciler import Reconciler
from .registry import ScheduleRegistry
from .router import router as api_router
from .schemas import ACTION_COMMANDS, HealthResponse
from .service import ScheduleService
from .store import ScheduleStore, get_schedule_store
from .trigger import Clock
from .utils import configure_logging, logger


def _open_store() -> ScheduleStore:
    try:
        return get_schedule_store()
    except SQLAlchemyError as exc:
        raise StoreUnavailableError(f"Schedule store unavailable: {exc}") from exc


def _field_from_location(location: tuple[int | str, ...]) -> str:
    # Discriminated unions add the tag name to the location.
    skipped = {"body", "query", "path", *ACTION_COMMANDS}
    parts = [str(part) for part in location if part not in skipped]
    return ".".join(parts) or "body"


def create_app(
    *,
    settings: Settings | None = None,
    store: ScheduleStore | None = None,
    dispatcher: ActionDispatcher | None = None,
    clock: Clock | None = None,
    start_reconciler: bool = True,
) -> FastAPI:
    """Build the application.

    Collaborators default to the environment-configured implementations;
    tests pass fakes for the store, dispatcher and clock.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging()
        resolved_settings = settings or Settings.from_env()
        schedule_store = store or _open_store()

        client: DeviceControlClient | None = None
        action_dispatcher = dispatcher
        if action_dispatcher is None:
            client = DeviceControlClient.from_settings(resolved_settings)
            action_dispatcher = Dispatcher(client)

        registry = ScheduleRegistry(action_dispatcher, clock=clock)
        reconciler = Reconciler(
            store=schedule_store,
            registry=registry,
            interval_seconds=resolved_settings.reconcile_interval_seconds,
        )
        service = ScheduleService(
            schedule_store,
            registry,
            default_timezone=resolved_settings.default_timezone,
            clock=clock,
        )

        # An unreachable store at startup is fatal.
        report = await reconciler.reconcile_once(startup=True)
        if report.skipped:
            logger.bind(skipped=report.skipped).warning(
                "Some persisted schedules could not be activated"
            )

        app.state.settings = resolved_settings
        app.state.store = schedule_store
        app.state.registry = registry
        app.state.reconciler = reconciler
        app.state.service = service

        if start_reconciler:
            await reconciler.start()
        logger.bind(triggers=len(registry)).info("Schedule service started")
        try:
            yield
        finally:
            await reconciler.stop()
            await registry.shutdown()
            if client is not None:
                client.close()
            logger.info("Schedule service stopped")

    app = FastAPI(
        title="Light Schedule API",
        version="1.0.0",
        description=(
            "HTTP API for managing recurring device schedules and inspecting "
            "the triggers that fire them."
        ),
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        first = errors[0] if errors else {}
        detail = {
            "field": _field_from_location(tuple(first.get("loc", ()))),
            "message": first.get("msg", "Invalid request."),
        }
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": detail})

    app.include_router(api_router)

    @app.get("/health", response_model=HealthResponse, tags=["health"])
    async def health(request: Request) -> HealthResponse:
        """Readiness check; degraded when the store cannot be reached."""
        service: ScheduleService = request.app.state.service
        schedules = await service.count_persisted()
        return HealthResponse(
            status="ok" if schedules is not None else "degraded",
            triggers=len(service.registry),
            schedules=schedules,
        )

    return app


app = create_app()
