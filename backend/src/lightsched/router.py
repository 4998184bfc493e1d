"""API router exposing schedule management and trigger diagnostics."""

from __future__ import annotations

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from . import schemas
from .errors import NotFoundError, StoreUnavailableError, ValidationError
from .reconciler import Reconciler
from .registry import ScheduleRegistry
from .service import ScheduleService

router = APIRouter(prefix="/api")


def get_service(request: Request) -> ScheduleService:
    return request.app.state.service


def get_registry(request: Request) -> ScheduleRegistry:
    return request.app.state.registry


def get_reconciler(request: Request) -> Reconciler:
    return request.app.state.reconciler


ServiceDep = Annotated[ScheduleService, Depends(get_service)]
RegistryDep = Annotated[ScheduleRegistry, Depends(get_registry)]
ReconcilerDep = Annotated[Reconciler, Depends(get_reconciler)]


def _bad_request(exc: ValidationError) -> HTTPException:
    return HTTPException(status.HTTP_400_BAD_REQUEST, detail=exc.to_detail())


def _not_found() -> HTTPException:
    return HTTPException(status.HTTP_404_NOT_FOUND, detail="Schedule not found.")


def _unavailable(exc: StoreUnavailableError) -> HTTPException:
    return HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@router.get(
    "/schedules",
    response_model=schemas.ScheduleListResponse,
    tags=["schedules"],
)
async def list_schedules(service: ServiceDep) -> schemas.ScheduleListResponse:
    try:
        schedules = await service.list()
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    return schemas.ScheduleListResponse(schedules=schedules)


@router.post(
    "/schedules",
    response_model=schemas.ScheduleDefinition,
    status_code=status.HTTP_201_CREATED,
    tags=["schedules"],
)
async def create_schedule(
    payload: schemas.ScheduleCreateRequest,
    service: ServiceDep,
) -> schemas.ScheduleDefinition:
    try:
        return await service.create(payload)
    except ValidationError as exc:
        raise _bad_request(exc) from exc
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc


@router.get(
    "/schedules/{schedule_id}",
    response_model=schemas.ScheduleDefinition,
    tags=["schedules"],
)
async def get_schedule(schedule_id: str, service: ServiceDep) -> schemas.ScheduleDefinition:
    try:
        return await service.get(schedule_id)
    except NotFoundError as exc:
        raise _not_found() from exc
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc


@router.put(
    "/schedules/{schedule_id}",
    response_model=schemas.ScheduleDefinition,
    tags=["schedules"],
)
async def replace_schedule(
    schedule_id: str,
    payload: schemas.ScheduleCreateRequest,
    service: ServiceDep,
) -> schemas.ScheduleDefinition:
    return await _update(service, schedule_id, payload)


@router.patch(
    "/schedules/{schedule_id}",
    response_model=schemas.ScheduleDefinition,
    tags=["schedules"],
)
async def update_schedule(
    schedule_id: str,
    payload: schemas.ScheduleUpdateRequest,
    service: ServiceDep,
) -> schemas.ScheduleDefinition:
    if not payload.model_dump(exclude_unset=True):
        raise HTTPException(
            status.HTTP_400_BAD_REQUEST, detail="No fields provided for update."
        )
    return await _update(service, schedule_id, payload)


async def _update(
    service: ScheduleService,
    schedule_id: str,
    payload: schemas.ScheduleCreateRequest | schemas.ScheduleUpdateRequest,
) -> schemas.ScheduleDefinition:
    try:
        return await service.update(schedule_id, payload)
    except ValidationError as exc:
        raise _bad_request(exc) from exc
    except NotFoundError as exc:
        raise _not_found() from exc
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc


@router.delete(
    "/schedules/{schedule_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    tags=["schedules"],
)
async def delete_schedule(schedule_id: str, service: ServiceDep) -> Response:
    try:
        await service.delete(schedule_id)
    except NotFoundError as exc:
        raise _not_found() from exc
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/triggers",
    response_model=schemas.TriggerListResponse,
    tags=["triggers"],
)
async def list_triggers(registry: RegistryDep) -> schemas.TriggerListResponse:
    return schemas.TriggerListResponse(
        triggers=[snapshot.to_schema() for snapshot in registry.list()]
    )


@router.get(
    "/triggers/{schedule_id}",
    response_model=schemas.TriggerStatus,
    tags=["triggers"],
)
async def get_trigger(schedule_id: str, registry: RegistryDep) -> schemas.TriggerStatus:
    snapshot = registry.get(schedule_id)
    if snapshot is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Trigger not found.")
    return snapshot.to_schema()


@router.post(
    "/reconcile",
    response_model=schemas.ReconcileReportResponse,
    tags=["triggers"],
)
async def reconcile(reconciler: ReconcilerDep) -> schemas.ReconcileReportResponse:
    try:
        report = await reconciler.reconcile_once()
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    return report.to_schema()
