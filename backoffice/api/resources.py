from __future__ import annotations

from typing import Any, Callable, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from backoffice.core.deps import get_current_admin, require_role
from backoffice.db.session import get_db
from backoffice.schemas.query import ListQuery, ShowQuery
from backoffice.services.resource_service import ResourceService

ServiceFactory = Callable[[Session], ResourceService]

SHOW_LIST_PARAMS = ("with", "withCount", "append")


class BulkActionPayload(BaseModel):
    action: Literal["delete", "force_delete", "restore", "set_active"]
    ids: list[Any] = Field(default_factory=list)
    active: bool | None = None
    continue_on_rule_violation: bool | None = None


def _parse_key(key: str, raw: str) -> Any:
    if key != "id":
        return raw
    try:
        return int(raw)
    except ValueError:
        return raw


def _show_params(request: Request) -> dict[str, Any]:
    params: dict[str, Any] = {name: ",".join(request.query_params.getlist(name)) for name in SHOW_LIST_PARAMS}
    params["withTrashed"] = request.query_params.get("withTrashed")
    return params


def build_resource_router(service_factory: ServiceFactory, key: str = "id") -> APIRouter:
    """List/show/export/CRUD/bulk routes for one resource keyed by ``id`` or ``uuid``."""
    router = APIRouter()

    def get_service(db: Session = Depends(get_db)) -> ResourceService:
        return service_factory(db)

    def show(service: ResourceService, value: Any, show_query: ShowQuery) -> dict[str, Any]:
        return getattr(service, f"show_by_{key}")(value, show_query)

    @router.get("")
    def list_rows(request: Request, service: ResourceService = Depends(get_service), admin: dict = Depends(get_current_admin)):
        list_query = ListQuery.from_query_string_items(request.query_params.multi_items())
        return service.list(list_query).to_payload()

    @router.get("/export")
    def export_rows(
        request: Request,
        fmt: str = Query(default="csv", alias="format"),
        columns: str | None = Query(default=None),
        service: ResourceService = Depends(get_service),
        admin: dict = Depends(get_current_admin),
    ):
        list_query = ListQuery.from_query_string_items(request.query_params.multi_items())
        selected = [part.strip() for part in columns.split(",") if part.strip()] if columns else None
        result = service.export(list_query, fmt, selected)
        return StreamingResponse(result.stream, media_type=result.media_type, headers=result.headers)

    @router.get("/{record_key}")
    def get_row(
        record_key: str,
        request: Request,
        service: ResourceService = Depends(get_service),
        admin: dict = Depends(get_current_admin),
    ):
        return show(service, _parse_key(key, record_key), ShowQuery.from_params(_show_params(request)))

    @router.post("", status_code=201)
    def create_row(
        payload: dict[str, Any],
        service: ResourceService = Depends(get_service),
        admin: dict = Depends(get_current_admin),
    ):
        record = service.create(payload)
        return {"item": service.to_item(record)}

    @router.patch("/{record_key}")
    def update_row(
        record_key: str,
        payload: dict[str, Any],
        service: ResourceService = Depends(get_service),
        admin: dict = Depends(get_current_admin),
    ):
        data = dict(payload)
        expected = data.pop("expected_updated_at", None)
        record = service.repo.resolve(_parse_key(key, record_key), key=key)
        record = service.update(record, data, expected_version=expected)
        return {"item": service.to_item(record)}

    @router.delete("/{record_key}")
    def delete_row(
        record_key: str,
        force: bool = Query(default=False),
        service: ResourceService = Depends(get_service),
        admin: dict = Depends(get_current_admin),
    ):
        record = service.repo.resolve(_parse_key(key, record_key), key=key, with_trashed=force)
        deleted = service.force_delete(record) if force else service.delete(record)
        return {"deleted": deleted}

    @router.post("/{record_key}/restore")
    def restore_row(
        record_key: str,
        service: ResourceService = Depends(get_service),
        admin: dict = Depends(get_current_admin),
    ):
        record = service.repo.resolve(_parse_key(key, record_key), key=key, with_trashed=True)
        return {"restored": service.restore(record)}

    @router.post("/bulk")
    def bulk_action(
        payload: BulkActionPayload,
        service: ResourceService = Depends(get_service),
        admin: dict = Depends(require_role("ADMIN")),
    ):
        values = [_parse_key(key, str(value)) for value in payload.ids]
        suffix = f"by_{key}s"
        if payload.action == "set_active":
            if payload.active is None:
                raise HTTPException(status_code=400, detail='"active" is required for set_active')
            affected = getattr(service, f"bulk_set_active_{suffix}")(values, payload.active)
        elif payload.action == "restore":
            affected = getattr(service, f"bulk_restore_{suffix}")(values)
        else:
            method = getattr(service, f"bulk_{payload.action}_{suffix}")
            affected = method(values, continue_on_rule_violation=payload.continue_on_rule_violation)
        return {"action": payload.action, "affected": affected}

    return router
