"""FastAPI-based HTTP interface for the system management screens."""

from __future__ import annotations

from dataclasses import asdict
from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional

from fastapi import FastAPI, Form, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from ..domain import PermissionType
from ..hierarchy import (
    CycleDetected,
    EntityNotFound,
    HasChildren,
    HasDependents,
    HierarchyError,
    InvalidReparent,
)
from ..repository import DuplicateRecordError, RecordNotFoundError
from ..services import HierarchyService, MESService
from ..storage import MESDatabase

ERROR_STATUS = {
    EntityNotFound: 404,
    HasChildren: 409,
    HasDependents: 409,
    CycleDetected: 409,
    InvalidReparent: 400,
}


def create_app(database_path: str = "mes.sqlite3", *, seed_demo_data: bool = True) -> FastAPI:
    database = MESDatabase(database_path)
    service = MESService(
        department_store=database.departments,
        permission_store=database.permissions,
        employee_store=database.employees,
        role_permission_store=database.role_permissions,
        operation_log_store=database.operation_logs,
    )
    if seed_demo_data:
        ensure_demo_data(service)

    app = FastAPI(title="MES System Management")
    app.state.mes_service = service
    app.state.database = database

    @app.on_event("shutdown")
    async def shutdown_event() -> None:  # pragma: no cover - framework hook
        database.close()

    @app.exception_handler(HierarchyError)
    async def hierarchy_error_handler(request: Request, exc: HierarchyError):
        status_code = ERROR_STATUS.get(type(exc), 400)
        return JSONResponse(
            status_code=status_code,
            content={
                "detail": str(exc),
                "error": type(exc).__name__,
                "entity_id": exc.entity_id,
            },
        )

    @app.exception_handler(RecordNotFoundError)
    async def not_found_handler(request: Request, exc: RecordNotFoundError):
        return JSONResponse(
            status_code=404,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    @app.exception_handler(DuplicateRecordError)
    async def duplicate_handler(request: Request, exc: DuplicateRecordError):
        return JSONResponse(
            status_code=409,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    @app.exception_handler(ValueError)
    async def validation_handler(request: Request, exc: ValueError):
        return JSONResponse(
            status_code=422,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    # ------------------------------------------------------------------
    # Departments
    # ------------------------------------------------------------------
    @app.get("/departments/tree")
    async def department_tree(request: Request):
        service: MESService = request.app.state.mes_service
        return tree_payload(service.department_hierarchy)

    @app.get("/departments")
    async def department_list(
        request: Request,
        keyword: str = "",
        status: int = 0,
    ):
        service: MESService = request.app.state.mes_service
        view = service.department_filter()
        try:
            view.set_keyword(keyword)
            view.set_criterion("status", status)
            return list_payload(view)
        finally:
            view.close()

    @app.post("/departments")
    async def create_department(
        request: Request,
        name: str = Form(...),
        code: str = Form(...),
        parent_id: str = Form(""),
        sort_order: int = Form(0),
        leader: str = Form(""),
        phone: str = Form(""),
        email: str = Form(""),
        remark: str = Form(""),
    ):
        service: MESService = request.app.state.mes_service
        department = service.create_department(
            name=name,
            code=code,
            parent_id=parse_optional_id(parent_id),
            sort_order=sort_order,
            leader=leader,
            phone=phone,
            email=email,
            remark=remark,
        )
        return JSONResponse(status_code=201, content=serialize(department))

    @app.post("/departments/{department_id}/move")
    async def move_department(
        department_id: int,
        request: Request,
        parent_id: str = Form(""),
    ):
        service: MESService = request.app.state.mes_service
        department = service.department_hierarchy.reparent(
            department_id, parse_optional_id(parent_id)
        )
        return serialize(department)

    @app.post("/departments/{department_id}/delete")
    async def delete_department(department_id: int, request: Request):
        service: MESService = request.app.state.mes_service
        service.department_hierarchy.delete(department_id)
        return {"deleted": department_id}

    @app.get("/departments/{department_id}/candidate-parents")
    async def department_candidate_parents(department_id: int, request: Request):
        service: MESService = request.app.state.mes_service
        candidates = service.department_hierarchy.candidate_parents(department_id)
        return {"items": [serialize(item) for item in candidates]}

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------
    @app.get("/permissions/tree")
    async def permission_tree(request: Request):
        service: MESService = request.app.state.mes_service
        return tree_payload(service.permission_hierarchy)

    @app.get("/permissions")
    async def permission_list(
        request: Request,
        keyword: str = "",
        permission_type: int = 0,
    ):
        service: MESService = request.app.state.mes_service
        view = service.permission_filter()
        try:
            view.set_keyword(keyword)
            view.set_criterion("permission_type", permission_type)
            return list_payload(view)
        finally:
            view.close()

    @app.post("/permissions")
    async def create_permission(
        request: Request,
        name: str = Form(...),
        code: str = Form(...),
        permission_type: int = Form(int(PermissionType.MENU)),
        parent_id: str = Form(""),
        sort_order: int = Form(0),
        route_path: str = Form(""),
        component: str = Form(""),
        icon: str = Form(""),
        remark: str = Form(""),
    ):
        service: MESService = request.app.state.mes_service
        permission = service.create_permission(
            name=name,
            code=code,
            permission_type=PermissionType(permission_type),
            parent_id=parse_optional_id(parent_id),
            sort_order=sort_order,
            route_path=route_path,
            component=component,
            icon=icon,
            remark=remark,
        )
        return JSONResponse(status_code=201, content=serialize(permission))

    @app.post("/permissions/{permission_id}/move")
    async def move_permission(
        permission_id: int,
        request: Request,
        parent_id: str = Form(""),
    ):
        service: MESService = request.app.state.mes_service
        permission = service.permission_hierarchy.reparent(
            permission_id, parse_optional_id(parent_id)
        )
        return serialize(permission)

    @app.post("/permissions/{permission_id}/delete")
    async def delete_permission(permission_id: int, request: Request):
        service: MESService = request.app.state.mes_service
        service.permission_hierarchy.delete(permission_id)
        return {"deleted": permission_id}

    @app.get("/permissions/{permission_id}/candidate-parents")
    async def permission_candidate_parents(permission_id: int, request: Request):
        service: MESService = request.app.state.mes_service
        candidates = service.permission_hierarchy.candidate_parents(permission_id)
        return {"items": [serialize(item) for item in candidates]}

    # ------------------------------------------------------------------
    # Employees
    # ------------------------------------------------------------------
    @app.get("/employees")
    async def employee_list(
        request: Request,
        keyword: str = "",
        status: int = 0,
        department_id: Optional[int] = None,
        entry_from: Optional[str] = None,
        entry_to: Optional[str] = None,
    ):
        service: MESService = request.app.state.mes_service
        view = service.employee_filter()
        try:
            view.set_keyword(keyword)
            view.set_criterion("status", status)
            view.set_criterion("department_id", department_id)
            view.set_date_range(parse_date(entry_from), parse_date(entry_to))
            return list_payload(view)
        finally:
            view.close()

    return app


def serialize(entity: Any) -> Dict[str, Any]:
    payload = asdict(entity)
    for key, value in payload.items():
        if isinstance(value, (datetime, date)):
            payload[key] = value.isoformat()
        elif hasattr(value, "value") and not isinstance(value, bool):
            payload[key] = value.value
    return payload


def list_payload(items: Iterable[Any]) -> Dict[str, Any]:
    serialized = [serialize(item) for item in items]
    return {"items": serialized, "total": len(serialized)}


def tree_payload(hierarchy: HierarchyService) -> Dict[str, Any]:
    return {"roots": jsonable_encoder([root.to_dict() for root in hierarchy.forest])}


def parse_optional_id(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip() or value.strip() == "0":
        return None
    return int(value)


def parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return None


def ensure_demo_data(service: MESService) -> None:
    if len(service.departments) > 0:
        return

    head_office = service.create_department(
        name="Head Office", code="HQ", leader="Li Wei", sort_order=1
    )
    production = service.create_department(
        name="Production", code="PROD", parent_id=head_office.id, sort_order=1,
        leader="Zhang Min",
    )
    service.create_department(
        name="Machining Workshop", code="PROD-MW", parent_id=production.id,
        sort_order=1, leader="Chen Jie",
    )
    service.create_department(
        name="Assembly Workshop", code="PROD-AW", parent_id=production.id,
        sort_order=2, leader="Wang Fang",
    )
    quality = service.create_department(
        name="Quality", code="QA", parent_id=head_office.id, sort_order=2,
        leader="Zhao Lei",
    )
    service.register_employee(
        code="E0001", name="Sun Hao", department_id=quality.id, position="Inspector"
    )

    system = service.create_permission(
        name="System Management", code="system", route_path="/system", icon="settings"
    )
    for order, (name, code, component) in enumerate(
        [
            ("Departments", "system:department", "DepartmentManagementView"),
            ("Permissions", "system:permission", "PermissionManagementView"),
            ("Employees", "system:employee", "EmployeeManagementView"),
        ],
        start=1,
    ):
        menu = service.create_permission(
            name=name,
            code=code,
            parent_id=system.id,
            sort_order=order,
            route_path=f"/system/{code.split(':')[1]}",
            component=component,
        )
        service.create_permission(
            name=f"{name}: edit",
            code=f"{code}:edit",
            permission_type=PermissionType.BUTTON,
            parent_id=menu.id,
        )
