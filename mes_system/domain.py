"""Core data structures for the manufacturing execution system client."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import IntEnum
from typing import Optional


class DepartmentStatus(IntEnum):
    """Lifecycle state of a department."""

    NORMAL = 1
    DISABLED = 2


class PermissionType(IntEnum):
    """Kinds of permissions managed in the permission tree."""

    MENU = 1
    BUTTON = 2
    DATA = 3


class PermissionStatus(IntEnum):
    ENABLED = 1
    DISABLED = 2


class EmployeeStatus(IntEnum):
    """Employment state used by the employee list filter."""

    ACTIVE = 1
    RESIGNED = 2
    ON_LEAVE = 3


class OperationStatus(IntEnum):
    """Outcome of an audited operation.

    ``FAILED`` is a real value, so the operation log filter uses 255 as
    its "all" sentinel instead of 0.
    """

    FAILED = 0
    SUCCEEDED = 1


@dataclass(slots=True)
class HierarchicalEntity:
    """Record taking part in a parent/child hierarchy.

    ``materialized_path`` is derived data: the ids of the ancestor chain
    joined by a delimiter, recomputed whenever the chain changes.
    """

    id: int = 0
    parent_id: Optional[int] = None
    sort_order: int = 0
    materialized_path: str = ""


@dataclass(slots=True)
class Department(HierarchicalEntity):
    """Organisational unit; employees are assigned to departments."""

    code: str = ""
    name: str = ""
    leader: str = ""
    phone: str = ""
    email: str = ""
    status: DepartmentStatus = DepartmentStatus.NORMAL
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None
    remark: str = ""


@dataclass(slots=True)
class Permission(HierarchicalEntity):
    """Menu, button or data permission arranged as a tree of menus."""

    code: str = ""
    name: str = ""
    permission_type: PermissionType = PermissionType.MENU
    route_path: str = ""
    component: str = ""
    icon: str = ""
    is_visible: bool = True
    status: PermissionStatus = PermissionStatus.ENABLED
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None
    remark: str = ""


@dataclass(slots=True)
class Employee:
    """Employee master data."""

    id: int = 0
    code: str = ""
    name: str = ""
    department_id: Optional[int] = None
    position: str = ""
    phone: str = ""
    email: str = ""
    status: EmployeeStatus = EmployeeStatus.ACTIVE
    entry_date: datetime = field(default_factory=datetime.now)
    remark: str = ""


@dataclass(slots=True)
class RolePermission:
    """Grant of a permission to a role."""

    id: int = 0
    role_id: int = 0
    permission_id: int = 0
    created_at: datetime = field(default_factory=datetime.now)


@dataclass(slots=True)
class OperationLog:
    """Audit trail entry written for user operations."""

    id: int = 0
    module_type: str = ""
    operation_type: str = ""
    description: str = ""
    request_method: str = ""
    request_url: str = ""
    operation_ip: str = ""
    operator: str = ""
    status: OperationStatus = OperationStatus.SUCCEEDED
    operation_time: datetime = field(default_factory=datetime.now)
    remark: str = ""


__all__ = [
    "DepartmentStatus",
    "PermissionType",
    "PermissionStatus",
    "EmployeeStatus",
    "OperationStatus",
    "HierarchicalEntity",
    "Department",
    "Permission",
    "Employee",
    "RolePermission",
    "OperationLog",
]
