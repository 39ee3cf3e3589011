"""Core of a manufacturing execution system client.

This package provides the data models, persistence helpers and services
behind the system management screens: department and permission trees
with cycle-safe reparenting and materialized paths, and live-filtered
entity lists.
"""

from .domain import (
    Department,
    DepartmentStatus,
    Employee,
    EmployeeStatus,
    HierarchicalEntity,
    OperationLog,
    Permission,
    PermissionType,
)
from .filtering import DateRange, FilterCriteria, LiveFilter
from .hierarchy import (
    CycleDetected,
    EntityNotFound,
    HasChildren,
    HasDependents,
    HierarchyError,
    InvalidReparent,
    TreeNode,
    build_forest,
)
from .repository import EntityStore
from .services import HierarchyOptions, HierarchyService, MESService

__all__ = [
    "Department",
    "DepartmentStatus",
    "Employee",
    "EmployeeStatus",
    "HierarchicalEntity",
    "OperationLog",
    "Permission",
    "PermissionType",
    "DateRange",
    "FilterCriteria",
    "LiveFilter",
    "CycleDetected",
    "EntityNotFound",
    "HasChildren",
    "HasDependents",
    "HierarchyError",
    "InvalidReparent",
    "TreeNode",
    "build_forest",
    "EntityStore",
    "HierarchyOptions",
    "HierarchyService",
    "MESService",
]
