"""Service layer that composes the hierarchy and filter building blocks."""

from __future__ import annotations

import copy
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generic, List, Optional, Set, TypeVar

from .domain import (
    Department,
    DepartmentStatus,
    Employee,
    EmployeeStatus,
    HierarchicalEntity,
    OperationLog,
    OperationStatus,
    Permission,
    PermissionType,
    RolePermission,
)
from .filtering import ALL, FilterDefinition, LiveFilter, Selector
from .hierarchy import (
    DEFAULT_MAX_DEPTH,
    DEFAULT_PATH_DELIMITER,
    CycleGuard,
    EntityNotFound,
    InvalidReparent,
    ParentRule,
    PathMaterializer,
    TreeNode,
    build_forest,
    index_children,
)
from .repository import EntityStore, RecordNotFoundError

E = TypeVar("E", bound=HierarchicalEntity)

logger = logging.getLogger(__name__)

DEPARTMENT_FILTER = FilterDefinition(
    keyword_fields=("name", "code", "leader"),
    selectors=(Selector("status", "status", all_value=0),),
)
PERMISSION_FILTER = FilterDefinition(
    keyword_fields=("name", "code", "route_path", "component"),
    selectors=(Selector("permission_type", "permission_type", all_value=0),),
)
EMPLOYEE_FILTER = FilterDefinition(
    keyword_fields=("code", "name", "position", "phone", "email"),
    selectors=(
        Selector("status", "status", all_value=0),
        Selector("department_id", "department_id", all_value=None),
    ),
    date_field="entry_date",
)
OPERATION_LOG_FILTER = FilterDefinition(
    keyword_fields=("description", "request_method", "request_url", "operation_ip"),
    selectors=(
        Selector("module_type", "module_type", all_value=ALL),
        Selector("operation_type", "operation_type", all_value=ALL),
        Selector("status", "status", all_value=255),
    ),
    date_field="operation_time",
    sort_key=lambda log: log.operation_time,
    descending=True,
)


@dataclass(slots=True)
class HierarchyOptions:
    """Tuning values shared by every hierarchy service."""

    path_delimiter: str = DEFAULT_PATH_DELIMITER
    max_depth: int = DEFAULT_MAX_DEPTH

    def __post_init__(self) -> None:
        if not self.path_delimiter:
            raise ValueError("Path delimiter must not be empty")
        if self.max_depth < 1:
            raise ValueError("Maximum hierarchy depth must be at least 1")


@dataclass(slots=True)
class EditDraft(Generic[E]):
    """Detached working copy of an entity being edited in a form.

    The stored entity is not touched until the draft is saved; cancelling
    simply drops the copy.
    """

    entity: E
    is_new: bool
    closed: bool = False


class HierarchyService(Generic[E]):
    """Use-cases of one hierarchy: tree, reparent, delete and form editing.

    Structural mutations are serialized with a lock so that the
    check, mutate, rematerialize sequence of one operation never interleaves
    with another.
    """

    def __init__(
        self,
        store: EntityStore[E],
        *,
        factory: Callable[..., E],
        options: Optional[HierarchyOptions] = None,
        parent_rule: Optional[ParentRule] = None,
        validator: Optional[Callable[[E], None]] = None,
        label: str = "entity",
    ) -> None:
        self.store = store
        self.factory = factory
        self.parent_rule = parent_rule
        self.validator = validator
        self.label = label
        self._lock = threading.RLock()
        self._forest: List[TreeNode] = []
        self._forest_version: Optional[int] = None
        self.configure(options or HierarchyOptions())

    def configure(self, options: HierarchyOptions) -> None:
        previous = getattr(self, "options", None)
        self.options = options
        self.guard = CycleGuard(self.store, parent_rule=self.parent_rule)
        self.materializer = PathMaterializer(
            self.store,
            delimiter=options.path_delimiter,
            max_depth=options.max_depth,
        )
        self._forest_version = None
        if previous is not None and previous.path_delimiter != options.path_delimiter:
            with self._lock:
                self.materializer.rematerialize_all()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, entity_id: int) -> E:
        return self.guard.require(entity_id)

    def build_forest(self) -> List[TreeNode]:
        """Rebuild the tree from the current store contents."""

        forest = build_forest(self.store.get_all(), max_depth=self.options.max_depth)
        self._forest = forest
        self._forest_version = self.store.version
        return forest

    @property
    def forest(self) -> List[TreeNode]:
        """Tree for the current store version, rebuilt only after changes."""

        if self._forest_version != self.store.version:
            self.build_forest()
        return self._forest

    def can_reparent(self, entity_id: int, new_parent_id: Optional[int]) -> bool:
        return self.guard.can_reparent(entity_id, new_parent_id)

    def descendant_ids(self, entity_id: int) -> Set[int]:
        return self.guard.descendant_ids(entity_id)

    def subtree(self, entity_id: int) -> List[E]:
        """The entity followed by all of its descendants in pre-order."""

        root = self.get(entity_id)
        index = index_children(self.store.get_all())
        result: List[E] = []
        seen = set()
        stack = [root]
        while stack:
            entity = stack.pop()
            if entity.id in seen:
                continue
            seen.add(entity.id)
            result.append(entity)
            stack.extend(reversed(index.get(entity.id, [])))
        return result

    def ancestors(self, entity_id: int) -> List[E]:
        """Ancestors of ``entity_id``, root first."""

        entity = self.get(entity_id)
        lookup = {item.id: item for item in self.store.get_all()}
        chain: List[E] = []
        seen = {entity_id}
        current = lookup.get(entity.parent_id) if entity.parent_id is not None else None
        while current is not None and current.id not in seen:
            if len(chain) >= self.options.max_depth:
                break
            seen.add(current.id)
            chain.append(current)
            current = lookup.get(current.parent_id) if current.parent_id is not None else None
        chain.reverse()
        return chain

    def candidate_parents(self, entity_id: Optional[int] = None) -> List[E]:
        """Entities that ``entity_id`` (or a new entity) may be placed under."""

        excluded = set()
        if entity_id is not None:
            excluded = self.guard.descendant_ids(entity_id)
            excluded.add(entity_id)
        return [
            entity
            for entity in self.store.get_all()
            if entity.id not in excluded
            and (self.parent_rule is None or self.parent_rule(entity))
        ]

    # ------------------------------------------------------------------
    # Structural mutations
    # ------------------------------------------------------------------
    def _check_new_parent(self, entity: E) -> None:
        if entity.parent_id is None:
            return
        try:
            parent = self.store.get(entity.parent_id)
        except RecordNotFoundError as exc:
            raise EntityNotFound(
                f"Parent {self.label} {entity.parent_id!r} does not exist",
                entity_id=entity.parent_id,
            ) from exc
        if self.parent_rule is not None and not self.parent_rule(parent):
            raise InvalidReparent(
                f"{self.label.capitalize()} {parent.id} is not allowed to have children",
                entity_id=entity.id,
                parent_id=parent.id,
            )

    def add(self, entity: E) -> E:
        """Store a new entity and compute its materialized path."""

        with self._lock:
            self._check_new_parent(entity)
            stored = self.store.add(entity)
            try:
                self.materializer.rematerialize(stored.id)
            except Exception:
                logger.error("Could not compute path of new %s %s; removing it", self.label, stored.id)
                self.store.delete(stored.id)
                raise
            logger.info("Created %s %s under %s", self.label, stored.id, stored.parent_id)
            return self.store.get(stored.id)

    def reparent(self, entity_id: int, new_parent_id: Optional[int]) -> E:
        """Move ``entity_id`` under ``new_parent_id`` (``None`` promotes it to a root)."""

        with self._lock:
            entity = self.get(entity_id)
            if new_parent_id == entity.parent_id:
                return entity
            self.guard.check_reparent(entity_id, new_parent_id)
            moved = copy.copy(entity)
            moved.parent_id = new_parent_id
            self._touch(moved)
            self.store.update(moved)
            try:
                self.materializer.rematerialize(entity_id)
            except Exception:
                logger.error(
                    "Reparenting %s %s failed; restoring parent %s",
                    self.label,
                    entity_id,
                    entity.parent_id,
                )
                self.store.update(entity)
                raise
            logger.info(
                "Moved %s %s from %s to %s",
                self.label,
                entity_id,
                entity.parent_id,
                new_parent_id,
            )
            return self.store.get(entity_id)

    def delete(self, entity_id: int) -> None:
        """Delete a leaf entity that no external record depends on."""

        with self._lock:
            self.guard.ensure_deletable(entity_id)
            self.store.delete(entity_id)
            logger.info("Deleted %s %s", self.label, entity_id)

    def set_status(self, entity_id: int, status: Any) -> E:
        with self._lock:
            entity = copy.copy(self.get(entity_id))
            entity.status = status
            self._touch(entity)
            return self.store.update(entity)

    @staticmethod
    def _touch(entity: Any) -> None:
        if hasattr(entity, "updated_at"):
            entity.updated_at = datetime.now()

    # ------------------------------------------------------------------
    # Form editing
    # ------------------------------------------------------------------
    def new_draft(self, **fields: Any) -> EditDraft[E]:
        return EditDraft(entity=self.factory(**fields), is_new=True)

    def begin_edit(self, entity_id: int) -> EditDraft[E]:
        return EditDraft(entity=copy.deepcopy(self.get(entity_id)), is_new=False)

    def cancel(self, draft: EditDraft[E]) -> None:
        draft.closed = True

    def save(self, draft: EditDraft[E]) -> E:
        """Persist a draft: add it when new, otherwise merge it into the store."""

        if draft.closed:
            raise ValueError("This draft was already saved or cancelled")
        if self.validator is not None:
            self.validator(draft.entity)
        if draft.is_new:
            result = self.add(copy.deepcopy(draft.entity))
            draft.closed = True
            return result

        with self._lock:
            current = self.get(draft.entity.id)
            if draft.entity.parent_id != current.parent_id:
                self.guard.check_reparent(current.id, draft.entity.parent_id)
            merged = copy.deepcopy(draft.entity)
            merged.materialized_path = current.materialized_path
            self._touch(merged)
            self.store.update(merged)
            try:
                self.materializer.rematerialize(merged.id)
            except Exception:
                logger.error("Saving %s %s failed; restoring previous values", self.label, merged.id)
                self.store.update(current)
                raise
            draft.closed = True
            logger.info("Saved %s %s", self.label, merged.id)
            return self.store.get(merged.id)


def is_menu_permission(permission: Permission) -> bool:
    return permission.permission_type == PermissionType.MENU


class MESService:
    """Facade that exposes the system management use-cases to clients."""

    def __init__(
        self,
        department_store: Optional[EntityStore[Department]] = None,
        permission_store: Optional[EntityStore[Permission]] = None,
        employee_store: Optional[EntityStore[Employee]] = None,
        role_permission_store: Optional[EntityStore[RolePermission]] = None,
        operation_log_store: Optional[EntityStore[OperationLog]] = None,
        *,
        hierarchy_options: Optional[HierarchyOptions] = None,
    ) -> None:
        self.departments = department_store if department_store is not None else EntityStore()
        self.permissions = permission_store if permission_store is not None else EntityStore()
        self.employees = employee_store if employee_store is not None else EntityStore()
        self.role_permissions = (
            role_permission_store if role_permission_store is not None else EntityStore()
        )
        self.operation_logs = (
            operation_log_store if operation_log_store is not None else EntityStore()
        )
        self.departments.set_dependents_resolver(self.department_employees)
        self.permissions.set_dependents_resolver(self.permission_grants)
        self.hierarchy_options = hierarchy_options or HierarchyOptions()
        self.department_hierarchy: HierarchyService[Department] = HierarchyService(
            self.departments,
            factory=Department,
            options=self.hierarchy_options,
            validator=self._validate_department,
            label="department",
        )
        self.permission_hierarchy: HierarchyService[Permission] = HierarchyService(
            self.permissions,
            factory=Permission,
            options=self.hierarchy_options,
            parent_rule=is_menu_permission,
            validator=self._validate_permission,
            label="permission",
        )

    def update_hierarchy_options(
        self,
        *,
        path_delimiter: Optional[str] = None,
        max_depth: Optional[int] = None,
    ) -> HierarchyOptions:
        options = HierarchyOptions(
            path_delimiter=path_delimiter or self.hierarchy_options.path_delimiter,
            max_depth=max_depth if max_depth is not None else self.hierarchy_options.max_depth,
        )
        self.hierarchy_options = options
        self.department_hierarchy.configure(options)
        self.permission_hierarchy.configure(options)
        return options

    # ------------------------------------------------------------------
    # Dependents
    # ------------------------------------------------------------------
    def department_employees(self, department_id: int) -> List[Employee]:
        return self.employees.find_by("department_id", department_id)

    def permission_grants(self, permission_id: int) -> List[RolePermission]:
        return self.role_permissions.find_by("permission_id", permission_id)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    @staticmethod
    def _require_text(value: str, message: str) -> None:
        if not value or not value.strip():
            raise ValueError(message)

    def _validate_department(self, department: Department) -> None:
        self._require_text(department.name, "Department name is required")
        self._require_text(department.code, "Department code is required")
        existing = self.find_department_by_code(department.code)
        if existing is not None and existing.id != department.id:
            raise ValueError(f"Department code {department.code!r} is already in use")

    def _validate_permission(self, permission: Permission) -> None:
        self._require_text(permission.name, "Permission name is required")
        self._require_text(permission.code, "Permission code is required")
        existing = self.find_permission_by_code(permission.code)
        if existing is not None and existing.id != permission.id:
            raise ValueError(f"Permission code {permission.code!r} is already in use")

    # ------------------------------------------------------------------
    # Master data
    # ------------------------------------------------------------------
    def find_department_by_code(self, code: str) -> Optional[Department]:
        return self.departments.find(lambda department: department.code == code)

    def find_permission_by_code(self, code: str) -> Optional[Permission]:
        return self.permissions.find(lambda permission: permission.code == code)

    def create_department(
        self,
        name: str,
        code: str,
        *,
        parent_id: Optional[int] = None,
        sort_order: int = 0,
        leader: str = "",
        phone: str = "",
        email: str = "",
        remark: str = "",
    ) -> Department:
        draft = self.department_hierarchy.new_draft(
            name=name,
            code=code,
            parent_id=parent_id,
            sort_order=sort_order,
            leader=leader,
            phone=phone,
            email=email,
            remark=remark,
        )
        return self.department_hierarchy.save(draft)

    def create_permission(
        self,
        name: str,
        code: str,
        permission_type: PermissionType = PermissionType.MENU,
        *,
        parent_id: Optional[int] = None,
        sort_order: int = 0,
        route_path: str = "",
        component: str = "",
        icon: str = "",
        is_visible: bool = True,
        remark: str = "",
    ) -> Permission:
        draft = self.permission_hierarchy.new_draft(
            name=name,
            code=code,
            permission_type=permission_type,
            parent_id=parent_id,
            sort_order=sort_order,
            route_path=route_path,
            component=component,
            icon=icon,
            is_visible=is_visible,
            remark=remark,
        )
        return self.permission_hierarchy.save(draft)

    def register_employee(
        self,
        code: str,
        name: str,
        *,
        department_id: Optional[int] = None,
        position: str = "",
        phone: str = "",
        email: str = "",
        status: EmployeeStatus = EmployeeStatus.ACTIVE,
        entry_date: Optional[datetime] = None,
    ) -> Employee:
        self._require_text(code, "Employee code is required")
        self._require_text(name, "Employee name is required")
        if department_id is not None and department_id not in self.departments:
            raise RecordNotFoundError(f"Department {department_id!r} does not exist")
        employee = Employee(
            code=code,
            name=name,
            department_id=department_id,
            position=position,
            phone=phone,
            email=email,
            status=status,
            entry_date=entry_date or datetime.now(),
        )
        return self.employees.add(employee)

    def grant_permission(self, role_id: int, permission_id: int) -> RolePermission:
        if permission_id not in self.permissions:
            raise RecordNotFoundError(f"Permission {permission_id!r} does not exist")
        for grant in self.permission_grants(permission_id):
            if grant.role_id == role_id:
                return grant
        return self.role_permissions.add(
            RolePermission(role_id=role_id, permission_id=permission_id)
        )

    def record_operation_log(
        self,
        module_type: str,
        operation_type: str,
        description: str,
        *,
        request_method: str = "",
        request_url: str = "",
        operation_ip: str = "",
        operator: str = "",
        status: OperationStatus = OperationStatus.SUCCEEDED,
        operation_time: Optional[datetime] = None,
    ) -> OperationLog:
        log = OperationLog(
            module_type=module_type,
            operation_type=operation_type,
            description=description,
            request_method=request_method,
            request_url=request_url,
            operation_ip=operation_ip,
            operator=operator,
            status=status,
            operation_time=operation_time or datetime.now(),
        )
        return self.operation_logs.add(log)

    def disable_department(self, department_id: int) -> Department:
        return self.department_hierarchy.set_status(department_id, DepartmentStatus.DISABLED)

    # ------------------------------------------------------------------
    # List views
    # ------------------------------------------------------------------
    def department_filter(self) -> LiveFilter[Department]:
        return LiveFilter(self.departments, DEPARTMENT_FILTER)

    def permission_filter(self) -> LiveFilter[Permission]:
        return LiveFilter(self.permissions, PERMISSION_FILTER)

    def employee_filter(self) -> LiveFilter[Employee]:
        return LiveFilter(self.employees, EMPLOYEE_FILTER)

    def operation_log_filter(self) -> LiveFilter[OperationLog]:
        return LiveFilter(self.operation_logs, OPERATION_LOG_FILTER)


__all__ = [
    "DEPARTMENT_FILTER",
    "PERMISSION_FILTER",
    "EMPLOYEE_FILTER",
    "OPERATION_LOG_FILTER",
    "HierarchyOptions",
    "EditDraft",
    "HierarchyService",
    "MESService",
    "is_menu_permission",
]
