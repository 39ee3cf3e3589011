import pytest

from mes_system.domain import Department, DepartmentStatus, PermissionType
from mes_system.hierarchy import (
    CycleDetected,
    EntityNotFound,
    HasChildren,
    HasDependents,
    InvalidReparent,
)
from mes_system.repository import EntityStore, RepositoryError
from mes_system.services import HierarchyOptions, HierarchyService, MESService
from mes_system.storage import MESDatabase


class FailingStore(EntityStore):
    """Store whose updates fail for one entity id once armed."""

    def __init__(self, fail_on: int) -> None:
        super().__init__()
        self.fail_on = fail_on
        self.armed = False

    def update(self, entity):
        if self.armed and entity.id == self.fail_on:
            raise RepositoryError("disk full")
        return super().update(entity)


def paths(service):
    return {entity.id: entity.materialized_path for entity in service.store}


class TestReparent:
    def test_move_below_grandparent_updates_parent_and_path(self, department_service):
        moved = department_service.reparent(3, 1)

        assert moved.parent_id == 1
        assert moved.materialized_path == "1/3"
        assert department_service.store.get(3).materialized_path == "1/3"

    def test_descendant_paths_follow_the_moved_entity(self):
        service = HierarchyService(EntityStore(), factory=Department)
        for entity_id, parent_id in [(1, None), (2, 1), (3, 2), (4, 3), (5, 4), (6, None)]:
            service.add(Department(id=entity_id, parent_id=parent_id))

        service.reparent(3, 6)

        by_id = {entity.id: entity for entity in service.store}
        for entity in by_id.values():
            if entity.parent_id is None:
                assert entity.materialized_path == str(entity.id)
            else:
                parent = by_id[entity.parent_id]
                assert entity.materialized_path == f"{parent.materialized_path}/{entity.id}"
        assert by_id[5].materialized_path == "6/3/4/5"

    def test_promote_to_root(self, department_service):
        department_service.reparent(2, None)

        assert paths(department_service) == {1: "1", 2: "2", 3: "2/3"}

    def test_reparent_to_current_parent_is_a_no_op(self, department_service):
        version = department_service.store.version

        result = department_service.reparent(3, 2)

        assert result.parent_id == 2
        assert department_service.store.version == version

    def test_cycle_is_rejected_without_mutation(self, department_service):
        before = paths(department_service)

        with pytest.raises(InvalidReparent):
            department_service.reparent(1, 3)

        assert department_service.store.get(1).parent_id is None
        assert paths(department_service) == before

    def test_missing_parent(self, department_service):
        with pytest.raises(EntityNotFound):
            department_service.reparent(3, 42)

    def test_forest_is_rebuilt_after_reparent(self, department_service):
        assert [node.id for node in department_service.forest[0].walk()] == [1, 2, 3]

        department_service.reparent(3, 1)

        root = department_service.forest[0]
        assert [child.id for child in root.children] == [2, 3]

    def test_failed_path_write_restores_previous_state(self):
        store = FailingStore(fail_on=3)
        service = HierarchyService(store, factory=Department)
        for entity_id, parent_id in [(1, None), (2, 1), (3, 2), (4, None)]:
            service.add(Department(id=entity_id, parent_id=parent_id))
        store.armed = True

        with pytest.raises(RepositoryError):
            service.reparent(2, 4)

        assert store.get(2).parent_id == 1
        assert paths(service) == {1: "1", 2: "1/2", 3: "1/2/3", 4: "4"}


class TestDelete:
    def test_entity_with_children_cannot_be_deleted(self, department_service):
        with pytest.raises(HasChildren):
            department_service.delete(2)

        assert 2 in department_service.store

    def test_leaves_can_be_deleted_bottom_up(self, department_service):
        department_service.delete(3)
        department_service.delete(2)

        assert [entity.id for entity in department_service.store] == [1]

    def test_department_with_employees_cannot_be_deleted(self, mes):
        department = mes.create_department(name="Quality", code="QA")
        mes.register_employee(code="E1", name="Sun Hao", department_id=department.id)

        with pytest.raises(HasDependents) as excinfo:
            mes.department_hierarchy.delete(department.id)

        assert len(excinfo.value.dependents) == 1
        assert department.id in mes.departments

    def test_deleting_missing_entity(self, department_service):
        with pytest.raises(EntityNotFound):
            department_service.delete(99)


class TestDrafts:
    def test_cancelled_edit_leaves_store_untouched(self, department_service):
        draft = department_service.begin_edit(2)
        draft.entity.name = "Renamed"
        draft.entity.parent_id = None

        department_service.cancel(draft)

        stored = department_service.store.get(2)
        assert stored.name == ""
        assert stored.parent_id == 1
        with pytest.raises(ValueError):
            department_service.save(draft)

    def test_saving_edit_with_new_parent_reparents(self, department_service):
        draft = department_service.begin_edit(3)
        draft.entity.name = "Machining"
        draft.entity.parent_id = 1

        saved = department_service.save(draft)

        assert saved.name == "Machining"
        assert saved.materialized_path == "1/3"
        assert saved.updated_at is not None
        assert draft.closed

    def test_saving_edit_onto_descendant_is_rejected(self, department_service):
        draft = department_service.begin_edit(1)
        draft.entity.parent_id = 3

        with pytest.raises(InvalidReparent):
            department_service.save(draft)
        assert department_service.store.get(1).parent_id is None

    def test_new_draft_is_added_with_path(self, department_service):
        draft = department_service.new_draft(name="Assembly", code="AS", parent_id=2)

        saved = department_service.save(draft)

        assert saved.id == 4
        assert saved.materialized_path == "1/2/4"


class TestQueries:
    def test_subtree_and_ancestors(self, department_service):
        assert [entity.id for entity in department_service.subtree(1)] == [1, 2, 3]
        assert [entity.id for entity in department_service.ancestors(3)] == [1, 2]
        assert department_service.ancestors(1) == []

    def test_candidate_parents_exclude_self_and_descendants(self, department_service):
        assert [entity.id for entity in department_service.candidate_parents(2)] == [1]
        assert [entity.id for entity in department_service.candidate_parents()] == [1, 2, 3]

    def test_corrupted_store_raises_on_forest(self):
        store = EntityStore()
        service = HierarchyService(store, factory=Department)
        store.add(Department(id=1, parent_id=2))
        store.add(Department(id=2, parent_id=1))

        with pytest.raises(CycleDetected):
            service.build_forest()


class TestMESService:
    def test_department_validation(self, mes):
        mes.create_department(name="Production", code="PROD")

        with pytest.raises(ValueError):
            mes.create_department(name="", code="X")
        with pytest.raises(ValueError):
            mes.create_department(name="Second", code="PROD")

    def test_permission_children_only_below_menus(self, mes):
        system = mes.create_permission(name="System", code="system")
        button = mes.create_permission(
            name="Export", code="system:export",
            permission_type=PermissionType.BUTTON, parent_id=system.id,
        )
        menu = mes.create_permission(name="Users", code="system:user", parent_id=system.id)

        with pytest.raises(InvalidReparent):
            mes.create_permission(name="Nested", code="nested", parent_id=button.id)
        assert mes.permission_hierarchy.can_reparent(menu.id, button.id) is False
        candidates = mes.permission_hierarchy.candidate_parents(menu.id)
        assert [permission.id for permission in candidates] == [system.id]

    def test_granted_permission_cannot_be_deleted(self, mes):
        permission = mes.create_permission(name="System", code="system")
        mes.grant_permission(role_id=1, permission_id=permission.id)
        mes.grant_permission(role_id=1, permission_id=permission.id)

        assert len(mes.role_permissions) == 1
        with pytest.raises(HasDependents):
            mes.permission_hierarchy.delete(permission.id)

    def test_disable_department(self, mes):
        department = mes.create_department(name="Quality", code="QA")

        disabled = mes.disable_department(department.id)

        assert disabled.status == DepartmentStatus.DISABLED

    def test_update_hierarchy_options(self, mes):
        mes.update_hierarchy_options(path_delimiter=",")
        root = mes.create_department(name="Plant", code="P")
        child = mes.create_department(name="Line", code="L", parent_id=root.id)

        assert child.materialized_path == f"{root.id},{child.id}"
        mes.update_hierarchy_options(path_delimiter="/")
        assert mes.departments.get(child.id).materialized_path == f"{root.id}/{child.id}"
        with pytest.raises(ValueError):
            HierarchyOptions(max_depth=0)

    def test_sqlite_backed_reparent(self, tmp_path):
        with MESDatabase(str(tmp_path / "mes.sqlite3")) as database:
            mes = MESService(
                department_store=database.departments,
                employee_store=database.employees,
            )
            assert mes.departments is database.departments
            assert mes.employees is database.employees
            plant = mes.create_department(name="Plant", code="P")
            production = mes.create_department(name="Production", code="PR", parent_id=plant.id)
            line = mes.create_department(name="Line", code="L", parent_id=production.id)

            mes.department_hierarchy.reparent(line.id, plant.id)

            stored = database.departments.get(line.id)
            assert stored.parent_id == plant.id
            assert stored.materialized_path == f"{plant.id}/{line.id}"
