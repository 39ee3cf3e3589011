import pytest

from mes_system.domain import HierarchicalEntity
from mes_system.hierarchy import (
    CycleDetected,
    CycleGuard,
    EntityNotFound,
    HasChildren,
    InvalidReparent,
    PathMaterializer,
    build_forest,
    build_path,
    find_node,
    parse_path,
)

from .conftest import make_store


def entities(*links):
    return [HierarchicalEntity(id=entity_id, parent_id=parent_id) for entity_id, parent_id in links]


class TestBuildForest:
    def test_every_entity_appears_once_under_its_parent(self):
        flat = entities((1, None), (2, 1), (3, 1), (4, 2), (5, None), (6, 5), (7, 4))

        forest = build_forest(flat)

        seen = []
        for root in forest:
            assert root.entity.parent_id is None
            for node in root.walk():
                seen.append(node.id)
                for child in node.children:
                    assert child.entity.parent_id == node.id
        assert sorted(seen) == [1, 2, 3, 4, 5, 6, 7]
        assert len(seen) == len(set(seen))

    def test_siblings_are_ordered_by_sort_order_then_id(self):
        flat = [
            HierarchicalEntity(id=1),
            HierarchicalEntity(id=4, parent_id=1, sort_order=2),
            HierarchicalEntity(id=3, parent_id=1, sort_order=1),
            HierarchicalEntity(id=2, parent_id=1, sort_order=2),
            HierarchicalEntity(id=9, sort_order=-1),
        ]

        forest = build_forest(flat)

        assert [root.id for root in forest] == [9, 1]
        assert [child.id for child in forest[1].children] == [3, 2, 4]

    def test_entity_with_missing_parent_becomes_root(self):
        forest = build_forest(entities((1, None), (5, 99), (6, 5)))

        assert [root.id for root in forest] == [1, 5]
        assert [child.id for child in forest[1].children] == [6]

    def test_nodes_wrap_the_original_entities(self):
        flat = entities((1, None), (2, 1))

        forest = build_forest(flat)

        assert forest[0].entity is flat[0]
        assert forest[0].children[0].entity is flat[1]

    def test_two_node_cycle_is_detected(self):
        with pytest.raises(CycleDetected) as excinfo:
            build_forest(entities((1, 2), (2, 1), (3, None)))

        assert set(excinfo.value.cycle_ids) == {1, 2}

    def test_self_parent_is_detected(self):
        with pytest.raises(CycleDetected) as excinfo:
            build_forest(entities((1, 1)))

        assert excinfo.value.cycle_ids == (1,)

    def test_depth_bound_is_enforced(self):
        flat = entities((1, None), (2, 1), (3, 2), (4, 3))

        with pytest.raises(CycleDetected):
            build_forest(flat, max_depth=3)
        assert len(build_forest(flat, max_depth=4)) == 1

    def test_duplicate_ids_are_rejected(self):
        with pytest.raises(ValueError):
            build_forest(entities((1, None), (1, None)))

    def test_find_node_and_to_dict(self):
        forest = build_forest(entities((1, None), (2, 1), (3, 2)))

        node = find_node(forest, 2)

        assert node is not None
        assert node.to_dict()["children"][0]["id"] == 3
        assert find_node(forest, 42) is None


class TestCycleGuard:
    def test_descendant_ids(self, chain_store):
        guard = CycleGuard(chain_store)

        assert guard.descendant_ids(1) == {2, 3}
        assert guard.descendant_ids(3) == set()

    def test_descendant_ids_terminates_on_corrupted_data(self):
        guard = CycleGuard(make_store([(1, 2), (2, 1)]))

        assert guard.descendant_ids(1) == {2}

    def test_moving_root_below_its_grandchild_is_rejected(self, chain_store):
        guard = CycleGuard(chain_store)

        assert guard.can_reparent(1, 3) is False
        with pytest.raises(InvalidReparent):
            guard.check_reparent(1, 3)

    def test_self_parenting_is_rejected(self, chain_store):
        assert CycleGuard(chain_store).can_reparent(2, 2) is False

    def test_promoting_to_root_is_allowed(self, chain_store):
        guard = CycleGuard(chain_store)

        assert guard.can_reparent(3, None) is True
        assert guard.can_reparent(1, None) is True

    def test_current_parent_is_allowed(self, chain_store):
        assert CycleGuard(chain_store).can_reparent(3, 2) is True

    def test_missing_parent_is_rejected(self, chain_store):
        assert CycleGuard(chain_store).can_reparent(3, 99) is False

    def test_missing_entity_raises(self, chain_store):
        with pytest.raises(EntityNotFound):
            CycleGuard(chain_store).can_reparent(99, 1)

    def test_parent_rule_is_applied(self, chain_store):
        guard = CycleGuard(chain_store, parent_rule=lambda parent: parent.id != 2)

        assert guard.can_reparent(3, 1) is True
        assert guard.can_reparent(1, None) is True
        store = make_store([(1, None), (2, None), (3, None)])
        assert CycleGuard(store, parent_rule=lambda parent: parent.id != 2).can_reparent(3, 2) is False

    def test_entity_with_children_cannot_be_deleted(self, chain_store):
        with pytest.raises(HasChildren) as excinfo:
            CycleGuard(chain_store).ensure_deletable(2)

        assert excinfo.value.child_ids == (3,)
        CycleGuard(chain_store).ensure_deletable(3)


class TestPathMaterializer:
    def test_paths_follow_the_parent_chain(self, chain_store):
        materializer = PathMaterializer(chain_store)

        materializer.rematerialize(1)

        assert [entity.materialized_path for entity in chain_store] == ["1", "1/2", "1/2/3"]

    def test_rematerialize_is_idempotent(self, chain_store):
        materializer = PathMaterializer(chain_store)
        materializer.rematerialize(1)
        version = chain_store.version

        materializer.rematerialize(1)

        assert chain_store.version == version

    def test_only_the_subtree_is_touched(self):
        store = make_store([(1, None), (2, 1), (3, None), (4, 3)])
        materializer = PathMaterializer(store)

        materializer.rematerialize(1)

        assert store.get(2).materialized_path == "1/2"
        assert store.get(4).materialized_path == ""

    def test_custom_delimiter(self, chain_store):
        PathMaterializer(chain_store, delimiter=",").rematerialize(1)

        assert chain_store.get(3).materialized_path == "1,2,3"

    def test_cycle_aborts_without_writes(self):
        store = make_store([(1, 2), (2, 1), (3, 1)])
        materializer = PathMaterializer(store)

        with pytest.raises(CycleDetected):
            materializer.rematerialize(3)
        assert all(entity.materialized_path == "" for entity in store)

    def test_depth_bound_counts_as_cycle(self, chain_store):
        with pytest.raises(CycleDetected):
            PathMaterializer(chain_store, max_depth=2).compute_path(3)

    def test_rematerialize_all(self):
        store = make_store([(1, None), (2, 1), (3, None), (4, 3)])

        PathMaterializer(store).rematerialize_all()

        assert store.get(4).materialized_path == "3/4"


def test_path_helpers():
    assert build_path(9, "1/4") == "1/4/9"
    assert build_path(1, None) == "1"
    assert parse_path("1/4/9") == [1, 4, 9]
    assert parse_path("") == []
