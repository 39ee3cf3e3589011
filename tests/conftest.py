from typing import Iterable, Optional, Tuple

import pytest

from mes_system.domain import Department, HierarchicalEntity
from mes_system.repository import EntityStore
from mes_system.services import HierarchyService, MESService


def make_store(links: Iterable[Tuple[int, Optional[int]]]) -> EntityStore:
    """Build a store of bare entities from ``(id, parent_id)`` pairs."""

    store: EntityStore = EntityStore()
    for entity_id, parent_id in links:
        store.add(HierarchicalEntity(id=entity_id, parent_id=parent_id))
    return store


@pytest.fixture
def chain_store() -> EntityStore:
    """Scenario data: 1 <- 2 <- 3."""

    return make_store([(1, None), (2, 1), (3, 2)])


@pytest.fixture
def department_service() -> HierarchyService:
    service: HierarchyService = HierarchyService(EntityStore(), factory=Department)
    for entity_id, parent_id in [(1, None), (2, 1), (3, 2)]:
        service.add(Department(id=entity_id, parent_id=parent_id, code=f"D{entity_id}"))
    return service


@pytest.fixture
def mes() -> MESService:
    return MESService()
