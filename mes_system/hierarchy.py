"""Tree construction, cycle checks and materialized path maintenance.

The hierarchy is stored flat: every entity carries an ``id`` and an
optional ``parent_id``. Trees are never patched in place; they are
rebuilt from the flat records whenever the structure changes.

Materialized paths are the ids of the ancestor chain joined by a
delimiter, root first::

    >>> build_path(9, "1/4")
    '1/4/9'
    >>> build_path(1, None)
    '1'
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Sequence,
    Set,
    Tuple,
)

from .domain import HierarchicalEntity
from .repository import EntityStore, RecordNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_PATH_DELIMITER = "/"
DEFAULT_MAX_DEPTH = 64

ParentRule = Callable[[Any], bool]


class HierarchyError(RuntimeError):
    """Base exception for hierarchy operations."""

    def __init__(self, message: str, *, entity_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.entity_id = entity_id


class CycleDetected(HierarchyError):
    """Raised when the parent links form a loop or exceed the depth bound."""

    def __init__(
        self,
        message: str,
        *,
        entity_id: Optional[int] = None,
        cycle_ids: Sequence[int] = (),
    ) -> None:
        super().__init__(message, entity_id=entity_id)
        self.cycle_ids = tuple(cycle_ids)


class HasChildren(HierarchyError):
    """Raised when deleting an entity that still has child entities."""

    def __init__(self, message: str, *, entity_id: int, child_ids: Sequence[int]) -> None:
        super().__init__(message, entity_id=entity_id)
        self.child_ids = tuple(child_ids)


class HasDependents(HierarchyError):
    """Raised when deleting an entity that external records still reference."""

    def __init__(self, message: str, *, entity_id: int, dependents: Sequence[Any]) -> None:
        super().__init__(message, entity_id=entity_id)
        self.dependents = tuple(dependents)


class InvalidReparent(HierarchyError):
    """Raised for self-parenting, parenting onto a descendant or a disallowed parent."""

    def __init__(
        self, message: str, *, entity_id: int, parent_id: Optional[int]
    ) -> None:
        super().__init__(message, entity_id=entity_id)
        self.parent_id = parent_id


class EntityNotFound(HierarchyError, RecordNotFoundError):
    """Raised when an operation references an id absent from the store."""


def build_path(
    entity_id: int,
    parent_path: Optional[str] = None,
    delimiter: str = DEFAULT_PATH_DELIMITER,
) -> str:
    if not parent_path:
        return str(entity_id)
    return f"{parent_path}{delimiter}{entity_id}"


def parse_path(path: str, delimiter: str = DEFAULT_PATH_DELIMITER) -> List[int]:
    """Split a materialized path back into its ids, root first."""

    if not path:
        return []
    return [int(part) for part in path.split(delimiter) if part]


def sibling_key(entity: HierarchicalEntity) -> Tuple[int, int]:
    return (entity.sort_order, entity.id)


def index_children(
    entities: Iterable[HierarchicalEntity],
) -> Dict[Optional[int], List[HierarchicalEntity]]:
    """Group entities by ``parent_id``; each sibling list is in display order."""

    index: Dict[Optional[int], List[HierarchicalEntity]] = {}
    for entity in entities:
        index.setdefault(entity.parent_id, []).append(entity)
    for siblings in index.values():
        siblings.sort(key=sibling_key)
    return index


def _find_cycle(by_id: Dict[int, HierarchicalEntity], start_id: int) -> List[int]:
    """Follow parent links from ``start_id`` and return the ids of the loop hit."""

    order: List[int] = []
    positions: Dict[int, int] = {}
    current: Optional[int] = start_id
    while current is not None and current in by_id:
        if current in positions:
            return order[positions[current]:]
        positions[current] = len(order)
        order.append(current)
        current = by_id[current].parent_id
    return []


@dataclass(slots=True)
class TreeNode:
    """Presentation wrapper around one entity and its ordered children."""

    entity: HierarchicalEntity
    children: List["TreeNode"] = field(default_factory=list)

    @property
    def id(self) -> int:
        return self.entity.id

    def walk(self) -> Iterator["TreeNode"]:
        """Yield this node and every descendant in pre-order."""

        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self.entity)
        payload["children"] = [child.to_dict() for child in self.children]
        return payload


def find_node(forest: Iterable[TreeNode], entity_id: int) -> Optional[TreeNode]:
    for root in forest:
        for node in root.walk():
            if node.id == entity_id:
                return node
    return None


def build_forest(
    entities: Iterable[HierarchicalEntity],
    *,
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> List[TreeNode]:
    """Arrange flat entities into an ordered forest of ``TreeNode`` objects.

    Entities without a parent, or whose parent is not part of ``entities``,
    become roots. Siblings are ordered by ``sort_order`` then ``id``.

    Raises:
        ValueError: if two entities share an id.
        CycleDetected: if parent links loop or nesting exceeds ``max_depth``.
    """

    by_id: Dict[int, HierarchicalEntity] = {}
    for entity in entities:
        if entity.id in by_id:
            raise ValueError(f"Duplicate entity id {entity.id!r} in hierarchy")
        by_id[entity.id] = entity

    children_index = index_children(by_id.values())
    roots: List[HierarchicalEntity] = []
    for entity in by_id.values():
        if entity.parent_id is None:
            roots.append(entity)
        elif entity.parent_id not in by_id:
            logger.warning(
                "Entity %s references missing parent %s; treating it as a root",
                entity.id,
                entity.parent_id,
            )
            roots.append(entity)
    roots.sort(key=sibling_key)

    visited: Set[int] = set()

    def attach(entity: HierarchicalEntity, depth: int) -> TreeNode:
        if depth > max_depth:
            raise CycleDetected(
                f"Hierarchy below entity {entity.id} exceeds the depth bound of {max_depth}",
                entity_id=entity.id,
            )
        if entity.id in visited:
            raise CycleDetected(
                f"Entity {entity.id} was reached twice while building the tree",
                entity_id=entity.id,
                cycle_ids=_find_cycle(by_id, entity.id),
            )
        visited.add(entity.id)
        node = TreeNode(entity=entity)
        for child in children_index.get(entity.id, ()):
            node.children.append(attach(child, depth + 1))
        return node

    forest = [attach(root, 1) for root in roots]

    if len(visited) != len(by_id):
        unreached = sorted(set(by_id) - visited)
        cycle = _find_cycle(by_id, unreached[0]) or unreached
        raise CycleDetected(
            f"Hierarchy contains a cycle through ids {cycle}",
            entity_id=cycle[0],
            cycle_ids=cycle,
        )
    logger.debug("Built forest with %d roots from %d entities", len(forest), len(by_id))
    return forest


class CycleGuard:
    """Pre-flight checks for reparenting and deletion."""

    def __init__(
        self,
        store: EntityStore,
        *,
        parent_rule: Optional[ParentRule] = None,
    ) -> None:
        self.store = store
        self.parent_rule = parent_rule

    def require(self, entity_id: int) -> HierarchicalEntity:
        try:
            return self.store.get(entity_id)
        except RecordNotFoundError as exc:
            raise EntityNotFound(
                f"Entity {entity_id!r} does not exist", entity_id=entity_id
            ) from exc

    def descendant_ids(self, root_id: int) -> Set[int]:
        """Return the ids of every entity below ``root_id``."""

        self.require(root_id)
        index = index_children(self.store.get_all())
        result: Set[int] = set()
        stack = [root_id]
        while stack:
            current = stack.pop()
            for child in index.get(current, ()):
                if child.id == root_id or child.id in result:
                    continue
                result.add(child.id)
                stack.append(child.id)
        return result

    def check_reparent(self, entity_id: int, proposed_parent_id: Optional[int]) -> None:
        """Raise if moving ``entity_id`` under ``proposed_parent_id`` is not allowed."""

        entity = self.require(entity_id)
        if proposed_parent_id == entity_id:
            raise InvalidReparent(
                f"Entity {entity_id} cannot be its own parent",
                entity_id=entity_id,
                parent_id=proposed_parent_id,
            )
        if proposed_parent_id is None or proposed_parent_id == entity.parent_id:
            return
        if proposed_parent_id not in self.store:
            raise EntityNotFound(
                f"Parent entity {proposed_parent_id!r} does not exist",
                entity_id=proposed_parent_id,
            )
        if proposed_parent_id in self.descendant_ids(entity_id):
            raise InvalidReparent(
                f"Entity {entity_id} cannot move below its descendant {proposed_parent_id}",
                entity_id=entity_id,
                parent_id=proposed_parent_id,
            )
        if self.parent_rule is not None:
            parent = self.store.get(proposed_parent_id)
            if not self.parent_rule(parent):
                raise InvalidReparent(
                    f"Entity {proposed_parent_id} is not allowed to have children",
                    entity_id=entity_id,
                    parent_id=proposed_parent_id,
                )

    def can_reparent(self, entity_id: int, proposed_parent_id: Optional[int]) -> bool:
        self.require(entity_id)
        try:
            self.check_reparent(entity_id, proposed_parent_id)
        except (InvalidReparent, EntityNotFound):
            return False
        return True

    def ensure_deletable(self, entity_id: int) -> None:
        """Reject deletion while children or external dependents exist."""

        self.require(entity_id)
        children = self.store.get_children(entity_id)
        if children:
            raise HasChildren(
                f"Entity {entity_id} has {len(children)} child entities; remove them first",
                entity_id=entity_id,
                child_ids=[child.id for child in children],
            )
        dependents = self.store.get_dependents(entity_id)
        if dependents:
            raise HasDependents(
                f"Entity {entity_id} is still referenced by {len(dependents)} records",
                entity_id=entity_id,
                dependents=dependents,
            )


class PathMaterializer:
    """Recomputes and persists materialized paths for a subtree."""

    def __init__(
        self,
        store: EntityStore,
        *,
        delimiter: str = DEFAULT_PATH_DELIMITER,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self.store = store
        self.delimiter = delimiter
        self.max_depth = max_depth

    def _lookup(self) -> Dict[int, HierarchicalEntity]:
        return {entity.id: entity for entity in self.store.get_all()}

    def compute_path(
        self,
        entity_id: int,
        lookup: Optional[Dict[int, HierarchicalEntity]] = None,
    ) -> str:
        """Walk parent links up to the root and return the joined id chain."""

        lookup = lookup if lookup is not None else self._lookup()
        current = lookup.get(entity_id)
        if current is None:
            raise EntityNotFound(f"Entity {entity_id!r} does not exist", entity_id=entity_id)
        chain: List[int] = []
        seen: Set[int] = set()
        while True:
            if current.id in seen:
                raise CycleDetected(
                    f"Ancestor chain of entity {entity_id} loops back to {current.id}",
                    entity_id=entity_id,
                    cycle_ids=_find_cycle(lookup, current.id),
                )
            if len(chain) >= self.max_depth:
                raise CycleDetected(
                    f"Ancestor chain of entity {entity_id} exceeds the depth bound of {self.max_depth}",
                    entity_id=entity_id,
                )
            seen.add(current.id)
            chain.append(current.id)
            if current.parent_id is None:
                break
            parent = lookup.get(current.parent_id)
            if parent is None:
                logger.warning(
                    "Entity %s references missing parent %s; path starts at it",
                    current.id,
                    current.parent_id,
                )
                break
            current = parent
        chain.reverse()
        return self.delimiter.join(str(item) for item in chain)

    def plan(self, entity_id: int) -> List[Tuple[HierarchicalEntity, str]]:
        """Return ``(entity, new_path)`` for the subtree of ``entity_id`` in pre-order."""

        lookup = self._lookup()
        root_path = self.compute_path(entity_id, lookup)
        index = index_children(lookup.values())
        planned: List[Tuple[HierarchicalEntity, str]] = []
        visited: Set[int] = set()
        root_depth = root_path.count(self.delimiter) + 1
        stack: List[Tuple[HierarchicalEntity, str, int]] = [
            (lookup[entity_id], root_path, root_depth)
        ]
        while stack:
            entity, path, depth = stack.pop()
            if entity.id in visited:
                raise CycleDetected(
                    f"Entity {entity.id} appears twice below entity {entity_id}",
                    entity_id=entity.id,
                    cycle_ids=_find_cycle(lookup, entity.id),
                )
            if depth > self.max_depth:
                raise CycleDetected(
                    f"Subtree of entity {entity_id} exceeds the depth bound of {self.max_depth}",
                    entity_id=entity.id,
                )
            visited.add(entity.id)
            planned.append((entity, path))
            for child in reversed(index.get(entity.id, ())):
                stack.append((child, build_path(child.id, path, self.delimiter), depth + 1))
        return planned

    def rematerialize(self, entity_id: int) -> None:
        """Recompute the path of ``entity_id`` and all of its descendants.

        Every new path is computed before anything is written, so a cycle
        leaves the subtree untouched. If the store fails part-way, the paths
        already written are restored before the error propagates.
        """

        planned = self.plan(entity_id)
        changed = [
            (entity, path)
            for entity, path in planned
            if entity.materialized_path != path
        ]
        written: List[Tuple[HierarchicalEntity, str]] = []
        pending: Optional[Tuple[HierarchicalEntity, str]] = None
        try:
            for entity, path in changed:
                pending = (entity, entity.materialized_path)
                entity.materialized_path = path
                self.store.update(entity)
                written.append(pending)
        except Exception:
            logger.error(
                "Path update below entity %s failed after %d writes; restoring",
                entity_id,
                len(written),
            )
            if pending is not None:
                pending[0].materialized_path = pending[1]
            for entity, previous in reversed(written):
                entity.materialized_path = previous
                self.store.update(entity)
            raise
        logger.info(
            "Rematerialized %d of %d paths below entity %s",
            len(changed),
            len(planned),
            entity_id,
        )

    def rematerialize_all(self) -> None:
        """Recompute every path in the store, root by root."""

        lookup = self._lookup()
        for entity in sorted(lookup.values(), key=sibling_key):
            if entity.parent_id is None or entity.parent_id not in lookup:
                self.rematerialize(entity.id)


__all__ = [
    "DEFAULT_PATH_DELIMITER",
    "DEFAULT_MAX_DEPTH",
    "HierarchyError",
    "CycleDetected",
    "HasChildren",
    "HasDependents",
    "InvalidReparent",
    "EntityNotFound",
    "TreeNode",
    "build_path",
    "parse_path",
    "index_children",
    "find_node",
    "build_forest",
    "CycleGuard",
    "PathMaterializer",
]
