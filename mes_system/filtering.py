"""Live filtering of entity lists by keyword, selectors and date range."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from typing import (
    Any,
    Callable,
    Dict,
    Generic,
    Iterator,
    Optional,
    Tuple,
    TypeVar,
    Union,
)

from .repository import EntityStore, StoreEvent

T = TypeVar("T")

logger = logging.getLogger(__name__)

ALL = "ALL"

DateLike = Union[date, datetime]


def _as_datetime(value: DateLike) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


@dataclass(frozen=True, slots=True)
class Selector:
    """Exact-match criterion on one attribute.

    ``all_value`` is the sentinel meaning "do not filter"; ``None`` and the
    exact ``"ALL"`` token are always treated as inactive too.
    """

    name: str
    attribute: str
    all_value: Any = 0

    def is_inactive(self, value: Any) -> bool:
        if value is None:
            return True
        if value == ALL:
            return True
        if isinstance(value, bool) or isinstance(self.all_value, bool):
            return value is self.all_value
        return value == self.all_value

    def matches(self, value: Any, entity: Any) -> bool:
        if self.is_inactive(value):
            return True
        return getattr(entity, self.attribute, None) == value


@dataclass(frozen=True, slots=True)
class DateRange:
    """Inclusive date range; ``end`` covers its whole day up to 23:59:59."""

    start: Optional[DateLike] = None
    end: Optional[DateLike] = None

    @property
    def is_active(self) -> bool:
        return self.start is not None or self.end is not None

    @property
    def lower_bound(self) -> Optional[datetime]:
        if self.start is None:
            return None
        return _as_datetime(self.start)

    @property
    def upper_bound(self) -> Optional[datetime]:
        if self.end is None:
            return None
        end_day = self.end.date() if isinstance(self.end, datetime) else self.end
        return datetime.combine(end_day, time.min) + timedelta(days=1) - timedelta(seconds=1)

    def contains(self, value: Optional[DateLike]) -> bool:
        if not self.is_active:
            return True
        if value is None:
            return False
        moment = _as_datetime(value)
        lower = self.lower_bound
        if lower is not None and moment < lower:
            return False
        upper = self.upper_bound
        if upper is not None and moment > upper:
            return False
        return True


@dataclass(slots=True)
class FilterCriteria:
    """Current predicate inputs of one list view."""

    keyword: str = ""
    selections: Dict[str, Any] = field(default_factory=dict)
    date_range: DateRange = field(default_factory=DateRange)


@dataclass(frozen=True, slots=True)
class FilterDefinition:
    """Per-view description of which fields each criterion looks at."""

    keyword_fields: Tuple[str, ...]
    selectors: Tuple[Selector, ...] = ()
    date_field: Optional[str] = None
    sort_key: Optional[Callable[[Any], Any]] = None
    descending: bool = False

    def selector(self, name: str) -> Selector:
        for selector in self.selectors:
            if selector.name == name:
                return selector
        raise KeyError(name)

    def default_criteria(self) -> FilterCriteria:
        return FilterCriteria(
            selections={selector.name: selector.all_value for selector in self.selectors}
        )


def matches_keyword(keyword: str, entity: Any, fields: Tuple[str, ...]) -> bool:
    if not keyword or not keyword.strip():
        return True
    needle = keyword.casefold()
    for name in fields:
        value = getattr(entity, name, None)
        if value is not None and needle in str(value).casefold():
            return True
    return False


def evaluate(definition: FilterDefinition, criteria: FilterCriteria, entity: Any) -> bool:
    """Return whether ``entity`` passes every active criterion."""

    if not matches_keyword(criteria.keyword, entity, definition.keyword_fields):
        return False
    for selector in definition.selectors:
        if not selector.matches(criteria.selections.get(selector.name), entity):
            return False
    if definition.date_field is not None and criteria.date_range.is_active:
        if not criteria.date_range.contains(getattr(entity, definition.date_field, None)):
            return False
    return True


class LiveFilter(Generic[T]):
    """Filtered, read-only view over an entity store.

    Every criterion setter re-evaluates the whole store synchronously, and
    so does every store mutation, so the view never lags behind its source.
    """

    def __init__(
        self,
        store: EntityStore[T],
        definition: FilterDefinition,
        *,
        criteria: Optional[FilterCriteria] = None,
    ) -> None:
        self._store = store
        self.definition = definition
        self._criteria = criteria if criteria is not None else definition.default_criteria()
        self._view: Tuple[T, ...] = ()
        self._unsubscribe: Optional[Callable[[], None]] = store.subscribe(self._on_store_event)
        self.refresh()

    def __iter__(self) -> Iterator[T]:
        return iter(self._view)

    def __len__(self) -> int:
        return len(self._view)

    @property
    def criteria(self) -> FilterCriteria:
        """A copy of the active criteria; change them through the setters."""

        return replace(self._criteria, selections=dict(self._criteria.selections))

    def evaluate(self, entity: T) -> bool:
        return evaluate(self.definition, self._criteria, entity)

    def refresh(self) -> Tuple[T, ...]:
        matched = [entity for entity in self._store.get_all() if self.evaluate(entity)]
        if self.definition.sort_key is not None:
            matched.sort(key=self.definition.sort_key, reverse=self.definition.descending)
        self._view = tuple(matched)
        logger.debug("Filter refresh kept %d of %d records", len(self._view), len(self._store))
        return self._view

    def get_filtered_view(self) -> Tuple[T, ...]:
        return self._view

    # ------------------------------------------------------------------
    # Criterion setters
    # ------------------------------------------------------------------
    def set_criterion(self, name: str, value: Any) -> Tuple[T, ...]:
        """Change one criterion by name and refresh.

        Names are ``keyword``, ``date_range`` (a ``DateRange``, a
        ``(start, end)`` pair or ``None``), ``start_date``, ``end_date`` or
        the name of a selector of the view.
        """

        if name == "keyword":
            self._criteria.keyword = value or ""
        elif name == "date_range":
            self._set_date_range(self._coerce_range(value))
        elif name == "start_date":
            self._set_date_range(replace(self._criteria.date_range, start=value))
        elif name == "end_date":
            self._set_date_range(replace(self._criteria.date_range, end=value))
        else:
            try:
                selector = self.definition.selector(name)
            except KeyError as exc:
                raise ValueError(f"Unknown filter criterion {name!r}") from exc
            self._criteria.selections[selector.name] = value
        return self.refresh()

    def set_keyword(self, keyword: str) -> Tuple[T, ...]:
        return self.set_criterion("keyword", keyword)

    def set_date_range(
        self, start: Optional[DateLike] = None, end: Optional[DateLike] = None
    ) -> Tuple[T, ...]:
        return self.set_criterion("date_range", DateRange(start=start, end=end))

    def reset(self) -> Tuple[T, ...]:
        """Restore every criterion to its inactive default."""

        self._criteria = self.definition.default_criteria()
        return self.refresh()

    @staticmethod
    def _coerce_range(value: Any) -> DateRange:
        if value is None:
            return DateRange()
        if isinstance(value, DateRange):
            return value
        start, end = value
        return DateRange(start=start, end=end)

    def _set_date_range(self, date_range: DateRange) -> None:
        if date_range.is_active and self.definition.date_field is None:
            raise ValueError("This view has no date field to filter on")
        self._criteria.date_range = date_range

    # ------------------------------------------------------------------
    # Store subscription
    # ------------------------------------------------------------------
    def _on_store_event(self, event: StoreEvent) -> None:
        self.refresh()

    def close(self) -> None:
        """Stop following store changes."""

        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None


__all__ = [
    "ALL",
    "Selector",
    "DateRange",
    "FilterCriteria",
    "FilterDefinition",
    "LiveFilter",
    "evaluate",
    "matches_keyword",
]
