"""Metadata and entity filtering over case files.

Every active dimension must pass (AND); within a dimension any single value is
enough (OR). Filtering never reorders its input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

from ..models.domain import CaseFile, Entity, EntityType, FileCategory, normalise_entity_text
from ..storage.catalog_store import CaseCatalogStore, as_utc
from .errors import InvalidRequestError, ServiceComponent
from .timeouts import run_blocking

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class EntityFilter:
    value: str
    entity_type: Optional[EntityType] = None

    def matches(self, entity: Entity) -> bool:
        if self.entity_type is not None and entity.bucket is not self.entity_type:
            return False
        return entity.normalised_text == normalise_entity_text(self.value)


@dataclass
class SearchFilters:
    file_types: List[FileCategory] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    entities: List[EntityFilter] = field(default_factory=list)
    date_from: date | datetime | None = None
    date_to: date | datetime | None = None

    @property
    def active_tags(self) -> Set[str]:
        return {tag.strip().casefold() for tag in self.tags if tag.strip()}

    @property
    def active_entities(self) -> List[EntityFilter]:
        return [wanted for wanted in self.entities if wanted.value.strip()]

    def is_empty(self) -> bool:
        # Blank tags and entity values restrict nothing.
        return not (
            self.file_types or self.active_tags or self.active_entities or self.date_from or self.date_to
        )

    def validate(self) -> None:
        lower, upper = _lower_bound(self.date_from), _upper_bound(self.date_to)
        if lower is not None and upper is not None and lower > upper:
            raise InvalidRequestError.build(
                ServiceComponent.FILTERS,
                "INVALID_DATE_RANGE",
                "date_from must not be later than date_to",
                date_from=str(self.date_from),
                date_to=str(self.date_to),
            )


def _lower_bound(value: date | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def _upper_bound(value: date | datetime | None) -> datetime | None:
    # A bare date includes the whole day.
    if value is None:
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.combine(value, time.max, tzinfo=timezone.utc)


def apply_filters(
    files: Sequence[CaseFile],
    filters: SearchFilters | None,
    entities_by_file: Mapping[str, Iterable[Entity]] | None = None,
) -> List[CaseFile]:
    """Return the files passing ``filters`` in their original order."""

    if filters is None or filters.is_empty():
        return list(files)
    wanted_types: Set[FileCategory] = set(filters.file_types)
    wanted_tags = filters.active_tags
    wanted_entities = filters.active_entities
    lower, upper = _lower_bound(filters.date_from), _upper_bound(filters.date_to)
    entities_by_file = entities_by_file or {}

    selected: List[CaseFile] = []
    for case_file in files:
        if wanted_types and case_file.category not in wanted_types:
            continue
        if wanted_tags and not wanted_tags & {tag.strip().casefold() for tag in case_file.tags}:
            continue
        added_at = as_utc(case_file.added_at)
        if lower is not None and added_at < lower:
            continue
        if upper is not None and added_at > upper:
            continue
        if wanted_entities:
            entities = entities_by_file.get(case_file.id, ())
            if not any(wanted.matches(entity) for entity in entities for wanted in wanted_entities):
                continue
        selected.append(case_file)
    return selected


class FilterEngine:
    """Loads entity data on demand and applies ``apply_filters``."""

    def __init__(self, catalog: CaseCatalogStore) -> None:
        self.catalog = catalog

    async def filter_files(
        self,
        files: Sequence[CaseFile],
        filters: SearchFilters | None,
        *,
        timeout: float | None = None,
    ) -> List[CaseFile]:
        if filters is None or filters.is_empty():
            return list(files)
        filters.validate()
        entities_by_file: Dict[str, List[Entity]] = {}
        if filters.active_entities and files:
            entities_by_file = await run_blocking(
                self.catalog.entities_for_files,
                [case_file.id for case_file in files],
                timeout=timeout,
                component=ServiceComponent.CATALOG,
                operation="load file entities",
            )
        selected = apply_filters(files, filters, entities_by_file)
        _LOGGER.debug(
            "Applied search filters",
            extra={"candidates": len(files), "selected": len(selected)},
        )
        return selected


__all__ = ["EntityFilter", "SearchFilters", "FilterEngine", "apply_filters"]
