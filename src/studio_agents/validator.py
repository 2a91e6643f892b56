from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Mapping

from pydantic import BaseModel, ValidationError

from .models import EntityKind

logger = logging.getLogger(__name__)

Allowlists = Mapping[EntityKind, frozenset[str]]


@dataclass(frozen=True)
class ReferenceSpec:
    """Where one output collection cites input entities.

    ``id_lists`` are array fields filtered element-wise.  ``edges`` are scalar
    fields; an item whose edge endpoint is unknown is dropped entirely.
    """

    collection: str
    id_lists: Mapping[str, EntityKind] = field(default_factory=dict)
    edges: Mapping[str, EntityKind] = field(default_factory=dict)
    reject_self_loops: bool = False
    label_field: str = "name"


@dataclass(frozen=True)
class Discrepancy:
    """IDs removed from one output item; logged, never shown to end users."""

    collection: str
    index: int
    label: str
    field: str
    dropped_ids: tuple[str, ...]
    dropped_item: bool = False


@dataclass(frozen=True)
class ValidationResult:
    output: BaseModel
    discrepancies: list[Discrepancy]

    @property
    def dropped_count(self) -> int:
        return sum(len(item.dropped_ids) for item in self.discrepancies)


class OutputValidator:
    """Strips references the provider invented.

    Every cited ID must be present in the allowlist built from the input
    snapshot for its entity kind; a kind missing from the allowlists accepts
    nothing.  An item that no longer satisfies its schema once filtered is
    dropped, and output left with no usable items is rejected.  Content is
    never judged.
    """

    def __init__(self, references: list[ReferenceSpec]) -> None:
        self.references = references

    def validate(self, output: BaseModel, allowlists: Allowlists) -> ValidationResult:
        discrepancies: list[Discrepancy] = []
        updates: dict[str, list[BaseModel]] = {}
        for spec in self.references:
            kept_items: list[BaseModel] = []
            for index, item in enumerate(getattr(output, spec.collection)):
                label = str(getattr(item, spec.label_field, "") or f"{spec.collection}[{index}]")
                edge_problem = self._check_edges(spec, item, allowlists)
                if edge_problem is not None:
                    field_name, bad_ids = edge_problem
                    discrepancies.append(
                        Discrepancy(spec.collection, index, label, field_name, bad_ids, dropped_item=True)
                    )
                    continue
                item_updates: dict[str, list[str]] = {}
                for field_name, kind in spec.id_lists.items():
                    allowed = allowlists.get(kind, frozenset())
                    values = list(getattr(item, field_name))
                    kept = [value for value in values if value in allowed]
                    if len(kept) != len(values):
                        dropped = tuple(value for value in values if value not in allowed)
                        discrepancies.append(Discrepancy(spec.collection, index, label, field_name, dropped))
                        item_updates[field_name] = kept
                if not item_updates:
                    kept_items.append(item)
                    continue
                try:
                    kept_items.append(type(item).model_validate({**item.model_dump(), **item_updates}))
                except ValidationError as exc:
                    invalid = tuple(sorted({str(error["loc"][0]) for error in exc.errors() if error["loc"]}))
                    discrepancies.append(
                        Discrepancy(spec.collection, index, label, ", ".join(invalid) or "schema", (), dropped_item=True)
                    )
            updates[spec.collection] = kept_items

        for entry in discrepancies:
            if entry.dropped_item:
                logger.warning(
                    "Dropped %s item %r: invalid %s %s",
                    entry.collection,
                    entry.label,
                    entry.field,
                    list(entry.dropped_ids),
                )
            else:
                logger.warning(
                    "%s %r: filtered %d invalid %s",
                    entry.collection,
                    entry.label,
                    len(entry.dropped_ids),
                    entry.field,
                )
        try:
            filtered = type(output).model_validate({**output.model_dump(), **updates})
        except ValidationError as exc:
            raise ValueError(f"No usable {type(output).__name__} left after reference filtering: {exc}") from exc
        return ValidationResult(output=filtered, discrepancies=discrepancies)

    @staticmethod
    def _check_edges(
        spec: ReferenceSpec,
        item: BaseModel,
        allowlists: Allowlists,
    ) -> tuple[str, tuple[str, ...]] | None:
        if not spec.edges:
            return None
        endpoints: list[str] = []
        for field_name, kind in spec.edges.items():
            value = getattr(item, field_name)
            if value not in allowlists.get(kind, frozenset()):
                return field_name, (value,)
            endpoints.append(value)
        if spec.reject_self_loops and len(set(endpoints)) == 1:
            return "self_loop", (endpoints[0],)
        return None
