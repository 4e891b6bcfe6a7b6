"""Row validation and in-submission name deduplication.

Turns raw feed rows into ``ProductRow`` objects. Rows that fail are reported
as ``RowError`` records and left out of the batch; the submission carries on.
The only I/O is one category lookup per distinct category id and one
lookup of the names the store already uses.
"""
from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import AbstractSet, Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from pydantic import ValidationError

from .errors import CatalogImportError, DanglingReferenceError, NameConflictError, RowValidationError
from .schemas import ProductRow

logger = logging.getLogger(__name__)

CategoryCheck = Callable[[str, str], bool]
# (store_id, exact names, name prefixes) -> names already used in the store
NameLookup = Callable[[str, Sequence[str], Sequence[str]], Set[str]]


@dataclass
class RowError:
    row: Optional[int]
    name: Optional[str]
    kind: str
    message: str
    field: Optional[str] = None

    @classmethod
    def from_exception(cls, row: Optional[int], name: Optional[str], exc: Exception) -> "RowError":
        kind = exc.kind if isinstance(exc, CatalogImportError) else type(exc).__name__
        return cls(
            row=row,
            name=name,
            kind=kind,
            message=str(exc),
            field=getattr(exc, "field", None),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "row": self.row,
            "name": self.name,
            "field": self.field,
            "kind": self.kind,
            "message": self.message,
        }


@dataclass
class Rename:
    row: int
    original: str
    renamed: str


@dataclass
class ValidationOutcome:
    valid: List[ProductRow] = field(default_factory=list)
    errors: List[RowError] = field(default_factory=list)
    renames: List[Rename] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)


def _first_error(exc: ValidationError) -> RowValidationError:
    err = exc.errors()[0]
    loc = err.get("loc") or ()
    field_name = str(loc[0]) if loc else None
    message = err.get("msg", "invalid value")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return RowValidationError(f"{field_name}: {message}" if field_name else message, field=field_name)


def parse_row(raw: Any, row_number: int) -> ProductRow:
    """Normalize one raw row, raising RowValidationError with the offending field."""
    if not isinstance(raw, Mapping):
        raise RowValidationError(f"row must be an object, got {type(raw).__name__}")
    try:
        parsed = ProductRow.model_validate(dict(raw))
    except ValidationError as e:
        raise _first_error(e) from e
    return parsed.model_copy(update={"row": row_number})


def suffixed_name(name: str, taken: AbstractSet[str]) -> str:
    """First of ``name (2)``, ``name (3)``, ... not already in ``taken``."""
    n = 2
    while True:
        candidate = f"{name} ({n})"
        if candidate not in taken:
            return candidate
        n += 1


def dedupe_names(
    rows: Sequence[ProductRow],
    in_use: AbstractSet[str] = frozenset(),
) -> Tuple[List[ProductRow], List[Rename], List[RowError]]:
    """Resolve names repeated inside one submission.

    A repeat of a name no existing entry uses gets the first free suffix,
    skipping names taken earlier in the submission and names in ``in_use``.
    A repeat of a name an existing entry already owns is rejected, since
    every copy would land on that same entry.
    """
    taken: Set[str] = set()
    out: List[ProductRow] = []
    renames: List[Rename] = []
    conflicts: List[RowError] = []
    for row in rows:
        name = row.name
        if name in taken:
            if name in in_use:
                err = NameConflictError(
                    f"name {name!r} is repeated in this submission and already used by an existing product"
                )
                conflicts.append(RowError.from_exception(row.row, name, err))
                continue
            name = suffixed_name(row.name, taken | in_use)
            logger.debug("Row %d: duplicate name %r renamed to %r", row.row, row.name, name)
            renames.append(Rename(row=row.row, original=row.name, renamed=name))
            row = row.model_copy(update={"name": name})
        taken.add(name)
        out.append(row)
    return out, renames, conflicts


def _lookup_names(
    store_id: str, rows: Sequence[ProductRow], names_in_use: Optional[NameLookup]
) -> Set[str]:
    if names_in_use is None or not rows:
        return set()
    counts = Counter(row.name for row in rows)
    prefixes = {f"{name} (" for name, n in counts.items() if n > 1}
    if not prefixes:
        return set()
    # an explicit "Logo (2)" can itself be pushed to "Logo (2) (2)"
    prefixes |= {f"{name} (" for name in counts if any(name.startswith(p) for p in prefixes)}
    return set(names_in_use(store_id, list(counts), sorted(prefixes)))


def validate_rows(
    store_id: str,
    rows: Sequence[Any],
    category_exists: CategoryCheck,
    names_in_use: Optional[NameLookup] = None,
) -> ValidationOutcome:
    outcome = ValidationOutcome()
    parsed: List[ProductRow] = []

    for i, raw in enumerate(rows, start=1):
        name = raw.get("name") if isinstance(raw, Mapping) else None
        try:
            parsed.append(parse_row(raw, i))
        except RowValidationError as e:
            outcome.errors.append(RowError.from_exception(i, name, e))

    known: Dict[str, bool] = {}
    referenced: List[ProductRow] = []
    for row in parsed:
        if row.category_id not in known:
            known[row.category_id] = bool(category_exists(store_id, row.category_id))
        if not known[row.category_id]:
            err = DanglingReferenceError(
                f"Category {row.category_id} does not exist in store {store_id}"
            )
            outcome.errors.append(RowError.from_exception(row.row, row.name, err))
            continue
        referenced.append(row)

    in_use = _lookup_names(store_id, referenced, names_in_use)
    outcome.valid, outcome.renames, conflicts = dedupe_names(referenced, in_use)
    outcome.errors.extend(conflicts)
    outcome.errors.sort(key=lambda e: e.row or 0)

    if outcome.renames:
        logger.info("Store %s: renamed %d duplicate row name(s)", store_id, len(outcome.renames))
    if outcome.errors:
        logger.info(
            "Store %s: %d of %d row(s) failed validation", store_id, len(outcome.errors), len(rows)
        )
    return outcome
