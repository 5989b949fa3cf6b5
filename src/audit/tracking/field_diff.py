"""
Field Diff Engine

Extracts values at dotted paths and compares pre- and post-images field
by field, restricted to an entity type's tracked paths.

Limitation: a key that is absent and a key whose value is None both
extract as None, so switching between the two is not reported.
"""

import copy
import logging
from collections.abc import Mapping
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, List, Optional, Tuple

from .errors import AuditError, AuditErrorKind
from .types import ChangeData, Operation

logger = logging.getLogger(__name__)

_SCALAR_TYPES = (str, bytes, int, float, bool, Decimal, date, datetime)


def validate_path(dotted_path: Any) -> List[str]:
    """Split a dotted path, raising a DIFF error if it is malformed."""
    if not isinstance(dotted_path, str) or not dotted_path:
        raise AuditError.recoverable(
            AuditErrorKind.DIFF, f"Tracked field path must be a non-empty string: {dotted_path!r}"
        )
    segments = dotted_path.split(".")
    if any(not segment for segment in segments):
        raise AuditError.recoverable(
            AuditErrorKind.DIFF, f"Malformed tracked field path: {dotted_path!r}"
        )
    return segments


def get_nested_value(root: Any, dotted_path: str) -> Any:
    """
    Walk ``dotted_path`` segment by segment.

    Mappings are traversed by key, lists/tuples by integer index, other
    objects by attribute. Returns None as soon as a segment is missing or
    the current value is not traversable.
    """
    if root is None or not isinstance(dotted_path, str) or not dotted_path:
        return None

    current = root
    for segment in dotted_path.split("."):
        if current is None:
            return None
        if isinstance(current, Mapping):
            if segment not in current:
                return None
            current = current[segment]
        elif isinstance(current, (list, tuple)):
            if not segment.isdigit() or int(segment) >= len(current):
                return None
            current = current[int(segment)]
        elif isinstance(current, _SCALAR_TYPES):
            return None
        else:
            current = getattr(current, segment, None)
    return current


def _kind(value: Any) -> Any:
    # int and float share one numeric kind; bool stays distinct from int
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "bool"
    if isinstance(value, (int, float, Decimal)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, Mapping):
        return "mapping"
    if isinstance(value, (list, tuple)):
        return "sequence"
    return type(value)


def values_equal(a: Any, b: Any) -> bool:
    """Structural deep equality; values of different kinds are never equal."""
    if a is b:
        return True
    if _kind(a) != _kind(b):
        return False

    if isinstance(a, Mapping):
        if set(a.keys()) != set(b.keys()):
            return False
        return all(values_equal(a[key], b[key]) for key in a)

    if isinstance(a, (list, tuple)):
        if len(a) != len(b):
            return False
        return all(values_equal(x, y) for x, y in zip(a, b))

    return bool(a == b)


def _snapshot_value(value: Any) -> Any:
    try:
        return copy.deepcopy(value)
    except Exception:
        return value


def detect_changes(
    new_state: Any,
    old_state: Optional[Any],
    tracked_paths: Iterable[str],
    operation: Operation,
) -> Tuple[ChangeData, ...]:
    """
    Compute the change set for a mutation.

    CREATE, DELETE and SOFT_DELETE yield no changes. For UPDATE, one
    ChangeData per tracked path whose values differ, in tracked-path order.
    A path that cannot be diffed is reported as changed.
    """
    if operation is not Operation.UPDATE:
        return ()

    changes: List[ChangeData] = []
    for path in tracked_paths:
        old_value = new_value = None
        try:
            validate_path(path)
            new_value = get_nested_value(new_state, path)
            old_value = get_nested_value(old_state, path) if old_state is not None else None
            if values_equal(old_value, new_value):
                continue
        except Exception as e:
            logger.warning(
                f"Could not diff tracked field {path!r}, recording it as changed: {e}"
            )
        changes.append(ChangeData(
            field=str(path),
            old_value=_snapshot_value(old_value),
            new_value=_snapshot_value(new_value),
        ))

    return tuple(changes)


class FieldDiffEngine:
    """Injectable wrapper around the diff functions."""

    def get_nested_value(self, root: Any, dotted_path: str) -> Any:
        return get_nested_value(root, dotted_path)

    def values_equal(self, a: Any, b: Any) -> bool:
        return values_equal(a, b)

    def diff(
        self,
        new_state: Any,
        old_state: Optional[Any],
        tracked_paths: Iterable[str],
        operation: Operation,
    ) -> Tuple[ChangeData, ...]:
        return detect_changes(new_state, old_state, tracked_paths, operation)
