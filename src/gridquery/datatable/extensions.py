"""
Extension registry for the datatable pipeline.

Third-party modules register callbacks against named extension points.
Each point has a fixed value type: a callback receives the current value
and a read-only ExtensionContext, and must return a value of the same
shape. Callbacks run in ascending priority; equal priorities keep their
registration order.

Points, in pipeline order:
    columns     list[str]          select-list expressions
    where       list[SqlFragment]  WHERE predicates
    joins       list[SqlFragment]  JOIN clauses
    builder     QueryBuilder       whole assembler, after the list-level
                                   points. Bypasses every per-field check,
                                   so treat it as a last resort.
    row_output  list               one formatted row, called with the raw
                                   row as an extra argument
    response    ResultEnvelope     final envelope

Registration takes a lock and swaps in a new tuple per point; request
threads read from a RegistrySnapshot and never wait on that lock.
"""
import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, Tuple, TypeVar

from pydantic import ValidationError

from .builder import QueryBuilder
from .errors import DataTableError, ExtensionContractViolation
from .models import ExtensionContext, ResultEnvelope, SqlFragment


logger = logging.getLogger(__name__)

T = TypeVar('T')

COLUMNS = 'columns'
WHERE = 'where'
JOINS = 'joins'
BUILDER = 'builder'
ROW_OUTPUT = 'row_output'
RESPONSE = 'response'

DEFAULT_PRIORITY = 10


class ExtensionPoint(Generic[T]):
    """A named slot plus the shape check its callbacks must satisfy."""

    def __init__(self, name: str, check: Callable[[Any], T]):
        self.name = name
        self._check = check

    def validate(self, value: Any, callback: Callable) -> T:
        """Return the checked (possibly coerced) value or raise a violation."""
        try:
            return self._check(value)
        except (TypeError, ValueError, ValidationError) as e:
            raise ExtensionContractViolation(self.name, callback, str(e)) from e

    def __repr__(self):
        return f"ExtensionPoint('{self.name}')"


def _check_columns(value: Any) -> List[str]:
    if not isinstance(value, list):
        raise TypeError(f"must return a list of column expressions, got {type(value).__name__}")
    if not value:
        raise ValueError("returned an empty column list")
    for column in value:
        if not isinstance(column, str) or not column.strip():
            raise TypeError(f"returned an invalid column expression: {column!r}")
    return value


def _check_fragments(value: Any) -> List[SqlFragment]:
    if not isinstance(value, list):
        raise TypeError(f"must return a list of SQL fragments, got {type(value).__name__}")
    return [SqlFragment.coerce(v) for v in value]


def _check_builder(value: Any) -> QueryBuilder:
    if not isinstance(value, QueryBuilder):
        raise TypeError(f"must return the QueryBuilder, got {type(value).__name__}")
    return value


def _check_row(value: Any) -> list:
    if not isinstance(value, list):
        raise TypeError(f"must return the row as a list, got {type(value).__name__}")
    return value


def _check_envelope(value: Any) -> ResultEnvelope:
    if not isinstance(value, ResultEnvelope):
        raise TypeError(f"must return a ResultEnvelope, got {type(value).__name__}")
    return value


POINTS: Dict[str, ExtensionPoint] = {
    COLUMNS: ExtensionPoint(COLUMNS, _check_columns),
    WHERE: ExtensionPoint(WHERE, _check_fragments),
    JOINS: ExtensionPoint(JOINS, _check_fragments),
    BUILDER: ExtensionPoint(BUILDER, _check_builder),
    ROW_OUTPUT: ExtensionPoint(ROW_OUTPUT, _check_row),
    RESPONSE: ExtensionPoint(RESPONSE, _check_envelope),
}


@dataclass(frozen=True)
class Registration:
    """One registered callback."""
    priority: int
    sequence: int
    callback: Callable
    dataset: Optional[str] = None
    pass_context: bool = False

    def applies_to(self, dataset_id: str) -> bool:
        return self.dataset is None or self.dataset == dataset_id

    @property
    def sort_key(self) -> Tuple[int, int]:
        return self.priority, self.sequence


class RegistrySnapshot:
    """Immutable view of the registry, taken once per request."""

    def __init__(
        self,
        registrations: Dict[str, Tuple[Registration, ...]],
        access_checks: Tuple[Registration, ...],
    ):
        self._registrations = registrations
        self._access_checks = access_checks

    def callbacks(self, point: str, dataset_id: Optional[str] = None) -> List[Callable]:
        """Callbacks for a point in execution order."""
        return [
            r.callback for r in self._registrations[point]
            if dataset_id is None or r.applies_to(dataset_id)
        ]

    def run(self, point: str, value: T, context: ExtensionContext, *args: Any) -> T:
        """
        Thread `value` through every callback registered on `point`.

        Args:
            point: Extension point name
            value: Initial value
            context: Read-only request context
            *args: Extra positional arguments placed between the value and
                   the context (the raw row for row_output)

        Returns:
            Value returned by the last callback, or `value` when none applies

        Raises:
            ExtensionContractViolation: A callback raised or returned the wrong shape
        """
        if point not in POINTS:
            raise KeyError(f"Unknown extension point: {point}")
        extension_point = POINTS[point]

        for registration in self._registrations[point]:
            if not registration.applies_to(context.dataset_id):
                continue
            callback = registration.callback
            try:
                result = callback(value, *args, context)
            except DataTableError:
                raise
            except Exception as e:
                raise ExtensionContractViolation(point, callback, f"raised {e!r}") from e
            value = extension_point.validate(result, callback)
        return value

    def is_allowed(self, dataset_id: str, context: Any, default: bool = True) -> bool:
        """
        Consult the access checks for a dataset.

        Checks are called as fn(dataset_id), or fn(dataset_id, context) when
        registered with `with_context=True`. Every applicable check must return
        True. With no applicable check the default policy decides.

        Raises:
            ExtensionContractViolation: A check raised or returned a non-bool
        """
        checks = [r for r in self._access_checks if r.applies_to(dataset_id)]
        if not checks:
            return default

        for registration in checks:
            callback = registration.callback
            try:
                if registration.pass_context:
                    allowed = callback(dataset_id, context)
                else:
                    allowed = callback(dataset_id)
            except DataTableError:
                raise
            except Exception as e:
                raise ExtensionContractViolation('access_check', callback, f"raised {e!r}") from e
            if not isinstance(allowed, bool):
                raise ExtensionContractViolation(
                    'access_check', callback,
                    f"must return a bool, got {type(allowed).__name__}"
                )
            if not allowed:
                return False
        return True


class ExtensionRegistry:
    """Process-wide store of extension callbacks."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sequence = itertools.count()
        self._registrations: Dict[str, Tuple[Registration, ...]] = {
            name: () for name in POINTS
        }
        self._access_checks: Tuple[Registration, ...] = ()

    def register(
        self,
        point: str,
        priority: int,
        callback: Callable,
        dataset: Optional[str] = None,
    ) -> Registration:
        """
        Register a callback on an extension point.

        Args:
            point: One of columns, where, joins, builder, row_output, response
            priority: Lower runs first
            callback: Transform returning a value of the point's type
            dataset: Restrict the callback to one dataset id

        Returns:
            The stored Registration
        """
        if point not in POINTS:
            raise ValueError(f"Unknown extension point: {point}")
        if not callable(callback):
            raise TypeError("callback must be callable")

        with self._lock:
            registration = Registration(
                priority=int(priority),
                sequence=next(self._sequence),
                callback=callback,
                dataset=dataset,
            )
            current = self._registrations[point] + (registration,)
            self._registrations = {
                **self._registrations,
                point: tuple(sorted(current, key=lambda r: r.sort_key)),
            }

        logger.debug(
            f"Registered {getattr(callback, '__qualname__', callback)} on '{point}' "
            f"(priority={priority}, dataset={dataset or '*'})"
        )
        return registration

    def register_columns_extension(self, priority: int, fn: Callable, dataset: Optional[str] = None):
        return self.register(COLUMNS, priority, fn, dataset)

    def register_where_extension(self, priority: int, fn: Callable, dataset: Optional[str] = None):
        return self.register(WHERE, priority, fn, dataset)

    def register_joins_extension(self, priority: int, fn: Callable, dataset: Optional[str] = None):
        return self.register(JOINS, priority, fn, dataset)

    def register_builder_extension(self, priority: int, fn: Callable, dataset: Optional[str] = None):
        return self.register(BUILDER, priority, fn, dataset)

    def register_row_extension(self, priority: int, fn: Callable, dataset: Optional[str] = None):
        return self.register(ROW_OUTPUT, priority, fn, dataset)

    def register_response_extension(self, priority: int, fn: Callable, dataset: Optional[str] = None):
        return self.register(RESPONSE, priority, fn, dataset)

    def register_access_check(
        self,
        fn: Callable,
        dataset: Optional[str] = None,
        with_context: bool = False,
    ) -> Registration:
        """
        Register fn(dataset_id) -> bool, consulted before any query is built.

        With `with_context=True` the check is called as fn(dataset_id, context)
        and receives the ExecutionContext (user, interface, correlation id).
        """
        if not callable(fn):
            raise TypeError("access check must be callable")
        with self._lock:
            registration = Registration(
                priority=DEFAULT_PRIORITY,
                sequence=next(self._sequence),
                callback=fn,
                dataset=dataset,
                pass_context=with_context,
            )
            self._access_checks = self._access_checks + (registration,)
        return registration

    def snapshot(self) -> RegistrySnapshot:
        """Current registrations; later registrations do not affect it."""
        return RegistrySnapshot(self._registrations, self._access_checks)

    def clear(self):
        """Drop every registration."""
        with self._lock:
            self._registrations = {name: () for name in POINTS}
            self._access_checks = ()

    def __len__(self):
        return sum(len(r) for r in self._registrations.values()) + len(self._access_checks)
