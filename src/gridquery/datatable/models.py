"""
Domain models for server-side datatable processing.
Provides type-safe dataset definitions, requests and result envelopes.
"""
import re
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Sequence, Tuple, Union
from pydantic import BaseModel, Field, field_validator, model_validator, ConfigDict
from pydantic import ValidationError

from .errors import RequestValidationError


TABLE_IDENTIFIER = re.compile(
    r'^[A-Za-z_][A-Za-z0-9_.]*(\s+(AS\s+)?[A-Za-z_][A-Za-z0-9_]*)?$', re.IGNORECASE
)
QUALIFIED_COLUMN = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)+$')
ALIAS_SPLIT = re.compile(r'\s+as\s+', re.IGNORECASE)

FRAGMENT_SCOPES = ('data', 'search')

# Largest offset every supported driver can bind (signed 64-bit)
MAX_OFFSET = 2 ** 63 - 1


def column_output_name(expression: str) -> str:
    """
    Name under which a column expression shows up in a result row.

    "a.name AS label" -> "label", "wp_staff.full_name" -> "full_name",
    anything else is returned unchanged.
    """
    parts = ALIAS_SPLIT.split(expression.strip())
    if len(parts) > 1:
        return parts[-1].strip()
    expression = parts[0]
    if QUALIFIED_COLUMN.match(expression):
        return expression.rsplit('.', 1)[1]
    return expression


def column_source(expression: str) -> str:
    """Expression part of a select-list entry ('c.id AS key' -> 'c.id')."""
    return ALIAS_SPLIT.split(expression.strip())[0].strip()


def resolve_key_column(key: str, columns: Sequence[str]) -> str:
    """
    Source expression a key refers to within a select list.

    An exact entry wins, then an entry whose output name is the key, so
    'key' resolves to 'c.id' for 'c.id AS key' and 'id' to 'c.id'.
    Keys that match nothing come back unchanged.
    """
    for column in columns:
        if column.strip() == key:
            return column_source(column)
    for column in columns:
        if column_output_name(column) == key:
            return column_source(column)
    return key


def column_order_target(expression: str) -> str:
    """ORDER BY target for a select-list entry (the alias when there is one)."""
    parts = ALIAS_SPLIT.split(expression.strip())
    return parts[-1].strip()


class SqlFragment(BaseModel):
    """
    A WHERE predicate or JOIN clause template plus its bound values.

    Placeholders use the qmark style (?), one per value in `params`.
    """
    model_config = ConfigDict(frozen=True)

    sql: str
    params: Tuple[Any, ...] = ()
    scope: str = 'data'

    @field_validator('sql')
    @classmethod
    def validate_sql(cls, v):
        if not v.strip():
            raise ValueError("SQL fragment cannot be empty")
        return v.strip()

    @field_validator('scope')
    @classmethod
    def validate_scope(cls, v):
        if v not in FRAGMENT_SCOPES:
            raise ValueError(f"Invalid fragment scope: {v}")
        return v

    @model_validator(mode='after')
    def check_placeholders(self):
        placeholder_count = self.sql.count('?')
        if placeholder_count != len(self.params):
            raise ValueError(
                f"Fragment '{self.sql}' has {placeholder_count} placeholders "
                f"but {len(self.params)} parameters"
            )
        return self

    @classmethod
    def of(cls, sql: str, *params: Any, scope: str = 'data') -> "SqlFragment":
        """Shorthand: SqlFragment.of("c.status = ?", "active")."""
        return cls(sql=sql, params=params, scope=scope)

    @classmethod
    def coerce(cls, value: Any) -> "SqlFragment":
        """Accept a fragment, a bare SQL string or a {sql, params} mapping."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            return cls(sql=value)
        if isinstance(value, dict):
            return cls(**value)
        raise TypeError(f"Cannot build an SQL fragment from {type(value).__name__}")

    @property
    def is_search_scoped(self) -> bool:
        return self.scope == 'search'


def _coerce_fragments(value):
    if value is None:
        return []
    return [SqlFragment.coerce(v) for v in value]


class DatasetSpec(BaseModel):
    """
    Declarative description of one queryable dataset (YAML or code).

    Frozen: loaders share one instance across requests and extensions see it
    through ExtensionContext, so list-like fields are tuples.
    """
    model_config = ConfigDict(extra='forbid', frozen=True)  # Catch typos in YAML

    table: str
    name: Optional[str] = None
    description: str = ""
    enabled: bool = True
    columns: Tuple[str, ...]
    searchable_columns: Tuple[str, ...] = ()
    primary_key: str = 'id'
    conditions: Tuple[SqlFragment, ...] = ()
    joins: Tuple[SqlFragment, ...] = ()
    status_column: Optional[str] = None
    status_default: Optional[str] = None
    count_distinct: bool = False

    @field_validator('table')
    @classmethod
    def validate_table(cls, v):
        v = v.strip()
        if not TABLE_IDENTIFIER.match(v):
            raise ValueError(
                f"Invalid table identifier '{v}': expected 'name', "
                "'schema.name' or 'name alias'"
            )
        return v

    @field_validator('columns')
    @classmethod
    def validate_columns(cls, v):
        if not v:
            raise ValueError("A dataset needs at least one column")
        if any(not c or not c.strip() for c in v):
            raise ValueError("Column expressions cannot be empty")
        return tuple(c.strip() for c in v)

    @field_validator('searchable_columns')
    @classmethod
    def validate_searchable(cls, v):
        if any(not c or not c.strip() for c in v):
            raise ValueError("Searchable column names cannot be empty")
        return tuple(c.strip() for c in v)

    @field_validator('conditions', 'joins', mode='before')
    @classmethod
    def coerce_fragments(cls, v):
        return _coerce_fragments(v)

    @model_validator(mode='after')
    def check_primary_key(self):
        output_names = {column_output_name(c) for c in self.columns}
        if self.primary_key not in self.columns and \
                column_output_name(self.primary_key) not in output_names:
            raise ValueError(
                f"Primary key '{self.primary_key}' is not among the dataset columns"
            )
        return self

    @property
    def primary_key_source(self) -> str:
        """Select-list expression behind the primary key, for COUNT and default ORDER BY."""
        return resolve_key_column(self.primary_key, self.columns)

    @property
    def dataset_id(self) -> str:
        """Dataset id used for lookups and scoped extensions."""
        if self.name:
            return self.name
        # "wp_app_staff s" -> "wp_app_staff", "main.customers" -> "customers"
        bare = self.table.split()[0]
        return bare.rsplit('.', 1)[-1]


class QueryRequest(BaseModel):
    """Normalized paging/search/sort request."""
    model_config = ConfigDict(frozen=True)

    draw: Union[int, str] = 0
    start: int = 0
    length: int = 10
    search_term: str = ""
    order_column: Optional[int] = None
    order_dir: str = 'ASC'
    status_filter: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('start')
    @classmethod
    def validate_start(cls, v):
        if v < 0:
            raise ValueError("start must be non-negative")
        if v > MAX_OFFSET:
            raise ValueError(f"start must not exceed {MAX_OFFSET}")
        return v

    @field_validator('length')
    @classmethod
    def validate_length(cls, v):
        if v < 1:
            raise ValueError("length must be at least 1")
        return v

    @field_validator('order_dir')
    @classmethod
    def normalize_direction(cls, v):
        return 'DESC' if str(v).strip().upper() == 'DESC' else 'ASC'

    @classmethod
    def from_payload(
        cls,
        payload: Dict[str, Any],
        max_length: int = 100,
        default_length: int = 10,
    ) -> "QueryRequest":
        """
        Parse a DataTables-style request body.

        Args:
            payload: Decoded request body ({"draw", "start", "length",
                     "search": {"value"}, "order": [{"column", "dir"}]})
            max_length: Ceiling applied to the requested page length
            default_length: Page length used when none is sent

        Returns:
            Validated QueryRequest

        Raises:
            RequestValidationError: On non-numeric or out-of-range values
        """
        if not isinstance(payload, dict):
            raise RequestValidationError("Request body must be an object")

        start = _as_int(payload.get('start', 0), 'start')
        length = _as_int(payload.get('length', default_length), 'length')
        if length >= 1:
            length = min(length, max_length)

        search = payload.get('search') or {}
        search_term = search.get('value', '') if isinstance(search, dict) else search
        search_term = '' if search_term is None else str(search_term).strip()

        order_column = None
        order_dir = 'ASC'
        order = payload.get('order') or []
        if isinstance(order, list) and order and isinstance(order[0], dict):
            if order[0].get('column') is not None:
                order_column = _as_int(order[0]['column'], 'order')
            order_dir = order[0].get('dir') or 'ASC'

        known = {'draw', 'start', 'length', 'search', 'order', 'status_filter'}
        extra = {k: v for k, v in payload.items() if k not in known}

        try:
            return cls(
                draw=payload.get('draw', 0),
                start=start,
                length=length,
                search_term=search_term,
                order_column=order_column,
                order_dir=order_dir,
                status_filter=payload.get('status_filter'),
                extra=extra,
            )
        except ValidationError as e:
            first = e.errors()[0]
            loc = first['loc'][0] if first['loc'] else None
            raise RequestValidationError(
                f"Invalid request: {first['msg']}", field=loc
            ) from e


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise RequestValidationError(f"'{name}' must be an integer", field=name)


@dataclass
class ResultEnvelope:
    """Response for one datatable request."""
    draw: Union[int, str]
    records_total: int
    records_filtered: int
    data: List[List[Any]] = field(default_factory=list)
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the wire format."""
        response = {
            'draw': self.draw,
            'recordsTotal': self.records_total,
            'recordsFiltered': self.records_filtered,
            'data': self.data,
        }
        response.update(self.extra)
        return response


@dataclass
class ExecutionContext:
    """Context passed through execution layers."""
    correlation_id: str
    interface: str  # 'http', 'cli', ...
    user_id: Optional[str] = None  # Interface-specific user identifier

    def __str__(self):
        return f"[{self.correlation_id}] {self.interface}:{self.user_id or 'unknown'}"


@dataclass(frozen=True)
class ExtensionContext:
    """Read-only view of the in-flight request handed to extension callbacks."""
    request: QueryRequest
    dataset: DatasetSpec
    execution: ExecutionContext

    @property
    def dataset_id(self) -> str:
        return self.dataset.dataset_id


@dataclass
class DataTableResult:
    """
    Caller-facing outcome of a datatable request.
    Never carries SQL text or bound parameter values.
    """
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None

    def __post_init__(self):
        """Ensure metadata includes execution timing."""
        if 'executed_at' not in self.metadata:
            from datetime import datetime, UTC
            self.metadata['executed_at'] = datetime.now(UTC).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for JSON responses)."""
        return {
            'success': self.success,
            'data': self.data,
            'error': self.error,
            'error_code': self.error_code,
            'metadata': self.metadata,
            'correlation_id': self.correlation_id,
        }
