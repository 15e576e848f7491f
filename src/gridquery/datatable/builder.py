"""
Query builder for server-side datatable requests.

Holds the declarative pieces of one query (columns, joins, conditions,
search, ordering, paging) and renders them into parameterized SQL: the page
query plus the two COUNT variants. Every caller-influenced value goes
through a bound parameter.

Example:
    builder = QueryBuilder('customers c')
    builder.set_columns(['c.id', 'c.name', 'c.email']) \\
           .set_searchable_columns(['c.name', 'c.email']) \\
           .set_search_term('john') \\
           .set_paging(0, 10)
    page = builder.render()
    rows = executor.execute(page.sql, page.params)

A builder is scoped to a single request. Do not share one instance between
concurrent requests.
"""
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

from .models import SqlFragment, column_order_target, column_output_name, resolve_key_column


PAGING_STYLES = ('limit_offset', 'offset_fetch')
LIKE_ESCAPE = '!'


@dataclass(frozen=True)
class RenderedQuery:
    """SQL text, its bound values and the fragment set it was built from."""
    sql: str
    params: Tuple[Any, ...]
    joins: Tuple[SqlFragment, ...]
    conditions: Tuple[SqlFragment, ...]


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so the term matches literally."""
    return (
        term.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace('%', LIKE_ESCAPE + '%')
        .replace('_', LIKE_ESCAPE + '_')
    )


class QueryBuilder:
    """Fluent, last-write-wins query assembler."""

    def __init__(self, table: str, paging_style: str = 'limit_offset'):
        if paging_style not in PAGING_STYLES:
            raise ValueError(f"Unknown paging style: {paging_style}")
        self.table = table
        self.paging_style = paging_style
        self._columns: List[str] = []
        self._searchable_columns: List[str] = []
        self._primary_key = 'id'
        self._count_distinct = False
        self._where: List[SqlFragment] = []
        self._joins: List[SqlFragment] = []
        self._search_term = ''
        self._order_column: Optional[str] = None
        self._order_dir = 'ASC'
        self._start = 0
        self._length = 10

    # Setters

    def set_columns(self, columns: Sequence[str]) -> "QueryBuilder":
        self._columns = list(columns)
        return self

    def set_searchable_columns(self, columns: Sequence[str]) -> "QueryBuilder":
        self._searchable_columns = list(columns)
        return self

    def set_primary_key(self, column: str, distinct: bool = False) -> "QueryBuilder":
        self._primary_key = column
        self._count_distinct = distinct
        return self

    def set_where(self, conditions: Sequence[Any]) -> "QueryBuilder":
        """Replace the WHERE fragments (strings are taken as parameterless)."""
        self._where = [SqlFragment.coerce(c) for c in conditions]
        return self

    def set_joins(self, joins: Sequence[Any]) -> "QueryBuilder":
        self._joins = [SqlFragment.coerce(j) for j in joins]
        return self

    def set_search_term(self, term: Optional[str]) -> "QueryBuilder":
        self._search_term = (term or '').strip()
        return self

    def set_ordering(self, column: Optional[str], direction: str = 'ASC') -> "QueryBuilder":
        """Order by a select-list entry; None restores the default order."""
        self._order_column = column
        self._order_dir = 'DESC' if str(direction).upper() == 'DESC' else 'ASC'
        return self

    def set_paging(self, start: int, length: int) -> "QueryBuilder":
        self._start = max(0, int(start))
        self._length = max(1, int(length))
        return self

    # Read access (used by builder-level extensions and tests)

    @property
    def columns(self) -> List[str]:
        return list(self._columns)

    @property
    def searchable_columns(self) -> List[str]:
        return list(self._searchable_columns)

    @property
    def primary_key(self) -> str:
        return self._primary_key

    @property
    def where(self) -> List[SqlFragment]:
        return list(self._where)

    @property
    def joins(self) -> List[SqlFragment]:
        return list(self._joins)

    @property
    def search_term(self) -> str:
        return self._search_term

    @property
    def ordering(self) -> Tuple[Optional[str], str]:
        return self._order_column, self._order_dir

    @property
    def paging(self) -> Tuple[int, int]:
        return self._start, self._length

    # Clause builders

    def _search_fragment(self) -> Optional[SqlFragment]:
        """OR of case-insensitive substring matches, or None when search is off."""
        if not self._search_term or not self._searchable_columns:
            return None
        pattern = f"%{escape_like(self._search_term.lower())}%"
        parts = [
            f"LOWER({column}) LIKE ? ESCAPE '{LIKE_ESCAPE}'"
            for column in self._searchable_columns
        ]
        return SqlFragment(
            sql='(' + ' OR '.join(parts) + ')',
            params=tuple(pattern for _ in parts),
            scope='search',
        )

    def _filtered_conditions(self) -> List[SqlFragment]:
        conditions = list(self._where)
        search = self._search_fragment()
        if search is not None:
            conditions.append(search)
        return conditions

    def _total_conditions(self) -> List[SqlFragment]:
        return [c for c in self._where if not c.is_search_scoped]

    def _build_from(self) -> Tuple[str, List[Any]]:
        parts = [f"FROM {self.table}"]
        params: List[Any] = []
        for join in self._joins:
            parts.append(join.sql)
            params.extend(join.params)
        return ' '.join(parts), params

    @staticmethod
    def _build_where(conditions: Sequence[SqlFragment]) -> Tuple[str, List[Any]]:
        # Always render a WHERE clause so every query has the same shape
        if not conditions:
            return 'WHERE 1=1', []
        params: List[Any] = []
        for condition in conditions:
            params.extend(condition.params)
        return 'WHERE ' + ' AND '.join(f"({c.sql})" for c in conditions), params

    def qualified_primary_key(self) -> str:
        """
        Primary key as a select-list expression.

        Aliases and bare names resolve to the column they come from; a key
        that matches no column takes the first column's table prefix.
        """
        column = self._primary_key
        if any(c.strip() == column or column_output_name(c) == column for c in self._columns):
            return resolve_key_column(column, self._columns)
        if '.' not in column and self._columns:
            first = self._columns[0]
            if '.' in first and ' ' not in first.strip():
                column = first.split('.', 1)[0] + '.' + column
        return column

    def _build_order(self) -> str:
        if not self._order_column:
            return f"ORDER BY {self.qualified_primary_key()} DESC"
        return f"ORDER BY {column_order_target(self._order_column)} {self._order_dir}"

    def _build_limit(self) -> Tuple[str, List[Any]]:
        if self.paging_style == 'offset_fetch':
            return 'OFFSET ? ROWS FETCH NEXT ? ROWS ONLY', [self._start, self._length]
        return 'LIMIT ? OFFSET ?', [self._length, self._start]

    def _count_expression(self) -> str:
        if self._count_distinct:
            return f"COUNT(DISTINCT {self.qualified_primary_key()})"
        return f"COUNT({self.qualified_primary_key()})"

    # Rendering

    def render(self) -> RenderedQuery:
        """Render the page query (SELECT ... ORDER BY ... with paging)."""
        if not self._columns:
            raise ValueError("Cannot render a query without columns")

        from_sql, from_params = self._build_from()
        conditions = self._filtered_conditions()
        where_sql, where_params = self._build_where(conditions)
        limit_sql, limit_params = self._build_limit()

        sql = ' '.join([
            'SELECT ' + ', '.join(self._columns),
            from_sql,
            where_sql,
            self._build_order(),
            limit_sql,
        ])
        return RenderedQuery(
            sql=sql,
            params=tuple(from_params + where_params + limit_params),
            joins=tuple(self._joins),
            conditions=tuple(conditions),
        )

    def _render_count(self, conditions: List[SqlFragment]) -> RenderedQuery:
        from_sql, from_params = self._build_from()
        where_sql, where_params = self._build_where(conditions)
        sql = f"SELECT {self._count_expression()} AS total {from_sql} {where_sql}"
        return RenderedQuery(
            sql=sql,
            params=tuple(from_params + where_params),
            joins=tuple(self._joins),
            conditions=tuple(conditions),
        )

    def render_count(self) -> RenderedQuery:
        """
        Unfiltered total: joins plus data-scope conditions only.

        The search predicate and search-scoped fragments are left out, so the
        total describes the dataset's scope, not the text search.
        """
        return self._render_count(self._total_conditions())

    def render_filtered_count(self) -> RenderedQuery:
        """Count honoring every condition, including the search predicate."""
        return self._render_count(self._filtered_conditions())

    def filtered_count_needed(self) -> bool:
        """False when the filtered count is guaranteed to equal the total."""
        return self._search_fragment() is not None or any(
            c.is_search_scoped for c in self._where
        )

    def __repr__(self):
        return f"QueryBuilder(table='{self.table}', columns={len(self._columns)})"
