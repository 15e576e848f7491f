"""Dataset model: base query pieces and row formatting for one dataset."""

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from .models import DatasetSpec, QueryRequest, SqlFragment, column_output_name


logger = logging.getLogger(__name__)

STATUS_ALL = 'all'


class DataTableModel:
    """
    Default dataset model built from a DatasetSpec.

    Subclass and override `format_row` or `format_cell` to change how a
    dataset is displayed. The DatasetSpec is never modified; every accessor hands
    out fresh lists so extensions cannot change it behind the model's back.
    """

    def __init__(self, spec: DatasetSpec):
        self.spec = spec

    @property
    def dataset_id(self) -> str:
        return self.spec.dataset_id

    def columns(self, request: QueryRequest) -> List[str]:
        """Base select list, in output order."""
        return list(self.spec.columns)

    def searchable_columns(self) -> List[str]:
        return list(self.spec.searchable_columns)

    def where(self, request: QueryRequest) -> List[SqlFragment]:
        """Static conditions plus the status filter, if the dataset has one."""
        conditions = list(self.spec.conditions)
        status = self.status_condition(request.status_filter)
        if status is not None:
            conditions.append(status)
        return conditions

    def joins(self, request: QueryRequest) -> List[SqlFragment]:
        return list(self.spec.joins)

    def status_condition(self, status_filter: Optional[str]) -> Optional[SqlFragment]:
        """
        Equality filter on the status column.

        Uses the requested status or the dataset default; 'all' (or no value
        at all) disables the filter.
        """
        if not self.spec.status_column:
            return None
        status = status_filter if status_filter else self.spec.status_default
        if not status or status == STATUS_ALL:
            return None
        return SqlFragment.of(f"{self.spec.status_column} = ?", status)

    def format_row(self, row: Dict[str, Any], columns: List[str]) -> List[Any]:
        """
        Convert a raw row into one output cell per column.

        A column that cannot be resolved against the row yields an empty
        cell instead of failing the page.
        """
        cells = []
        for column in columns:
            key = column_output_name(column)
            if key in row:
                value = row[key]
            elif column in row:
                value = row[column]
            else:
                logger.debug(f"{self.dataset_id}: column '{column}' missing from row")
                value = None
            cells.append(self.format_cell(column, value))
        return cells

    def format_cell(self, column: str, value: Any) -> Any:
        """JSON-friendly cell value."""
        if value is None:
            return ''
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        return value

    def __repr__(self):
        return f"DataTableModel(dataset='{self.dataset_id}')"
