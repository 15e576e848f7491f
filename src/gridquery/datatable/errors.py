"""Error taxonomy for the datatable pipeline."""

from typing import Any, Optional, Sequence


class DataTableError(Exception):
    """Base class for every failure the pipeline reports to its caller."""

    error_code = "DATATABLE_ERROR"
    # Message safe to hand to an external caller
    public_message = "An error occurred while loading data"

    def __init__(self, message: str, dataset_id: Optional[str] = None):
        super().__init__(message)
        self.dataset_id = dataset_id


class RequestValidationError(DataTableError):
    """Malformed paging/search/sort request."""

    error_code = "VALIDATION_ERROR"
    public_message = "Invalid request"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class PermissionDenied(DataTableError):
    """An access check refused the dataset."""

    error_code = "PERMISSION_DENIED"
    public_message = "Permission denied"


class DatasetNotFound(DataTableError):
    error_code = "NOT_FOUND"
    public_message = "Unknown dataset"


class ExecutionError(DataTableError):
    """
    The executor adapter failed.

    Keeps the rendered SQL and parameters for internal diagnosis. These are
    never part of `public_message`.
    """

    error_code = "EXECUTION_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        sql: Optional[str] = None,
        params: Sequence[Any] = (),
        dataset_id: Optional[str] = None,
    ):
        super().__init__(message, dataset_id=dataset_id)
        self.sql = sql
        self.params = tuple(params)


class QueryTimeout(ExecutionError):
    """Executor call exceeded its time budget; safe for the caller to retry."""

    error_code = "QUERY_TIMEOUT"
    public_message = "The query timed out, please retry"
    retryable = True


class ExtensionContractViolation(DataTableError):
    """A registered callback returned a value of the wrong shape."""

    error_code = "EXTENSION_ERROR"

    def __init__(self, point: str, callback: Any, detail: str):
        name = getattr(callback, "__qualname__", repr(callback))
        super().__init__(f"Extension '{name}' on point '{point}' {detail}")
        self.point = point
        self.callback = callback


class DatasetDefinitionError(ValueError):
    """A dataset definition file could not be loaded or validated."""
