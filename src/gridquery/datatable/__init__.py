"""Server-side datatable pipeline: paging, search, sorting and extension points."""
from .errors import (
    DataTableError,
    RequestValidationError,
    PermissionDenied,
    DatasetNotFound,
    ExecutionError,
    QueryTimeout,
    ExtensionContractViolation,
    DatasetDefinitionError,
)
from .models import (
    SqlFragment,
    DatasetSpec,
    QueryRequest,
    ResultEnvelope,
    ExecutionContext,
    ExtensionContext,
    DataTableResult,
)
from .builder import QueryBuilder, RenderedQuery
from .extensions import ExtensionRegistry, RegistrySnapshot
from .dataset import DataTableModel
from .loader import DatasetLoader
from .executor import QueryExecutorAdapter, PyodbcExecutor, SqliteExecutor, TimeoutExecutor
from .pipeline import DataTableService, PipelineRun, PipelineState

__all__ = [
    "DataTableError",
    "RequestValidationError",
    "PermissionDenied",
    "DatasetNotFound",
    "ExecutionError",
    "QueryTimeout",
    "ExtensionContractViolation",
    "DatasetDefinitionError",
    "SqlFragment",
    "DatasetSpec",
    "QueryRequest",
    "ResultEnvelope",
    "ExecutionContext",
    "ExtensionContext",
    "DataTableResult",
    "QueryBuilder",
    "RenderedQuery",
    "ExtensionRegistry",
    "RegistrySnapshot",
    "DataTableModel",
    "DatasetLoader",
    "QueryExecutorAdapter",
    "PyodbcExecutor",
    "SqliteExecutor",
    "TimeoutExecutor",
    "DataTableService",
    "PipelineRun",
    "PipelineState",
]
