"""
Request orchestration for server-side datatables.

One request moves through a fixed sequence of states:

    received -> columns_resolved -> conditions_resolved -> assembled
             -> executed -> formatted -> enveloped -> sent

and can drop into `failed` from any of them. Each stage feeds the next;
there is no backtracking and no partial envelope on failure.

The page query and the count queries are independent reads. If the
underlying rows change between them, the counts and the page are not
guaranteed to describe the same point in time.
"""
import logging
import uuid
from datetime import datetime, UTC
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Type

from gridquery.config import Config
from .builder import QueryBuilder, RenderedQuery
from .dataset import DataTableModel
from .errors import (
    DataTableError,
    DatasetNotFound,
    ExecutionError,
    PermissionDenied,
    RequestValidationError,
)
from .executor import QueryExecutorAdapter, audit_log
from .extensions import (
    BUILDER,
    COLUMNS,
    JOINS,
    RESPONSE,
    ROW_OUTPUT,
    WHERE,
    ExtensionRegistry,
    RegistrySnapshot,
)
from .loader import DatasetLoader
from .models import (
    DataTableResult,
    ExecutionContext,
    ExtensionContext,
    QueryRequest,
    ResultEnvelope,
)


logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    RECEIVED = 'received'
    COLUMNS_RESOLVED = 'columns_resolved'
    CONDITIONS_RESOLVED = 'conditions_resolved'
    ASSEMBLED = 'assembled'
    EXECUTED = 'executed'
    FORMATTED = 'formatted'
    ENVELOPED = 'enveloped'
    SENT = 'sent'
    FAILED = 'failed'


STATE_ORDER = [
    PipelineState.RECEIVED,
    PipelineState.COLUMNS_RESOLVED,
    PipelineState.CONDITIONS_RESOLVED,
    PipelineState.ASSEMBLED,
    PipelineState.EXECUTED,
    PipelineState.FORMATTED,
    PipelineState.ENVELOPED,
    PipelineState.SENT,
]


class PipelineRun:
    """State tracker for one request."""

    def __init__(self, context: ExecutionContext):
        self.context = context
        self.state = PipelineState.RECEIVED
        self.history: List[PipelineState] = [PipelineState.RECEIVED]
        self.failure: Optional[BaseException] = None

    def advance(self, state: PipelineState):
        """Move to the next state; anything but the immediate successor is a bug."""
        if self.state is PipelineState.FAILED:
            raise RuntimeError(f"{self.context} cannot advance a failed pipeline")
        expected = STATE_ORDER[STATE_ORDER.index(self.state) + 1]
        if state is not expected:
            raise RuntimeError(
                f"{self.context} invalid transition {self.state.value} -> {state.value}"
            )
        self.state = state
        self.history.append(state)
        logger.debug(f"{self.context} pipeline -> {state.value}")

    def fail(self, error: BaseException):
        self.failure = error
        self.state = PipelineState.FAILED
        self.history.append(PipelineState.FAILED)
        logger.debug(f"{self.context} pipeline -> failed ({type(error).__name__})")

    @property
    def failed(self) -> bool:
        return self.state is PipelineState.FAILED


class DataTableService:
    """
    Drives dataset models, extensions and the executor for datatable requests.

    Every collaborator is injected: the executor adapter, the extension
    registry (read through a per-request snapshot) and the configuration.
    """

    def __init__(
        self,
        loader: DatasetLoader,
        executor: QueryExecutorAdapter,
        registry: Optional[ExtensionRegistry] = None,
        config: Optional[Config] = None,
    ):
        self.loader = loader
        self.executor = executor
        self.registry = registry if registry is not None else ExtensionRegistry()
        self.config = config if config is not None else Config()
        self._model_classes: Dict[str, Type[DataTableModel]] = {}

    def register_model(self, dataset_id: str, model_class: Type[DataTableModel]):
        """Use a DataTableModel subclass (custom formatting) for one dataset."""
        self._model_classes[dataset_id] = model_class

    def get_model(self, dataset_id: str) -> DataTableModel:
        spec = self.loader.get_dataset(dataset_id)
        if spec is None:
            raise DatasetNotFound(f"Dataset not found: {dataset_id}", dataset_id=dataset_id)
        model_class = self._model_classes.get(dataset_id, DataTableModel)
        return model_class(spec)

    # Raising API

    def run(
        self,
        dataset_id: str,
        request: QueryRequest,
        context: Optional[ExecutionContext] = None,
        snapshot: Optional[RegistrySnapshot] = None,
        trace: Optional[PipelineRun] = None,
    ) -> ResultEnvelope:
        """
        Process one request and return its envelope.

        Args:
            dataset_id: Dataset lookup id
            request: Validated request
            context: Execution context with correlation ID
            snapshot: Extension snapshot to use (defaults to the registry's current one)
            trace: PipelineRun to record state transitions in

        Returns:
            ResultEnvelope after the response extensions ran

        Raises:
            DatasetNotFound, PermissionDenied, ExtensionContractViolation,
            ExecutionError
        """
        if context is None:
            context = _new_context()
        if snapshot is None:
            snapshot = self.registry.snapshot()
        if trace is None:
            trace = PipelineRun(context)

        try:
            return self._run(dataset_id, request, context, snapshot, trace)
        except BaseException as e:
            trace.fail(e)
            raise

    def _run(
        self,
        dataset_id: str,
        request: QueryRequest,
        context: ExecutionContext,
        snapshot: RegistrySnapshot,
        trace: PipelineRun,
    ) -> ResultEnvelope:
        model = self.get_model(dataset_id)
        self._check_access(model, snapshot, context)
        ext = ExtensionContext(request=request, dataset=model.spec, execution=context)

        columns = snapshot.run(COLUMNS, model.columns(request), ext)
        trace.advance(PipelineState.COLUMNS_RESOLVED)

        where = snapshot.run(WHERE, model.where(request), ext)
        joins = snapshot.run(JOINS, model.joins(request), ext)
        trace.advance(PipelineState.CONDITIONS_RESOLVED)

        builder = self._new_builder(model, columns, where, joins)
        builder.set_search_term(request.search_term)
        builder.set_paging(request.start, min(request.length, self.config.max_page_length))

        # The order index refers to the post-extension column list
        index = request.order_column
        if index is not None and 0 <= index < len(columns):
            builder.set_ordering(columns[index], request.order_dir)
        elif index is not None:
            logger.debug(
                f"{context} order column {index} out of range ({len(columns)} columns), "
                "using default order"
            )

        builder = snapshot.run(BUILDER, builder, ext)
        trace.advance(PipelineState.ASSEMBLED)

        page = builder.render()
        rows = self._execute(context, model, 'page', page)
        total = self._scalar(context, model, 'count_total', builder.render_count())
        if builder.filtered_count_needed():
            filtered = self._scalar(
                context, model, 'count_filtered', builder.render_filtered_count()
            )
        else:
            filtered = total
        if filtered > total:
            logger.warning(
                f"{context} {model.dataset_id}: filtered count {filtered} exceeds "
                f"total {total}, data changed between reads"
            )
            filtered = total
        trace.advance(PipelineState.EXECUTED)

        output_columns = builder.columns
        data = []
        for raw in rows:
            formatted = model.format_row(raw, output_columns)
            data.append(snapshot.run(ROW_OUTPUT, formatted, ext, raw))
        trace.advance(PipelineState.FORMATTED)

        envelope = ResultEnvelope(
            draw=request.draw,
            records_total=total,
            records_filtered=filtered,
            data=data,
        )
        envelope = snapshot.run(RESPONSE, envelope, ext)
        trace.advance(PipelineState.ENVELOPED)

        logger.info(
            f"{context} {model.dataset_id}: {len(data)} rows "
            f"(total={total}, filtered={filtered})"
        )
        return envelope

    def _check_access(self, model: DataTableModel, snapshot: RegistrySnapshot,
                      context: ExecutionContext):
        if not snapshot.is_allowed(model.dataset_id, context, default=self.config.default_allow):
            raise PermissionDenied(
                f"Access to dataset '{model.dataset_id}' denied for {context.user_id or 'unknown'}",
                dataset_id=model.dataset_id,
            )

    def _new_builder(self, model: DataTableModel, columns, where, joins) -> QueryBuilder:
        return (
            QueryBuilder(model.spec.table, paging_style=self.config.paging_style)
            .set_columns(columns)
            .set_searchable_columns(model.searchable_columns())
            .set_primary_key(model.spec.primary_key_source, distinct=model.spec.count_distinct)
            .set_where(where)
            .set_joins(joins)
        )

    def _execute(self, context, model, kind: str, query: RenderedQuery) -> List[Dict[str, Any]]:
        rows = self._call(context, model, kind, query, self.executor.execute)
        audit_log(context, kind, query.sql, query.params, success=True, row_count=len(rows))
        return rows

    def _scalar(self, context, model, kind: str, query: RenderedQuery) -> int:
        value = int(self._call(context, model, kind, query, self.executor.scalar))
        audit_log(context, kind, query.sql, query.params, success=True, row_count=1)
        return value

    def _call(self, context, model, kind: str, query: RenderedQuery, method: Callable):
        try:
            return method(query.sql, query.params)
        except ExecutionError as e:
            if e.sql is None:
                e.sql, e.params = query.sql, query.params
            e.dataset_id = model.dataset_id
            audit_log(context, kind, query.sql, query.params, success=False, error=str(e))
            raise
        except Exception as e:
            audit_log(context, kind, query.sql, query.params, success=False, error=str(e))
            raise ExecutionError(
                f"{kind} query failed for {model.dataset_id}: {e}",
                sql=query.sql,
                params=query.params,
                dataset_id=model.dataset_id,
            ) from e

    # Caller-facing API

    def handle(
        self,
        dataset_id: str,
        payload: Dict[str, Any],
        context: Optional[ExecutionContext] = None,
    ) -> DataTableResult:
        """
        Parse a raw request body, run it and wrap the outcome.

        Failures come back as an unsuccessful DataTableResult with an error
        code. SQL text and parameter values only go to the logs.
        """
        if context is None:
            context = _new_context()
        trace = PipelineRun(context)
        logger.info(f"{context} DataTable request: {dataset_id}")

        start_time = datetime.now(UTC)
        try:
            request = QueryRequest.from_payload(
                payload,
                max_length=self.config.max_page_length,
                default_length=self.config.default_page_length,
            )
            envelope = self.run(dataset_id, request, context, trace=trace)
            data = envelope.to_dict()
            trace.advance(PipelineState.SENT)
        except RequestValidationError as e:
            trace.fail(e)
            logger.warning(f"{context} Validation failed: {e}")
            return self._error_result(context, e, str(e))
        except (PermissionDenied, DatasetNotFound) as e:
            logger.warning(f"{context} {e}")
            return self._error_result(context, e, e.public_message)
        except ExecutionError as e:
            logger.error(
                f"{context} {e} sql={e.sql!r} params={e.params!r}",
                exc_info=True,
            )
            return self._error_result(context, e, e.public_message, retryable=e.retryable)
        except DataTableError as e:
            logger.error(f"{context} {e}", exc_info=True)
            return self._error_result(context, e, e.public_message)
        except Exception as e:
            logger.error(f"{context} Unexpected datatable failure: {e}", exc_info=True)
            return DataTableResult(
                success=False,
                error=DataTableError.public_message,
                error_code='INTERNAL_ERROR',
                correlation_id=context.correlation_id,
            )

        execution_time = (datetime.now(UTC) - start_time).total_seconds()
        return DataTableResult(
            success=True,
            data=data,
            metadata={
                'row_count': len(envelope.data),
                'execution_time_seconds': execution_time,
            },
            correlation_id=context.correlation_id,
        )

    @staticmethod
    def _error_result(context: ExecutionContext, error: DataTableError, message: str,
                      retryable: bool = False) -> DataTableResult:
        return DataTableResult(
            success=False,
            error=message,
            error_code=error.error_code,
            metadata={'retryable': retryable},
            correlation_id=context.correlation_id,
        )

    def count_records(
        self,
        dataset_id: str,
        status_filter: Optional[str] = None,
        context: Optional[ExecutionContext] = None,
        snapshot: Optional[RegistrySnapshot] = None,
    ) -> int:
        """
        Total record count for dashboard statistics.

        Applies the status filter ('all' disables it), access checks and the
        where/joins extensions, but no search and no paging.
        """
        if context is None:
            context = _new_context()
        if snapshot is None:
            snapshot = self.registry.snapshot()

        model = self.get_model(dataset_id)
        self._check_access(model, snapshot, context)
        request = QueryRequest(length=1, status_filter=status_filter)
        ext = ExtensionContext(request=request, dataset=model.spec, execution=context)

        columns = snapshot.run(COLUMNS, model.columns(request), ext)
        where = snapshot.run(WHERE, model.where(request), ext)
        joins = snapshot.run(JOINS, model.joins(request), ext)
        builder = self._new_builder(model, columns, where, joins)
        return self._scalar(context, model, 'count_total', builder.render_count())


def _new_context() -> ExecutionContext:
    return ExecutionContext(correlation_id=str(uuid.uuid4()), interface='unknown')
