"""Tests for gridquery.datatable.extensions."""

import threading

import pytest

from gridquery.datatable import (
    ExtensionContractViolation,
    ExtensionRegistry,
    QueryBuilder,
    ResultEnvelope,
    SqlFragment,
)
from gridquery.datatable.extensions import (
    BUILDER,
    COLUMNS,
    JOINS,
    RESPONSE,
    ROW_OUTPUT,
    WHERE,
)


def recorder(log, label):
    def callback(value, ctx):
        log.append(label)
        return value
    return callback


class TestOrdering:
    """Tests for callback execution order."""

    def test_empty_point_is_identity(self, registry, ext_context):
        """Test a point with no callbacks returns its input unchanged."""
        columns = ['id', 'name']
        assert registry.snapshot().run(COLUMNS, columns, ext_context) is columns

    def test_priority_order(self, registry, ext_context):
        """Test callbacks run in ascending priority regardless of registration order."""
        log = []
        registry.register_where_extension(20, recorder(log, 20))
        registry.register_where_extension(5, recorder(log, 5))
        registry.register_where_extension(10, recorder(log, 10))

        registry.snapshot().run(WHERE, [], ext_context)
        assert log == [5, 10, 20]

    def test_numeric_not_lexical(self, registry, ext_context):
        """Test priorities compare as numbers."""
        log = []
        registry.register_joins_extension(100, recorder(log, 100))
        registry.register_joins_extension(9, recorder(log, 9))

        registry.snapshot().run(JOINS, [], ext_context)
        assert log == [9, 100]

    def test_equal_priority_keeps_registration_order(self, registry, ext_context):
        """Test ties run in registration order."""
        log = []
        for label in ["first", "second", "third"]:
            registry.register_columns_extension(10, recorder(log, label))

        registry.snapshot().run(COLUMNS, ['id'], ext_context)
        assert log == ["first", "second", "third"]

    def test_value_threaded_through(self, registry, ext_context):
        """Test each callback sees the previous callback's output."""
        registry.register_columns_extension(20, lambda cols, ctx: cols + ['b'])
        registry.register_columns_extension(10, lambda cols, ctx: cols + ['a'])

        result = registry.snapshot().run(COLUMNS, ['id'], ext_context)
        assert result == ['id', 'a', 'b']

    def test_dataset_scope(self, registry, ext_context):
        """Test scoped callbacks only run for their dataset."""
        registry.register_columns_extension(10, lambda cols, ctx: cols + ['x'], dataset='orders')
        registry.register_columns_extension(10, lambda cols, ctx: cols + ['y'], dataset='customers')

        result = registry.snapshot().run(COLUMNS, ['id'], ext_context)
        assert result == ['id', 'y']

    def test_row_output_extra_argument(self, registry, ext_context):
        """Test row callbacks receive the raw row before the context."""
        registry.register_row_extension(10, lambda row, raw, ctx: row + [raw['id'] * 2])

        result = registry.snapshot().run(ROW_OUTPUT, [1, 'a'], ext_context, {'id': 21})
        assert result == [1, 'a', 42]

    def test_callbacks_listing(self, registry):
        """Test callbacks() lists in execution order, filtered by dataset."""
        def a(v, c): return v
        def b(v, c): return v

        registry.register_where_extension(2, b)
        registry.register_where_extension(1, a, dataset='other')
        snapshot = registry.snapshot()
        assert snapshot.callbacks(WHERE) == [a, b]
        assert snapshot.callbacks(WHERE, 'customers') == [b]


class TestContracts:
    """Tests for same-shape enforcement."""

    @pytest.mark.parametrize("point,value,bad", [
        (COLUMNS, ['id'], None),
        (COLUMNS, ['id'], 'id'),
        (COLUMNS, ['id'], []),
        (COLUMNS, ['id'], ['id', 3]),
        (WHERE, [], None),
        (WHERE, [], [42]),
        (WHERE, [], [{'sql': 'a = ?', 'params': []}]),
        (JOINS, [], "JOIN x"),
        (RESPONSE, ResultEnvelope(draw=1, records_total=0, records_filtered=0), {'draw': 1}),
    ])
    def test_wrong_shape(self, registry, ext_context, point, value, bad):
        """Test wrong return shapes raise ExtensionContractViolation."""
        registry.register(point, 10, lambda v, ctx: bad)
        with pytest.raises(ExtensionContractViolation) as exc_info:
            registry.snapshot().run(point, value, ext_context)
        assert exc_info.value.point == point

    def test_builder_must_return_builder(self, registry, ext_context):
        """Test the builder point rejects anything but a QueryBuilder."""
        registry.register_builder_extension(10, lambda b, ctx: None)
        with pytest.raises(ExtensionContractViolation):
            registry.snapshot().run(BUILDER, QueryBuilder('t'), ext_context)

    def test_row_must_stay_list(self, registry, ext_context):
        """Test row callbacks must return a list."""
        registry.register_row_extension(10, lambda row, raw, ctx: tuple(row))
        with pytest.raises(ExtensionContractViolation):
            registry.snapshot().run(ROW_OUTPUT, [1], ext_context, {})

    def test_strings_coerced_to_fragments(self, registry, ext_context):
        """Test where callbacks may return plain SQL strings."""
        registry.register_where_extension(10, lambda where, ctx: where + ["a IS NULL"])
        result = registry.snapshot().run(WHERE, [], ext_context)
        assert result == [SqlFragment(sql="a IS NULL")]

    def test_violation_names_callback(self, registry, ext_context):
        """Test the error message names the offending callback."""
        def broken_columns(columns, ctx):
            return None

        registry.register_columns_extension(10, broken_columns)
        with pytest.raises(ExtensionContractViolation, match="broken_columns"):
            registry.snapshot().run(COLUMNS, ['id'], ext_context)

    def test_unknown_point(self, registry, ext_context):
        """Test unknown point names are rejected."""
        with pytest.raises(ValueError):
            registry.register('nope', 10, lambda v, c: v)
        with pytest.raises(KeyError):
            registry.snapshot().run('nope', [], ext_context)

    def test_callback_must_be_callable(self, registry):
        """Test non-callables are rejected at registration."""
        with pytest.raises(TypeError):
            registry.register_where_extension(10, "not callable")
        with pytest.raises(TypeError):
            registry.register_access_check(None)


class TestAccessChecks:
    """Tests for access check consultation."""

    def test_default_policy(self, registry):
        """Test the default applies with no checks."""
        snapshot = registry.snapshot()
        assert snapshot.is_allowed('customers', None) is True
        assert snapshot.is_allowed('customers', None, default=False) is False

    def test_all_checks_must_pass(self, registry):
        """Test one False check denies."""
        registry.register_access_check(lambda dataset_id: True)
        registry.register_access_check(lambda dataset_id: dataset_id != 'customers')
        snapshot = registry.snapshot()
        assert snapshot.is_allowed('customers', None) is False
        assert snapshot.is_allowed('orders', None) is True

    def test_scoped_check(self, registry):
        """Test scoped checks only apply to their dataset."""
        registry.register_access_check(lambda dataset_id: False, dataset='payroll')
        snapshot = registry.snapshot()
        assert snapshot.is_allowed('customers', None, default=True) is True
        assert snapshot.is_allowed('payroll', None, default=True) is False

    def test_check_receives_context(self, registry, execution_context):
        """Test context-aware checks get the dataset id and execution context."""
        seen = []
        registry.register_access_check(
            lambda dataset_id, ctx: seen.append((dataset_id, ctx)) or True,
            with_context=True,
        )
        registry.snapshot().is_allowed('customers', execution_context)
        assert seen == [('customers', execution_context)]

    def test_non_bool_is_violation(self, registry):
        """Test truthy non-bool answers are rejected."""
        registry.register_access_check(lambda dataset_id: 1)
        with pytest.raises(ExtensionContractViolation):
            registry.snapshot().is_allowed('customers', None)

    def test_check_called_with_dataset_id_only(self, registry, execution_context):
        """Test plain checks are called as fn(dataset_id)."""
        seen = []
        registry.register_access_check(lambda *args: seen.append(args) or True)
        registry.snapshot().is_allowed('customers', execution_context)
        assert seen == [('customers',)]

    def test_raising_check_is_violation(self, registry):
        """Test exceptions from a check are reported as contract violations."""
        def broken(dataset_id):
            raise KeyError(dataset_id)

        registry.register_access_check(broken)
        with pytest.raises(ExtensionContractViolation, match="broken"):
            registry.snapshot().is_allowed('customers', None)


class TestRegistryState:
    """Tests for snapshots and concurrent registration."""

    def test_snapshot_unaffected_by_later_registration(self, registry, ext_context):
        """Test a snapshot does not see registrations made after it."""
        snapshot = registry.snapshot()
        registry.register_columns_extension(10, lambda cols, ctx: cols + ['late'])

        assert snapshot.run(COLUMNS, ['id'], ext_context) == ['id']
        assert registry.snapshot().run(COLUMNS, ['id'], ext_context) == ['id', 'late']

    def test_concurrent_registration(self, registry):
        """Test registrations from many threads are all kept."""
        def register_many():
            for i in range(50):
                registry.register_where_extension(i % 7, lambda where, ctx: where)

        threads = [threading.Thread(target=register_many) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(registry) == 400
        priorities = [r.priority for r in registry.snapshot()._registrations[WHERE]]
        assert priorities == sorted(priorities)

    def test_clear(self, registry):
        """Test clear() drops everything."""
        registry.register_where_extension(10, lambda where, ctx: where)
        registry.register_access_check(lambda dataset_id: True)
        registry.clear()
        assert len(registry) == 0
