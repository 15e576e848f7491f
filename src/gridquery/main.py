"""
Command-line entry point: run one datatable request against a dataset.
"""
import sys
import json
import logging
import argparse
import uuid

from gridquery.config import load_config, setup_logging
from gridquery.datatable import (
    DataTableService,
    DatasetLoader,
    ExecutionContext,
    PyodbcExecutor,
    SqliteExecutor,
    TimeoutExecutor,
)

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description='gridquery - run a server-side datatable request',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m gridquery.main --dataset staff --request req.json --sqlite app.db
  python -m gridquery.main --dataset staff --odbc-env-key DB_APP --database app

  # Without --request the body is read from stdin:
  echo '{"draw": 1, "start": 0, "length": 10}' | python -m gridquery.main --dataset staff --sqlite app.db
        """
    )

    parser.add_argument('--dataset', required=True, help='Dataset id (YAML file name)')
    parser.add_argument('--request', help='JSON request body file (default: stdin)')
    parser.add_argument(
        '--datasets-dir',
        help='Dataset definitions directory (overrides DATATABLE_DEFINITIONS_PATH)'
    )

    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument('--sqlite', metavar='PATH', help='SQLite database file')
    group.add_argument(
        '--odbc-env-key',
        metavar='VAR',
        help='Environment variable holding an ODBC connection string'
    )
    parser.add_argument('--database', default='', help='Database name for ODBC connections')
    parser.add_argument('--user', help='User id recorded in the execution context')

    return parser.parse_args(argv)


def build_executor(args, config):
    if args.sqlite:
        adapter = SqliteExecutor(args.sqlite)
    else:
        adapter = PyodbcExecutor(args.database, args.odbc_env_key)
    return TimeoutExecutor(adapter, config.query_timeout_seconds)


def main(argv=None):
    args = parse_args(argv)
    config = load_config()
    setup_logging(config.log_level)

    if args.request:
        with open(args.request, 'r') as f:
            payload = json.load(f)
    else:
        payload = json.load(sys.stdin)

    loader = DatasetLoader(args.datasets_dir or config.datasets_path)
    executor = build_executor(args, config)

    context = ExecutionContext(
        correlation_id=str(uuid.uuid4()),
        interface='cli',
        user_id=args.user,
    )

    service = DataTableService(loader, executor, config=config)
    try:
        result = service.handle(args.dataset, payload, context)
    finally:
        executor.close()

    print(json.dumps(result.to_dict(), indent=2, default=str))
    return 0 if result.success else 1


if __name__ == "__main__":
    sys.exit(main())
