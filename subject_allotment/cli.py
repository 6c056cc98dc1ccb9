"""Command line entry point: run-allocation, import, template, show, init-db."""

import argparse
import json
import logging
import sys
from pathlib import Path

from sqlalchemy.exc import SQLAlchemyError

from .config import load_settings
from .coordinator import RunCoordinator
from .errors import AllotmentError, StorageError
from .loader import generate_template, import_snapshot, read_snapshot
from .logging_utils import configure_logging
from .storage import AllotmentStore, install_schema

logger = logging.getLogger(__name__)

USAGE_EXIT_CODE = 2


def build_parser():
    parser = argparse.ArgumentParser(prog="subject-allotment", description="Subject allotment engine")
    parser.add_argument("--config", default=None, help="Path to settings YAML")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run-allocation", help="Allocate seats for one pool")
    run_parser.add_argument("--pool", required=True, type=int)

    import_parser = subparsers.add_parser("import", help="Validate and import an input snapshot")
    import_parser.add_argument("--input", required=True, help="Workbook (.xlsx) or directory of CSV files")

    template_parser = subparsers.add_parser("template", help="Write an empty input workbook")
    template_parser.add_argument("--output", required=True)

    show_parser = subparsers.add_parser("show", help="Print stored allotments")
    target = show_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--pool", type=int)
    target.add_argument("--regno")

    subparsers.add_parser("init-db", help="Create the allotment schema")
    return parser


def _emit(payload, stream=None):
    print(json.dumps(payload, indent=2, default=str), file=stream or sys.stdout)


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        settings = load_settings(Path(args.config) if args.config else None)
    except (OSError, ValueError) as e:
        _emit({"error": "invalid_config", "message": str(e)}, sys.stderr)
        return USAGE_EXIT_CODE
    configure_logging(settings.log_level, settings.log_path)

    if args.command == "template":
        generate_template(args.output)
        return 0

    try:
        store = AllotmentStore.from_url(settings.database_url)
        if args.command == "init-db":
            install_schema(store.engine)
        elif args.command == "run-allocation":
            coordinator = RunCoordinator(store, lock_ttl_seconds=settings.lock_ttl_seconds)
            result = coordinator.run_allocation(args.pool)
            payload = result.summary.to_dict()
            payload["subjects"] = result.utilization.reset_index().to_dict("records")
            payload["skipped"] = dict(result.skipped)
            _emit(payload)
        elif args.command == "import":
            counts = import_snapshot(store, read_snapshot(args.input), settings.default_intake)
            _emit(counts)
        elif args.command == "show":
            if args.pool is not None:
                _emit(store.allotments_for_pool(args.pool))
            else:
                _emit(store.allotment_for_student(args.regno))
    except AllotmentError as e:
        logger.error("%s failed: %s", args.command, e)
        _emit(e.to_dict(), sys.stderr)
        return e.exit_code
    except SQLAlchemyError as e:
        logger.error("%s failed: database error: %s", args.command, e)
        err = StorageError(f"Database error: {e}")
        _emit(err.to_dict(), sys.stderr)
        return err.exit_code
    except OSError as e:
        logger.error("%s failed: %s", args.command, e)
        _emit({"error": "io_error", "message": str(e)}, sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
