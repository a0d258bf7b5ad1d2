#!/usr/bin/env python3
"""Dunning engine runner.

Command-line tool for running the dunning operations against the
configured database. Prints a JSON summary on stdout; logs go to stderr.

Exit codes: 0 success, 1 validation or concurrency error, 2 store
unavailable.
"""

import argparse
import json
import os
import sys
from datetime import date

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", ".."))

import sqlalchemy as sa

from agents.dunning import DunningConfig, DunningEngine, FixedClock
from agents.dunning.delivery import get_delivery_service
from agents.dunning.errors import (
    DunningError,
    InvalidTemplateTransitionError,
    ReassignmentInProgressError,
    StoreUnavailableError,
    WorkflowConfigurationError,
)
from agents.dunning.sql_stores import (
    SqlObligationStore,
    SqlTemplateStore,
    SqlWorkflowStore,
    create_schema,
    get_tables,
)
from backend.core.config import settings
from backend.core.observability import init_observability
from backend.core.observability.logging import logger

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_STORE_UNAVAILABLE = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Aging-bucket dunning engine runner",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Recompute aging buckets for all owners
  python tools/operate/dunning_run.py reassign

  # Generate draft templates for one owner and bucket
  python tools/operate/dunning_run.py --owner acme generate dpd_31_60 --tone 4

  # Dry-run dispatch with a fixed reference date
  python tools/operate/dunning_run.py --transport stdout --today 2025-03-01 dispatch
        """,
    )
    parser.add_argument("--owner", help="Owner scope (default: all owners)")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    parser.add_argument(
        "--init-schema", action="store_true", help="Create tables before running (local use)"
    )
    parser.add_argument("--today", help="Override today's date (ISO format: YYYY-MM-DD)")
    parser.add_argument("--transport", choices=["stdout", "webhook"], help="Delivery transport")
    parser.add_argument("--chunk-size", type=int, help="Obligations per chunk")
    parser.add_argument("--workers", type=int, help="Concurrent chunk workers")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("reassign", help="Recompute aging buckets")

    generate = sub.add_parser("generate", help="Generate draft templates for a bucket")
    generate.add_argument("bucket", help="Bucket key, e.g. dpd_1_30")
    generate.add_argument("--tone", type=int, help="Tone modifier 1-5 (3 = standard)")
    generate.add_argument("--approach", help="Approach style hint")

    dispatch = sub.add_parser("dispatch", help="Dispatch approved templates")
    dispatch.add_argument("--limit", type=int, help="Max delivery attempts in this run")

    sub.add_parser("report", help="Count obligations per workflow step")
    sub.add_parser("seed", help="Create missing system-default workflows")

    approve = sub.add_parser("approve", help="Approve a pending template")
    approve.add_argument("template_id")
    discard = sub.add_parser("discard", help="Discard a template")
    discard.add_argument("template_id")
    return parser


def build_engine(args: argparse.Namespace) -> DunningEngine:
    engine = sa.create_engine(args.database_url or settings.database_url, future=True)
    tables = create_schema(engine) if args.init_schema else get_tables(sa.MetaData())

    config = DunningConfig.from_owner(args.owner)
    if args.chunk_size:
        config.chunk_size = args.chunk_size
    if args.workers:
        config.max_workers = args.workers
    if getattr(args, "limit", None) is not None:
        config.dispatch_limit = args.limit
    config.validate()

    clock = FixedClock(date.fromisoformat(args.today)) if args.today else None
    return DunningEngine(
        SqlObligationStore(engine, tables),
        SqlWorkflowStore(engine, tables),
        SqlTemplateStore(engine, tables),
        get_delivery_service(args.transport, config.delivery_timeout_ms),
        config=config,
        clock=clock,
    )


def run_command(engine: DunningEngine, args: argparse.Namespace) -> dict:
    if args.command == "reassign":
        return engine.reassign_buckets().to_dict()
    if args.command == "generate":
        return engine.generate_templates(args.bucket, args.tone, args.approach).to_dict()
    if args.command == "dispatch":
        return engine.dispatch_approved_templates().to_dict()
    if args.command == "report":
        return engine.count_step_populations().to_dict()
    if args.command == "seed":
        created = engine.seed_default_workflows()
        return {"created": [{"bucket": w.bucket.value, "workflow_id": w.workflow_id} for w in created]}
    if args.command == "approve":
        template = engine.lifecycle.approve(args.template_id)
        return {"template_id": template.template_id, "state": template.state.value}
    if args.command == "discard":
        template = engine.lifecycle.discard(args.template_id)
        return {"template_id": template.template_id, "state": template.state.value}
    raise ValueError(f"Unknown command: {args.command}")


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    init_observability(settings.enable_metrics, "DEBUG" if args.verbose else None)

    try:
        engine = build_engine(args)
        result = run_command(engine, args)
    except StoreUnavailableError as e:
        logger.error("Store unavailable", extra={"command": args.command, "error": str(e)})
        print(json.dumps({"success": False, "error": str(e)}))
        return EXIT_STORE_UNAVAILABLE
    except (
        ValueError,
        ReassignmentInProgressError,
        InvalidTemplateTransitionError,
        WorkflowConfigurationError,
    ) as e:
        logger.error("Command rejected", extra={"command": args.command, "error": str(e)})
        print(json.dumps({"success": False, "error": str(e)}))
        return EXIT_ERROR
    except DunningError as e:
        logger.error("Command failed", extra={"command": args.command, "error": str(e)})
        print(json.dumps({"success": False, "error": str(e)}))
        return EXIT_ERROR

    print(json.dumps(result, indent=2, default=str))
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
