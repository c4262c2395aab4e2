"""
Main module for the household ledger.

Command line entry point:
1. serve  - run the HTTP API
2. budget - manage category budgets and show their usage
3. stats  - print period statistics
"""

import argparse
import logging
import sys
from typing import List, Optional

from tabulate import tabulate

from analytics import AnalyticsEngine
from budgeting import BudgetManager, BudgetScope
from config_manager import get_utc_offset_minutes, load_config
from database_ops import DatabaseManager
from exceptions import LedgerError
from ledger import parse_transaction_date
from period_resolver import PERIOD_TYPES, resolve_period
from utils import current_time, ensure_data_dir, resolve_connection_string, resolve_log_path

# Configure module-level logger
logger = logging.getLogger(__name__)


def setup_logging(config: dict) -> None:
    """
    Configure logging based on config settings.

    Args:
        config: Configuration dictionary with logging settings
    """
    log_config = config.get("logging", {})
    level_name = str(log_config.get("level", "INFO")).upper()
    log_level = getattr(logging, level_name, None)
    if not isinstance(log_level, int):
        logger.warning(f"Invalid log level '{level_name}', falling back to INFO")
        log_level = logging.INFO
    log_format = log_config.get("format", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    log_file = log_config.get("file")

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        try:
            log_path = resolve_log_path(log_file)
        except OSError as exc:
            raise RuntimeError(f"Unable to prepare log file path '{log_file}': {exc}") from exc
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    logging.basicConfig(
        level=log_level,
        format=log_format,
        handlers=handlers,
        force=True
    )


def open_database(connection_string: str, config: dict) -> DatabaseManager:
    """Create the DatabaseManager, make sure tables exist and seed defaults if enabled."""
    db_manager = DatabaseManager(connection_string)
    db_manager.create_tables()
    if config.get("database", {}).get("seed_defaults", True):
        db_manager.seed_defaults()
    return db_manager


def print_table(title: str, rows: List[list], headers: List[str]) -> None:
    print("\n" + "=" * 100)
    print(title)
    print("=" * 100)
    print(tabulate(rows, headers=headers, tablefmt="grid", showindex=False))


def handle_serve_command(args: argparse.Namespace, config: dict, connection_string: str) -> None:
    """
    Run the HTTP API with uvicorn.

    Args:
        args: Parsed command-line arguments
        config: Configuration dictionary
        connection_string: Database connection string
    """
    import uvicorn

    from api import create_app

    server_config = config.get("server", {})
    host = args.host or server_config.get("host", "0.0.0.0")
    port = args.port or server_config.get("port", 8080)

    db_manager = open_database(connection_string, config)
    app = create_app(config, db_manager)
    logger.info(f"Starting server on {host}:{port}")
    try:
        uvicorn.run(app, host=host, port=int(port), log_config=None)
    finally:
        db_manager.close()


def _usage_rows(usages) -> List[list]:
    return [
        [
            usage.category_name,
            str(usage.scope),
            f"{usage.monthly_used:,} / {usage.monthly_limit:,}",
            f"{usage.monthly_percent:.1f}%" + (" OVER" if usage.is_monthly_over else ""),
            f"{usage.yearly_used:,} / {usage.yearly_limit:,}",
            f"{usage.yearly_percent:.1f}%" + (" OVER" if usage.is_yearly_over else ""),
        ]
        for usage in usages
    ]


USAGE_HEADERS = ["Category", "Scope", "Month used / limit", "Month %", "Year used / limit", "Year %"]


def handle_budget_command(args: argparse.Namespace, config: dict, connection_string: str) -> None:
    """
    Handle budget management commands.

    Args:
        args: Parsed command-line arguments
        config: Configuration dictionary
        connection_string: Database connection string
    """
    db_manager = open_database(connection_string, config)
    budget_manager = BudgetManager(db_manager, get_utc_offset_minutes(config))

    try:
        action = args.budget_action
        scope = BudgetScope.from_user_name(getattr(args, "user", None))

        if action == "list":
            user_filter = scope if getattr(args, "user", None) else None
            budgets = budget_manager.list_budgets(scope=user_filter, category_id=args.category_id)
            if not budgets:
                print("No budgets found.")
            else:
                rows = [
                    [b.id, b.category_name, str(BudgetScope.from_user_name(b.user_name)),
                     f"{b.monthly_limit:,}", f"{b.yearly_limit:,}"]
                    for b in budgets
                ]
                print_table("BUDGETS", rows, ["ID", "Category", "Scope", "Monthly", "Yearly"])

        elif action == "create":
            budget_id = budget_manager.create_budget(args.category_id, scope, args.monthly, args.yearly)
            print(f"Created budget {budget_id} for category {args.category_id} ({scope})")

        elif action == "update":
            budget_manager.update_budget(args.id, args.monthly, args.yearly)
            print(f"Updated budget {args.id}")

        elif action == "set-monthly":
            budget_manager.update_monthly_limit(args.category_id, scope, args.amount)
            print(f"Monthly limit of category {args.category_id} ({scope}) set to {args.amount:,}")

        elif action == "set-yearly":
            budget_manager.update_yearly_limit(args.category_id, scope, args.amount)
            print(f"Yearly limit of category {args.category_id} ({scope}) set to {args.amount:,}")

        elif action == "delete":
            budget_manager.delete_budget(args.id)
            print(f"Deleted budget {args.id}")

        elif action == "usage":
            reference = parse_transaction_date(args.date) if args.date else None
            if args.category_id:
                usage = budget_manager.get_budget_usage(args.category_id, scope, reference)
                usages = [usage] if usage else []
            else:
                usages = budget_manager.get_all_budget_usages(scope, reference, include_global=args.include_global)
            if not usages:
                print("No budgets apply.")
            else:
                print_table("BUDGET USAGE", _usage_rows(usages), USAGE_HEADERS)

        else:
            print("Invalid budget action", file=sys.stderr)
            sys.exit(1)

    except LedgerError as e:
        logger.error(f"Budget command failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        db_manager.close()


def handle_stats_command(args: argparse.Namespace, config: dict, connection_string: str) -> None:
    """
    Print statistics for a period.

    Args:
        args: Parsed command-line arguments
        config: Configuration dictionary
        connection_string: Database connection string
    """
    db_manager = open_database(connection_string, config)
    offset = get_utc_offset_minutes(config)
    analytics = AnalyticsEngine(db_manager, BudgetManager(db_manager, offset))

    try:
        now = current_time(offset)
        period = resolve_period(
            args.type,
            year=args.year,
            month=args.month,
            week=args.week,
            start_date=args.start,
            end_date=args.end,
            now=now,
        )
        if period.defaulted:
            print(f"Note: period selection was incomplete, showing {period.label}")

        stats = analytics.get_statistics(period, kind=args.kind, user_name=args.user, reference_date=now)

        print("\n" + "=" * 100)
        print(f"STATISTICS: {stats['period']} ({stats['start_date']} ~ {stats['end_date']})")
        print("=" * 100)
        print(f"Total: {stats['total_amount']:,} ({stats['total_count']} transactions)")
        if stats["top_category"]:
            print(f"Top category: {stats['top_category']['category_name']}")

        if stats["categories"]:
            rows = [
                [c["category_name"], f"{c['total_amount']:,}", c["count"], f"{c['percentage']:.1f}%"]
                for c in stats["categories"]
            ]
            print_table("CATEGORIES", rows, ["Category", "Total", "Count", "Share"])

        if stats.get("payment_methods"):
            rows = [
                [p["payment_method_name"], f"{p['total_amount']:,}", p["count"], f"{p['percentage']:.1f}%"]
                for p in stats["payment_methods"]
            ]
            print_table("PAYMENT METHODS", rows, ["Payment method", "Total", "Count", "Share"])

        if stats.get("budget_usages"):
            rows = [
                [u["category_name"], f"{u['monthly_used']:,} / {u['monthly_budget']:,}",
                 f"{u['monthly_percent']:.1f}%", f"{u['yearly_used']:,} / {u['yearly_budget']:,}",
                 f"{u['yearly_percent']:.1f}%"]
                for u in stats["budget_usages"]
            ]
            print_table("BUDGETS", rows, ["Category", "Month", "Month %", "Year", "Year %"])

    except LedgerError as e:
        logger.error(f"Stats command failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    finally:
        db_manager.close()


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser with all subcommands."""
    parser = argparse.ArgumentParser(
        description="Household ledger budget and statistics service",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=None,
        help="Path to configuration file (default: $LEDGER_CONFIG or config.yaml)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", type=str, help="Bind address (default from config)")
    serve_parser.add_argument("--port", type=int, help="Port (default from config)")

    # Budget command
    budget_parser = subparsers.add_parser(
        "budget",
        aliases=["bud"],
        help="Manage category budgets"
    )
    budget_subparsers = budget_parser.add_subparsers(dest="budget_action", help="Budget actions")

    bud_list = budget_subparsers.add_parser("list", help="List budgets")
    bud_list.add_argument("--user", type=str, help="Only budgets of this user")
    bud_list.add_argument("--category-id", type=int, help="Only budgets of this category")

    bud_create = budget_subparsers.add_parser("create", help="Create a budget")
    bud_create.add_argument("--category-id", type=int, required=True, help="Category ID")
    bud_create.add_argument("--user", type=str, help="User name (omit for everyone)")
    bud_create.add_argument("--monthly", type=int, default=0, help="Monthly limit")
    bud_create.add_argument("--yearly", type=int, default=0, help="Yearly limit")

    bud_update = budget_subparsers.add_parser("update", help="Replace both limits of a budget")
    bud_update.add_argument("--id", type=int, required=True, help="Budget ID")
    bud_update.add_argument("--monthly", type=int, default=0, help="Monthly limit")
    bud_update.add_argument("--yearly", type=int, default=0, help="Yearly limit")

    for action, label in (("set-monthly", "monthly"), ("set-yearly", "yearly")):
        bud_set = budget_subparsers.add_parser(action, help=f"Set only the {label} limit")
        bud_set.add_argument("--category-id", type=int, required=True, help="Category ID")
        bud_set.add_argument("--user", type=str, help="User name (omit for everyone)")
        bud_set.add_argument("--amount", type=int, required=True, help=f"New {label} limit")

    bud_delete = budget_subparsers.add_parser("delete", help="Delete a budget")
    bud_delete.add_argument("--id", type=int, required=True, help="Budget ID")

    bud_usage = budget_subparsers.add_parser("usage", help="Show budget usage")
    bud_usage.add_argument("--user", type=str, help="User name (omit for everyone)")
    bud_usage.add_argument("--category-id", type=int, help="Single category (default: all budgets)")
    bud_usage.add_argument("--date", type=str, help="Reference date YYYY-MM-DD (default: today)")
    bud_usage.add_argument(
        "--include-global",
        action="store_true",
        help="Also show shared budgets of categories the user has none for"
    )

    # Stats command
    stats_parser = subparsers.add_parser(
        "stats",
        aliases=["statistics"],
        help="Show period statistics"
    )
    stats_parser.add_argument("--type", type=str, default="month", choices=PERIOD_TYPES, help="Period type")
    stats_parser.add_argument("--year", type=str, help="Year")
    stats_parser.add_argument("--month", type=str, help="Month (1-12)")
    stats_parser.add_argument("--week", type=str, help="Week number (1-53)")
    stats_parser.add_argument("--start", type=str, help="Custom start date (YYYY-MM-DD)")
    stats_parser.add_argument("--end", type=str, help="Custom end date (YYYY-MM-DD)")
    stats_parser.add_argument("--kind", type=str, default="out", choices=["out", "in"], help="Expenses or income")
    stats_parser.add_argument("--user", type=str, help="Include this user's budget usage")

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point for the application."""
    parser = build_parser()
    args = parser.parse_args(argv)

    # Handle case where no command is provided
    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Load configuration
    try:
        config = load_config(args.config)
    except LedgerError as e:
        print(f"Error loading config: {e}", file=sys.stderr)
        sys.exit(1)

    # Ensure data directory exists before logging/database work
    try:
        ensure_data_dir(config)
    except OSError as exc:
        print(f"Failed to prepare data directory: {exc}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)

    try:
        connection_string = resolve_connection_string(config)
    except OSError as e:
        logger.error(f"Failed to create connection string: {e}")
        sys.exit(1)

    # Route to appropriate command handler
    if args.command == "serve":
        handle_serve_command(args, config, connection_string)
    elif args.command in ["budget", "bud"]:
        if not args.budget_action:
            parser.parse_args([args.command, "--help"])
        handle_budget_command(args, config, connection_string)
    elif args.command in ["stats", "statistics"]:
        handle_stats_command(args, config, connection_string)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
