#!/usr/bin/env python3
"""
Act! Billing Sync CLI

Setup and operations tool for the sync engine.

Usage:
    act-sync setup                 # Interactive setup wizard
    act-sync init-db               # Create the database tables
    act-sync add-connection ...    # Register a tenant's Act! credentials
    act-sync test --tenant T       # Test a tenant's connection
    act-sync analyze --tenant T    # Fetch and describe without persisting
    act-sync sync --tenant T       # Run the full pipeline for one tenant
    act-sync batch                 # Sync every tenant that is due
    act-sync status                # Show connection sync status
"""

import argparse
import json
import sys
from dataclasses import dataclass
from typing import Any

from colorama import Fore, Style, init

from act_billing_sync.client import ActClient
from act_billing_sync.config import SyncSettings, get_config_path, load_settings, save_settings
from act_billing_sync.logging_config import configure_logging
from act_billing_sync.orchestrator import NoActiveConnectionError, SyncOrchestrator
from act_billing_sync.scheduler import BatchScheduler
from act_billing_sync.store import SyncStore, connections

init()
GREEN = Fore.GREEN
RED = Fore.RED
YELLOW = Fore.YELLOW
BLUE = Fore.CYAN
RESET = Style.RESET_ALL
BOLD = Style.BRIGHT


def print_banner():
    """Print the banner."""
    print(f"""
{BLUE}╔══════════════════════════════════════════════════════════════╗
║     {BOLD}Act! Billing Sync{RESET}{BLUE}                                        ║
║     Opportunities, products and tasks into your billing store  ║
╚══════════════════════════════════════════════════════════════╝{RESET}
""")


def print_success(msg: str):
    print(f"{GREEN}✓ {msg}{RESET}")


def print_error(msg: str):
    print(f"{RED}✗ {msg}{RESET}")


def print_warning(msg: str):
    print(f"{YELLOW}⚠ {msg}{RESET}")


def print_info(msg: str):
    print(f"{BLUE}ℹ {msg}{RESET}")


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


@dataclass
class Engine:
    """Wired-up engine components for one CLI invocation."""
    settings: SyncSettings
    store: SyncStore
    client: ActClient
    orchestrator: SyncOrchestrator

    def close(self) -> None:
        self.client.close()


def build_engine(settings: SyncSettings) -> Engine:
    store = SyncStore.from_url(settings.database_url)
    client = ActClient(store, settings)
    orchestrator = SyncOrchestrator(store, client, settings)
    return Engine(settings=settings, store=store, client=client, orchestrator=orchestrator)


def cmd_setup(args, settings: SyncSettings) -> int:
    """Interactive setup wizard."""
    print_banner()
    print(f"{BOLD}Setup Wizard{RESET}")
    print("Let's configure the sync engine.\n")

    current = settings.database_url
    database_url = input(f"Database URL [{current}]: ").strip() or current

    current = settings.default_api_base_url
    api_base_url = input(f"Default Act! API URL [{current}]: ").strip() or current

    print(f"\n{BOLD}Sync Options{RESET}")
    sync_tasks = input("Sync tasks as deliverables? [Y/n]: ").strip().lower() != "n"
    only_billable = input("Only sync billable tasks? [Y/n]: ").strip().lower() != "n"

    updated = settings.model_copy(update={
        "database_url": database_url,
        "default_api_base_url": api_base_url,
        "sync_tasks": sync_tasks,
        "sync_only_billable_tasks": only_billable,
    })
    path = save_settings(updated, args.config)
    print_success(f"Configuration saved to {path}")

    return cmd_init_db(args, updated)


def cmd_init_db(args, settings: SyncSettings) -> int:
    """Create tables."""
    store = SyncStore.from_url(settings.database_url)
    store.create_all()
    print_success(f"Database ready: {store.engine.url.render_as_string(hide_password=True)}")
    return 0


def cmd_add_connection(args, settings: SyncSettings) -> int:
    """Register a tenant's Act! credentials."""
    store = SyncStore.from_url(settings.database_url)
    store.create_all()

    connection = store.add_connection(
        args.tenant,
        username=args.username,
        password_encrypted=args.password,
        database_name=args.database,
        connection_name=args.name,
        api_base_url=args.base_url,
        region=args.region,
    )
    print_success(f"Added connection {connection.id} for tenant {connection.tenant_id}")
    return 0


def _require_connection(engine: Engine, tenant_id: str):
    connection = engine.store.get_active_connection(tenant_id)
    if connection is None:
        print_error(f"No active connection for tenant {tenant_id}")
        print_info("Add one with 'act-sync add-connection'")
    return connection


def cmd_test(args, settings: SyncSettings) -> int:
    """Test a tenant's Act! connection."""
    engine = build_engine(settings)
    try:
        connection = _require_connection(engine, args.tenant)
        if connection is None:
            return 1

        print_info(f"Connecting to {connection.base_url(settings.default_api_base_url)} "
                   f"({connection.database_name})...")
        result = engine.client.test_connection(connection)

        if result.success:
            print_success("Connected successfully!")
            return 0

        refreshed = engine.store.get_connection(connection.id)
        print_error(f"Connection failed: {refreshed.connection_error or result.error}")
        return 1
    finally:
        engine.close()


def cmd_analyze(args, settings: SyncSettings) -> int:
    """Fetch opportunities and tasks and print their shape."""
    engine = build_engine(settings)
    try:
        result = engine.orchestrator.run_tenant(args.tenant, "analysis")
    except NoActiveConnectionError as e:
        print_error(str(e))
        return 1
    finally:
        engine.close()

    analysis = dict(result.analysis or {})
    if not args.records:
        for key in ("opportunities", "tasks"):
            section = dict(analysis.get(key) or {})
            section.pop("records", None)
            analysis[key] = section

    print_json({"success": result.success, "analysis": analysis})
    return 0 if result.success else 1


def cmd_sync(args, settings: SyncSettings) -> int:
    """Run the full pipeline for one tenant."""
    engine = build_engine(settings)
    try:
        result = engine.orchestrator.run_tenant(args.tenant, "sync")
    except NoActiveConnectionError as e:
        print_error(str(e))
        return 1
    finally:
        engine.close()

    if args.json:
        print_json(result.model_dump(mode="json", exclude={"analysis"}))
        return 0 if result.success else 1

    summary = result.summary
    if result.status == "success":
        print_success("Sync complete!")
    elif result.status == "partial_success":
        print_warning(f"Sync partially complete: {result.error}")
    else:
        print_error(f"Sync failed: {result.error}")

    for name, stage in result.stages.items():
        print(f"  {name}: {stage.processed} processed, {stage.created} created, "
              f"{stage.updated} updated, {stage.failed} failed, {stage.skipped} skipped")

    if summary.warnings:
        print_warning(f"  Warnings: {len(summary.warnings)}")
        for warning in summary.warnings[:5]:
            print(f"    - {warning}")

    return 0 if result.success else 1


def cmd_batch(args, settings: SyncSettings) -> int:
    """Sync every connection that is due."""
    engine = build_engine(settings)
    try:
        scheduler = BatchScheduler(engine.store, engine.client, engine.orchestrator, settings)
        result = scheduler.run_batch()
    finally:
        engine.close()

    print_json({"success": True, "summary": result.to_summary()})
    return 0


def cmd_status(args, settings: SyncSettings) -> int:
    """Show connection sync status."""
    print_banner()

    store = SyncStore.from_url(settings.database_url)
    filters = {"tenant_id": args.tenant} if args.tenant else None
    rows = store.select_all(connections, filters)

    if not rows:
        print_warning("No connections configured")
        return 0

    print(f"{BOLD}Connections{RESET}\n")
    for row in rows:
        status = row["daily_sync_status"] or "never run"
        color = GREEN if status == "success" else RED if status == "failed" else YELLOW
        name = row["connection_name"] or row["database_name"]
        print(f"  {BOLD}{name}{RESET} ({row['tenant_id']})")
        print(f"    Connection: {row['connection_status']}  "
              f"Active: {'yes' if row['is_active'] else 'no'}  "
              f"API calls: {row['total_api_calls']}")
        print(f"    Daily sync: {color}{status}{RESET}")
        if row["daily_sync_error"]:
            print(f"    Error: {row['daily_sync_error']}")
        for label, key in (("Last sync", "last_sync_at"), ("Next sync", "next_sync_at")):
            value = store.as_utc(row[key])
            if value:
                print(f"    {label}: {value.strftime('%Y-%m-%d %H:%M:%S UTC')}")
        print()

    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="act-sync",
        description="Act! Billing Sync CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  act-sync init-db
  act-sync add-connection --tenant acme --username api --password s3cret --database ACME
  act-sync test --tenant acme
  act-sync sync --tenant acme
  act-sync batch
        """,
    )
    parser.add_argument("--config", help=f"Config file (default: {get_config_path()})")
    parser.add_argument("--log-level", default="WARNING", help="Log level (default: WARNING)")
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    subparsers.add_parser("setup", help="Interactive setup wizard")
    subparsers.add_parser("init-db", help="Create the database tables")

    add_parser = subparsers.add_parser("add-connection", help="Register Act! credentials")
    add_parser.add_argument("--tenant", required=True)
    add_parser.add_argument("--username", required=True)
    add_parser.add_argument("--password", required=True)
    add_parser.add_argument("--database", required=True, help="Act! database name")
    add_parser.add_argument("--name", help="Display name")
    add_parser.add_argument("--base-url", help="Custom Act! API URL")
    add_parser.add_argument("--region", default="us")

    test_parser = subparsers.add_parser("test", help="Test a tenant's connection")
    test_parser.add_argument("--tenant", required=True)

    analyze_parser = subparsers.add_parser("analyze", help="Fetch and describe Act! data")
    analyze_parser.add_argument("--tenant", required=True)
    analyze_parser.add_argument("--records", action="store_true", help="Include raw records")

    sync_parser = subparsers.add_parser("sync", help="Run a full sync for one tenant")
    sync_parser.add_argument("--tenant", required=True)
    sync_parser.add_argument("--json", action="store_true", help="Print the full result as JSON")

    subparsers.add_parser("batch", help="Sync every tenant that is due")

    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument("--tenant")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        print_banner()
        parser.print_help()
        return 0

    configure_logging(args.log_level, json_output=args.json_logs)
    settings = load_settings(args.config)

    commands = {
        "setup": cmd_setup,
        "init-db": cmd_init_db,
        "add-connection": cmd_add_connection,
        "test": cmd_test,
        "analyze": cmd_analyze,
        "sync": cmd_sync,
        "batch": cmd_batch,
        "status": cmd_status,
    }

    try:
        return commands[args.command](args, settings)
    except Exception as e:
        print_error(f"{args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
