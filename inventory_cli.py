#!/usr/bin/env python3
"""
Inventory Audit CLI
===================
Command-line front end: scan software, drivers or services, export the result,
compare against an exported baseline, and run driver/service operations.

Examples:
    inventory-audit software --export sw.csv
    inventory-audit services --compare services_baseline.json
    inventory-audit services --detail Spooler
    inventory-audit backup-drivers D:\\DriverBackup
    inventory-audit service restart Spooler
"""

import argparse
import getpass
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from action_runner import ActionBusyError, ActionRunner
from app_config import ConfigError, load_config
from batch_scheduler import ScanBusyError
from entities import DOMAINS, ChangeType
from inventory_backend import DriverManager, InventoryCollector, ServiceController, is_admin
from report_sink import EXPORT_FORMATS, BaselineError, export_diff, export_domain, load_baseline, load_entities
from snapshot_diff import annotate_software_changes, changed_only, count_by_type, diff_domain

logger = logging.getLogger("inventory_audit")

LOG_MAX_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3

# Columns printed when the preferences do not list any for a domain
DEFAULT_COLUMNS = {
    "software": ["Name", "Version", "Publisher", "Source", "ChangeStatus"],
    "drivers": ["FriendlyName", "Class", "Status", "DriverVersion", "DriverProvider"],
    "services": ["Name", "State", "StartupType", "ServiceControlRisk", "ExeWriteRisk"],
}


# =============================================================================
# LOGGING
# =============================================================================

def setup_logging(log_file: str = None, verbose: bool = False) -> None:
    """Configure the application logger.

    Args:
        log_file: Rotating audit log. Without one only warnings reach stderr.
        verbose: Include DEBUG records (timings, cache hits).
    """
    log_format = "%(asctime)s | %(levelname)-8s | %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    logger.handlers.clear()
    level = logging.DEBUG if verbose else logging.INFO

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT, encoding="utf-8"
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(log_format, date_format))
        logger.addHandler(file_handler)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setLevel(logging.WARNING)
    stderr_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(stderr_handler)

    logger.setLevel(level)


def log_audit_event(event_type: str, details: str = "", **kwargs) -> None:
    """Log an audit event as '[EVENT] details | k=v | ...'"""
    extra_info = " | ".join(f"{k}={v}" for k, v in kwargs.items()) if kwargs else ""
    message = f"[{event_type}] {details}"
    if extra_info:
        message += f" | {extra_info}"
    logger.info(message)


# =============================================================================
# OUTPUT
# =============================================================================

def print_progress(processed: int, total: int, status: str):
    sys.stderr.write(f"\r[{processed}/{total}] {status}".ljust(79)[:79])
    if total and processed >= total:
        sys.stderr.write("\n")
    sys.stderr.flush()


def print_status(message: str):
    sys.stderr.write(f"\r{message}".ljust(79)[:79] + "\n")
    sys.stderr.flush()


def print_table(records: Sequence[Dict[str, str]], columns: Sequence[str]):
    if not records:
        print("No items found.")
        return
    widths = {c: min(40, max(len(c), *(len(r.get(c, "")) for r in records))) for c in columns}
    print("  ".join(c.ljust(widths[c]) for c in columns))
    print("  ".join("-" * widths[c] for c in columns))
    for record in records:
        print("  ".join(record.get(c, "")[:widths[c]].ljust(widths[c]) for c in columns))
    print(f"\n{len(records)} items")


def columns_for(domain: str, config) -> List[str]:
    visible = config.visible_fields.get(domain) or []
    fields = DOMAINS[domain]["fields"]
    columns = [c for c in visible if c in fields]
    return columns or DEFAULT_COLUMNS[domain]


def print_diff_summary(diffs) -> None:
    counts = count_by_type(diffs)
    print(
        f"Added: {counts[ChangeType.ADDED]}  Removed: {counts[ChangeType.REMOVED]}  "
        f"Changed: {counts[ChangeType.CHANGED]}  Unchanged: {counts[ChangeType.UNCHANGED]}"
    )
    for diff in changed_only(diffs):
        print(f"  [{diff.change_type.value}] {diff.summary}")


# =============================================================================
# COMMANDS
# =============================================================================

def scan(domain: str, collector: InventoryCollector) -> List[Any]:
    log_audit_event("SCAN_START", f"{domain.title()} inventory", domain=domain)
    if domain == "software":
        items = collector.scan_software()
    elif domain == "drivers":
        items = collector.scan_drivers(on_progress=print_progress)
    else:
        items = collector.scan_services(on_progress=print_progress)
    log_audit_event("SCAN_END", f"{domain.title()} inventory completed", total=len(items))
    return items


def cmd_inventory(args, config) -> int:
    domain = args.command
    collector = InventoryCollector(config, callback=print_status if not args.quiet else None)
    items = scan(domain, collector)
    to_record = DOMAINS[domain]["to_record"]

    if domain == "services" and args.detail:
        return show_service_detail(collector, args.detail)

    if args.compare:
        baseline = load_baseline(args.compare, domain)
        diffs = diff_domain(domain, baseline, [to_record(i) for i in items])
        counts = count_by_type(diffs)
        log_audit_event(
            "BASELINE_DIFF", "Baseline comparison completed",
            baseline_file=args.compare,
            added=counts[ChangeType.ADDED],
            removed=counts[ChangeType.REMOVED],
            changed=counts[ChangeType.CHANGED],
        )
        if args.export:
            rows = export_diff(diffs, args.format, args.export)
            log_audit_event("EXPORT", "Diff exported", file=args.export, rows=rows)
        print_diff_summary(diffs)
        if domain == "software":
            annotated = annotate_software_changes(load_entities(args.compare, domain), items)
            marked = [to_record(i) for i in annotated if i.change_status.value]
            if marked:
                print()
                print_table(marked, ["Name", "ChangeStatus", "PreviousVersion", "Version", "Source"])
        return 0

    if args.export:
        rows = export_domain(domain, items, args.format, args.export)
        log_audit_event("EXPORT", f"{domain.title()} exported", file=args.export, rows=rows)
        print(f"Exported {rows} rows to {args.export}")
        return 0

    print_table([to_record(i) for i in items], columns_for(domain, config))
    return 0


def show_service_detail(collector: InventoryCollector, name: str) -> int:
    try:
        detail = collector.acl_detail(name)
    except KeyError:
        print(f"Error: Service not found: {name}", file=sys.stderr)
        return 1

    for title, result in (("Service control", detail["control"]), ("Executable ACL", detail["exe"])):
        print(f"{title}: {result.summary}")
        for entry in result.entries:
            print(f"  {entry.ace_type:<5} {entry.identity:<40} {entry.rights:<30} {entry.risk.value}")
    return 0


def run_action(runner: ActionRunner, operation: str, func, *params) -> int:
    log_audit_event("ACTION_START", operation, params=",".join(str(p) for p in params))
    try:
        handle = runner.submit(operation, func, *params)
    except ActionBusyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    result = runner.wait(handle, on_tick=lambda: sys.stderr.write("."))
    sys.stderr.write("\n")
    log_audit_event(
        "ACTION_END", operation,
        success=result.success, reboot=result.requires_reboot, message=result.message,
    )
    print(("OK: " if result.success else "FAILED: ") + result.message)
    if result.requires_reboot:
        print("A restart is required to complete this operation.")
    return 0 if result.success else 1


def cmd_action(args, config) -> int:
    if not is_admin():
        logger.warning("Not running as administrator; the operation will likely fail")

    runner = ActionRunner(poll_interval=config.poll_interval_ms / 1000.0)
    try:
        if args.command == "backup-drivers":
            return run_action(runner, "backup", DriverManager().backup_drivers, args.destination)
        if args.command == "install-driver":
            return run_action(runner, "install", DriverManager().install_driver, args.inf)
        if args.command == "install-driver-folder":
            return run_action(runner, "install-folder", DriverManager().install_driver_folder, args.folder)
        return run_action(runner, "service", ServiceController().control, args.name, args.action)
    finally:
        runner.shutdown()


# =============================================================================
# MAIN
# =============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="inventory-audit",
        description="Inventory software, drivers and services and audit service permissions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", type=str, help="Path to settings.json")
    parser.add_argument("--log-file", type=str, help="Path to audit log file (enables detailed logging)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Suppress status messages")

    sub = parser.add_subparsers(dest="command", required=True)

    for domain in DOMAINS:
        p = sub.add_parser(domain, help=f"Scan {domain}")
        p.add_argument("--export", metavar="FILE", help="Write the result to FILE")
        p.add_argument("--format", choices=EXPORT_FORMATS, default="csv", help="Export format (default: csv)")
        p.add_argument("--compare", metavar="BASELINE", help="Compare against an exported CSV/JSON file")
        if domain == "services":
            p.add_argument("--detail", metavar="NAME", help="Show the per-ACE breakdown of one service")

    p = sub.add_parser("backup-drivers", help="Export third-party drivers")
    p.add_argument("destination")
    p = sub.add_parser("install-driver", help="Install a driver from an INF file")
    p.add_argument("inf")
    p = sub.add_parser("install-driver-folder", help="Install every INF under a folder")
    p.add_argument("folder")
    p = sub.add_parser("service", help="Start, stop or restart a service")
    p.add_argument("action", choices=["start", "stop", "restart"])
    p.add_argument("name")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(log_file=args.log_file, verbose=args.verbose)

    log_audit_event(
        "SESSION_START", "Inventory audit session started",
        user=getpass.getuser(),
        hostname=os.environ.get("COMPUTERNAME", "unknown"),
        command=args.command,
    )

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    try:
        if args.command in DOMAINS:
            return cmd_inventory(args, config)
        return cmd_action(args, config)
    except BaselineError as e:
        print(f"Error: Invalid baseline: {e}", file=sys.stderr)
        return 1
    except ScanBusyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
