#!/usr/bin/env python3
"""
Dead Drop - Operator Console
Terminal views over a running dead drop service and over audit trail files

    python -m dead_drop_system.dead_drop.drop_terminal stats --user alice
    python -m dead_drop_system.dead_drop.drop_terminal list --user alice --include-cancelled
    python -m dead_drop_system.dead_drop.drop_terminal verify-audit --path ~/.dead_drop/audit.jsonl
"""
import argparse
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from dead_drop_system.core.audit_trail import AuditTrail

STATUS_STYLES = {
    'pending': 'yellow',
    'delivered': 'green',
    'cancelled': 'dim',
    'failed': 'red',
}


# =============================================================================
# RENDERING
# =============================================================================

def render_stats(system: Dict[str, int], user: Optional[Dict[str, int]] = None) -> Table:
    table = Table(title="📊 Dead Drop Statistics", box=box.ROUNDED)
    table.add_column("Metric", style="cyan")
    table.add_column("System", style="green", justify="right")
    if user is not None:
        table.add_column("You", style="magenta", justify="right")

    rows = [
        ("Total drops", 'total_drops', 'total'),
        ("Pending", 'pending_drops', 'pending'),
        ("Delivered", 'delivered_drops', 'delivered'),
        ("Cancelled", 'cancelled_drops', 'cancelled'),
        ("Failed", 'failed_drops', 'failed'),
        ("Active heartbeats", 'active_heartbeats', None),
        ("Tracked locations", 'tracked_locations', None),
    ]
    for label, system_key, user_key in rows:
        cells = [label, str(system.get(system_key, 0))]
        if user is not None:
            cells.append(str(user.get(user_key, 0)) if user_key else "-")
        table.add_row(*cells)

    return table


def render_drops(drops: List[Dict[str, Any]]) -> Table:
    table = Table(title=f"🗝  Dead Drops ({len(drops)})", box=box.ROUNDED)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("From")
    table.add_column("To")
    table.add_column("Status")
    table.add_column("Trigger", style="dim")
    table.add_column("Attempts", justify="right")
    table.add_column("Expires", style="dim")

    for drop in drops:
        status = drop.get('status', '?')
        attempts = str(drop.get('delivery_attempts', 0))
        if drop.get('max_attempts'):
            attempts += f"/{drop['max_attempts']}"
        table.add_row(
            drop.get('id', '?'),
            drop.get('creator_id', '?'),
            drop.get('recipient_id', '?'),
            f"[{STATUS_STYLES.get(status, 'white')}]{status}[/]",
            drop.get('trigger_summary', ''),
            attempts,
            (drop.get('expires_at') or '')[:16],
        )

    return table


def render_audit_report(path: str, valid: bool, first_bad: Optional[int], stats: Dict[str, Any]) -> Panel:
    lines = [
        f"File: {path}",
        f"Entries: {stats['total_entries']}",
        f"Root hash: {stats['root_hash'][:16] or '-'}",
    ]
    for event_type, count in sorted(stats['by_type'].items()):
        lines.append(f"  {event_type}: {count}")
    if stats['load_warnings']:
        lines.append(f"Skipped lines: {stats['load_warnings']}")

    if valid:
        lines.append("[green]✅ Chain intact[/green]")
        border = "green"
    else:
        lines.append(f"[red]❌ Chain broken at entry #{first_bad}[/red]")
        border = "red"

    return Panel("\n".join(lines), title="🔐 Audit Trail", border_style=border)


# =============================================================================
# COMMANDS
# =============================================================================

class DropTerminal:
    """Fetches from the HTTP service and prints rich views"""

    def __init__(self, service_url: str = "http://localhost:8010", console: Optional[Console] = None,
                 timeout: float = 5.0):
        self.service_url = service_url.rstrip('/')
        self.console = console or Console()
        self.timeout = timeout

    def _get(self, path: str, user_id: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = requests.get(
            f"{self.service_url}{path}",
            headers={'X-User-Id': user_id},
            params=params,
            timeout=self.timeout
        )
        data = response.json()
        if response.status_code != 200:
            raise RuntimeError(data.get('error') or f"HTTP {response.status_code}")
        return data

    def show_stats(self, user_id: str) -> int:
        try:
            data = self._get('/dead-drops/stats', user_id)
        except (requests.exceptions.RequestException, RuntimeError, ValueError) as e:
            self.console.print(Panel(f"Could not fetch stats: {e}", title="❌ Error", border_style="red"))
            return 1

        self.console.print(render_stats(data['system'], data.get('user')))
        return 0

    def list_drops(self, user_id: str, include_cancelled: bool = False, status: Optional[str] = None) -> int:
        params = {'include_cancelled': 'true' if include_cancelled else 'false'}
        if status:
            params['status'] = status
        try:
            data = self._get('/dead-drops', user_id, params)
        except (requests.exceptions.RequestException, RuntimeError, ValueError) as e:
            self.console.print(Panel(f"Could not list drops: {e}", title="❌ Error", border_style="red"))
            return 1

        drops = data.get('dead_drops', [])
        if not drops:
            self.console.print(Panel("No dead drops", title="🗝  Dead Drops", border_style="blue"))
            return 0

        self.console.print(render_drops(drops))
        return 0

    def verify_audit(self, path: str, signing_key: Optional[str] = None) -> int:
        """Verify a JSONL audit trail on disk without going through the service"""
        log_path = Path(path).expanduser()
        if not log_path.exists():
            self.console.print(Panel(f"No audit trail at {log_path}", title="❌ Error", border_style="red"))
            return 1
        if signing_key is None and not (log_path.parent / ".audit_key").exists():
            self.console.print(Panel("No signing key given and no .audit_key next to the log",
                                     title="❌ Error", border_style="red"))
            return 1

        trail = AuditTrail(storage_path=str(log_path), signing_key=signing_key)
        valid, first_bad = trail.verify_chain()
        self.console.print(render_audit_report(str(log_path), valid, first_bad, trail.stats()))
        return 0 if valid else 2


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Dead Drop Operator Console")
    parser.add_argument("--url", default="http://localhost:8010",
                        help="Dead drop service URL (default: http://localhost:8010)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    stats_parser = subparsers.add_parser("stats", help="System and per-user counts")
    stats_parser.add_argument("--user", required=True, help="User id to query as")

    list_parser = subparsers.add_parser("list", help="Drops a user created or will receive")
    list_parser.add_argument("--user", required=True, help="User id to query as")
    list_parser.add_argument("--include-cancelled", action="store_true")
    list_parser.add_argument("--status", choices=sorted(STATUS_STYLES))

    audit_parser = subparsers.add_parser("verify-audit", help="Verify an audit trail file")
    audit_parser.add_argument("--path", required=True, help="Path to the audit .jsonl file")
    audit_parser.add_argument("--key", default=None, help="HMAC signing key (defaults to .audit_key)")

    args = parser.parse_args(argv)
    terminal = DropTerminal(args.url)

    if args.command == "stats":
        return terminal.show_stats(args.user)
    if args.command == "list":
        return terminal.list_drops(args.user, include_cancelled=args.include_cancelled, status=args.status)
    return terminal.verify_audit(args.path, signing_key=args.key)


if __name__ == "__main__":
    sys.exit(main())
