"""
Operations CLI - inspect the catalog and effective grants, export entities,
and read or prune the audit trail.
"""

import argparse
import json
import sys
from typing import List, Optional

from .core import config
from .core.audit import AuditLogFilters, AuditRecorder, create_audit_store
from .core.catalog import CATALOG, PermissionNode
from .core.effective_grants import EffectiveGrantsResolver
from .core.errors import GrantstageError
from .core.export_import import calculate_diff, export_permissions, validate_import
from .core.sources import ClickHouseAccessSource
from .core.transport import ClickHouseHttpTransport
from .util.logging import logger


def _print_tree(node: PermissionNode, depth: int = 0):
    scopes = ", ".join(k.value for k in node.allowed_scopes)
    print(f"{'  ' * depth}{node.id:<28} {node.sql_privilege:<30} [{scopes}]")
    for child in node.children:
        _print_tree(child, depth + 1)


def catalog_command(args) -> int:
    if args.id:
        node = CATALOG.lookup(args.id)
        if args.json:
            print(json.dumps(node.to_dict(), indent=2))
        else:
            print(f"{node.id}: {node.sql_privilege}")
            print(f"   Scopes: {', '.join(k.value for k in node.allowed_scopes)}")
            print(f"   Parent: {CATALOG.parent_of(node.id) or '-'}")
            print(f"   Ancestors: {', '.join(CATALOG.ancestors_of(node.id)) or '-'}")
            print(f"   Descendants: {', '.join(CATALOG.descendants_of(node.id)) or '-'}")
        return 0

    if args.json:
        print(json.dumps(CATALOG.to_dict(), indent=2))
    else:
        for root in CATALOG.roots:
            _print_tree(root)
        print(f"\n{len(CATALOG)} permissions")
    return 0


def effective_command(args) -> int:
    transport = ClickHouseHttpTransport()
    resolver = EffectiveGrantsResolver(ClickHouseAccessSource(transport))
    result = resolver.resolve(args.identity)

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
        return 0

    print(f"🔐 Effective grants for {result.identity}")
    roles = ", ".join(
        r.role_name + (" (admin)" if r.admin_option else "") for r in result.assigned_roles
    )
    print(f"   Roles: {roles or '-'}")
    for grant in result.effective:
        origin = f"role:{grant.source_role}" if grant.source_role else grant.source.value
        print(f"   {grant.permission_id:<28} {str(grant.scope):<30} {origin}")
    print(f"   Total: {len(result.effective)}")
    return 0


def export_command(args) -> int:
    data = export_permissions(ClickHouseHttpTransport(), scope=args.scope, exported_by=args.exported_by)
    text = json.dumps(data, indent=2, default=str)
    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            f.write(text)
        print(f"✅ Exported to {args.output}")
    else:
        print(text)
    return 0


def validate_import_command(args) -> int:
    with open(args.file, "r", encoding="utf-8") as f:
        data = json.load(f)
    validate_import(data)
    print(f"✅ {args.file} is a valid version {data['version']} export")

    if args.diff:
        diff = calculate_diff(export_permissions(ClickHouseHttpTransport()), data)
        for entity_type, changes in diff.items():
            print(f"   {entity_type}: +{len(changes['to_add'])} "
                  f"-{len(changes['to_remove'])} ~{len(changes['to_update'])}")
    return 0


def _recorder() -> AuditRecorder:
    transport = ClickHouseHttpTransport() if config.get_audit_backend() == "clickhouse" else None
    return AuditRecorder(create_audit_store(transport))


def audit_command(args) -> int:
    success = None
    if args.status:
        success = args.status == "success"
    entries = _recorder().query(AuditLogFilters(
        actor=args.actor,
        change_type=args.change_type,
        entity_type=args.entity_type,
        success=success,
        limit=args.limit,
    ))

    if args.json:
        print(json.dumps([e.to_dict() for e in entries], indent=2))
        return 0

    for entry in entries:
        mark = "✅" if entry.success else "❌"
        print(f"{mark} {entry.timestamp:%Y-%m-%d %H:%M:%S} {entry.actor:<12} "
              f"{entry.change_type:<7} {entry.entity_type:<16} {entry.entity_name}")
        if not entry.success:
            print(f"   Error: {entry.error_message}")
    print(f"{len(entries)} entries")
    return 0


def audit_stats_command(args) -> int:
    stats = _recorder().stats()
    if args.json:
        print(json.dumps(stats.to_dict(), indent=2))
        return 0

    print(f"📊 Total changes: {stats.total} ({stats.succeeded} succeeded, {stats.failed} failed)")
    print("   Top actors (30 days):")
    for actor, count in stats.by_actor.items():
        print(f"     {actor:<20} {count}")
    print("   By change type (30 days):")
    for change_type, count in stats.by_change_type.items():
        print(f"     {change_type:<20} {count}")
    return 0


def purge_audit_command(args) -> int:
    days = args.days or config.get_retention_days()
    removed = _recorder().purge_expired(days)
    print(f"✅ Removed {removed} audit entries older than {days} days")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="grantstage", description="ClickHouse access-control change tooling")
    subparsers = parser.add_subparsers(dest="command", required=True)

    p = subparsers.add_parser("catalog", help="Show the privilege catalog")
    p.add_argument("--id", help="Show a single permission")
    p.add_argument("--json", action="store_true", help="Output JSON")
    p.set_defaults(func=catalog_command)

    p = subparsers.add_parser("effective", help="Resolve effective grants for a user")
    p.add_argument("identity", help="User name")
    p.add_argument("--json", action="store_true", help="Output JSON")
    p.set_defaults(func=effective_command)

    p = subparsers.add_parser("export", help="Export access entities")
    p.add_argument("--scope", default="all",
                   choices=["all", "users", "roles", "quotas", "row_policies", "settings_profiles"])
    p.add_argument("--exported-by", help="Actor recorded in the document")
    p.add_argument("--output", "-o", help="Write to file instead of stdout")
    p.set_defaults(func=export_command)

    p = subparsers.add_parser("validate-import", help="Validate an export document")
    p.add_argument("file", help="Path to the JSON document")
    p.add_argument("--diff", action="store_true", help="Diff against the live server")
    p.set_defaults(func=validate_import_command)

    p = subparsers.add_parser("audit", help="Query the audit trail")
    p.add_argument("--actor")
    p.add_argument("--change-type")
    p.add_argument("--entity-type")
    p.add_argument("--status", choices=["success", "failed"])
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--json", action="store_true", help="Output JSON")
    p.set_defaults(func=audit_command)

    p = subparsers.add_parser("audit-stats", help="Summarize the audit trail")
    p.add_argument("--json", action="store_true", help="Output JSON")
    p.set_defaults(func=audit_stats_command)

    p = subparsers.add_parser("purge-audit", help="Delete audit entries past retention")
    p.add_argument("--days", type=int, help=f"Retention in days (default: {config.AUDIT_RETENTION_DAYS})")
    p.set_defaults(func=purge_audit_command)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    issues = config.validate_config()
    for issue in issues:
        print(f"⚠️  Config: {issue}")

    try:
        return args.func(args)
    except GrantstageError as e:
        print(f"❌ {e}")
        return 1
    except (OSError, json.JSONDecodeError) as e:
        print(f"❌ {e}")
        logger.error(f"CLI {args.command} failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
