"""memrefine CLI — supervised memory refinement for AI agents.

Usage:
    memrefine add "text" --owner A       Add a core memory
    memrefine list --owner A             List active memories
    memrefine search "query" --owner A   Search memories
    memrefine protect <id>               Mark a memory constitutional
    memrefine unprotect <id>             Clear the constitutional flag
    memrefine discard <id>               Soft-delete a memory outside any session
    memrefine restore <id>               Restore a discarded memory
    memrefine settings --owner A         Show or set per-agent overrides
    memrefine open --owner A             Open a refinement session
    memrefine tool <session> <action>    Issue one tool call
    memrefine sessions                   List sessions
    memrefine audit <session>            Show a session's ledger
    memrefine rollback <session>         Roll back an active session
    memrefine reap                       Abandon sessions past their lease
    memrefine due                        Owners over their token budget
    memrefine stats                      Memory and session statistics
    memrefine status                     Version, config, DB info
"""

import argparse
import json
import os
import sys
from typing import Any, Dict, Optional


def _json_out(data: Any) -> None:
    """Print data as formatted JSON."""
    print(json.dumps(data, indent=2, default=str))


def _get_refiner(args: argparse.Namespace):
    """Lazy-load a Refiner from CLI config."""
    from memrefine.simple import Refiner
    return Refiner(db_path=getattr(args, "db", None))


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------

def cmd_add(args: argparse.Namespace) -> None:
    """Add a memory."""
    with _get_refiner(args) as refiner:
        record = refiner.add_memory(
            args.owner,
            args.text,
            memory_type=args.type,
            origin_at=args.origin_at,
            protected=args.protected,
        )
    if args.json:
        _json_out(record.to_dict())
    else:
        print(f"Added memory: #{record.id} (~{record.token_estimate} tokens)")


def cmd_list(args: argparse.Namespace) -> None:
    """List active memories as a ledger."""
    with _get_refiner(args) as refiner:
        records = refiner.list_memories(args.owner, args.type)
        mass = refiner.mass(args.owner)
    if args.json:
        _json_out({"owner_id": args.owner, "mass": mass, "memories": [r.to_dict() for r in records]})
        return
    if not records:
        print("No memories.")
        return
    for record in records:
        print(record.ledger_line())
    print(f"\n{len(records)} memories, ~{mass} core tokens")


def cmd_search(args: argparse.Namespace) -> None:
    """Search memories."""
    with _get_refiner(args) as refiner:
        records = refiner.search(args.owner, args.query, limit=args.limit)
    if args.json:
        _json_out([r.to_dict() for r in records])
        return
    if not records:
        print("No results found.")
        return
    for record in records:
        print(record.ledger_line())


def cmd_protect(args: argparse.Namespace) -> None:
    """Mark a memory constitutional."""
    with _get_refiner(args) as refiner:
        record = refiner.protect(args.id)
    if args.json:
        _json_out(record.to_dict())
    else:
        print(f"Protected memory #{record.id}")


def cmd_unprotect(args: argparse.Namespace) -> None:
    """Clear the constitutional flag."""
    with _get_refiner(args) as refiner:
        record = refiner.unprotect(args.id)
    if args.json:
        _json_out(record.to_dict())
    else:
        print(f"Unprotected memory #{record.id}")


def cmd_discard(args: argparse.Namespace) -> None:
    """Soft-delete a memory outside any session."""
    with _get_refiner(args) as refiner:
        record = refiner.discard(args.id)
    if args.json:
        _json_out(record.to_dict())
    else:
        print(f"Discarded memory #{record.id}")


def cmd_restore(args: argparse.Namespace) -> None:
    """Restore a discarded memory."""
    with _get_refiner(args) as refiner:
        record = refiner.restore(args.id)
    if args.json:
        _json_out(record.to_dict())
    else:
        print(f"Restored memory #{record.id}")


def cmd_settings(args: argparse.Namespace) -> None:
    """Show or update per-agent settings."""
    with _get_refiner(args) as refiner:
        if any(v is not None for v in (args.threshold, args.token_budget, args.refinement_prompt)):
            refiner.set_agent_settings(
                args.owner,
                threshold=args.threshold,
                token_budget=args.token_budget,
                refinement_prompt=args.refinement_prompt,
            )
        settings = refiner.get_agent_settings(args.owner)
    if args.json:
        _json_out(settings)
    else:
        print(f"Agent:        {args.owner}")
        print(f"Threshold:    {settings['effective_threshold']}")
        print(f"Token budget: {settings['effective_token_budget']}")
        print(f"Last refined: {settings.get('last_refinement_at') or 'never'}")
        if settings.get("refinement_prompt"):
            print(f"Instructions: {settings['refinement_prompt']}")


def cmd_open(args: argparse.Namespace) -> None:
    """Open a refinement session."""
    with _get_refiner(args) as refiner:
        session = refiner.open_session(args.owner, threshold=args.threshold)
    if args.json:
        _json_out(session.to_dict())
    else:
        print(f"Opened session {session.session_id}")
        print(f"  pre-session mass: {session.pre_mass} tokens, threshold {session.threshold}")


def _tool_arguments(args: argparse.Namespace) -> Dict[str, Any]:
    arguments: Dict[str, Any] = json.loads(args.args) if args.args else {}
    for key in ("query", "ids", "id", "content", "summary"):
        value = getattr(args, key, None)
        if value is not None:
            arguments[key] = value
    return arguments


def cmd_tool(args: argparse.Namespace) -> None:
    """Issue one tool call against a session."""
    with _get_refiner(args) as refiner:
        result = refiner.call(args.session_id, args.action, _tool_arguments(args))
    _json_out(result)
    if result.get("type") == "error":
        sys.exit(1)


def cmd_sessions(args: argparse.Namespace) -> None:
    """List sessions."""
    with _get_refiner(args) as refiner:
        sessions = refiner.list_sessions(owner_id=args.owner, status=args.status, limit=args.limit)
    if args.json:
        _json_out([s.to_dict() for s in sessions])
        return
    if not sessions:
        print("No sessions.")
        return
    for s in sessions:
        post = s.post_mass if s.post_mass is not None else "-"
        print(
            f"  {s.session_id}  {s.owner_id:<16} {s.status:<12} "
            f"ops={s.operation_count:<3} mass {s.pre_mass} -> {post}"
        )


def cmd_audit(args: argparse.Namespace) -> None:
    """Show a session's ledger."""
    with _get_refiner(args) as refiner:
        entries = refiner.audit(args.session_id)
    if args.json:
        _json_out([e.to_dict() for e in entries])
        return
    for entry in entries:
        ids = ", ".join(f"#{i}" for i in entry.touched_ids()) or "-"
        print(f"  [{entry.id}] {entry.created_at}  {entry.operation:<12} {ids}")


def cmd_rollback(args: argparse.Namespace) -> None:
    """Roll back an active session."""
    with _get_refiner(args) as refiner:
        outcome = refiner.rollback(args.session_id, args.reason, dry_run=args.dry_run)
    if args.json:
        _json_out(outcome)
        return
    verb = "Would reverse" if outcome.get("dry_run") else "Reversed"
    print(f"{verb} {outcome.get('reversed_operations', 0)} operation(s) in session {args.session_id}")
    print(f"  mass {outcome.get('mass_at_trip')} -> {outcome.get('post_mass')} (pre-session {outcome.get('pre_mass')})")


def cmd_reap(args: argparse.Namespace) -> None:
    """Abandon sessions past their lease."""
    with _get_refiner(args) as refiner:
        reaped = refiner.reap_abandoned(args.older_than)
    if args.json:
        _json_out({"reaped": reaped})
    else:
        print(f"Reaped {len(reaped)} session(s).")
        for session_id in reaped:
            print(f"  {session_id}")


def cmd_due(args: argparse.Namespace) -> None:
    """List owners over their token budget."""
    from memrefine.scheduler import due_owners

    with _get_refiner(args) as refiner:
        due = due_owners(refiner)
    if args.json:
        _json_out(due)
        return
    if not due:
        print("No agents are due for refinement.")
        return
    for item in due:
        print(f"  {item['owner_id']:<20} {item['mass']} / {item['token_budget']} tokens")


def cmd_stats(args: argparse.Namespace) -> None:
    """Show memory and session statistics."""
    with _get_refiner(args) as refiner:
        stats = refiner.stats(args.owner)
    if args.json:
        _json_out(stats)
        return
    for memory_type, data in sorted(stats["memories"].items()):
        print(
            f"  {memory_type:<8} active={data['active']} discarded={data['discarded']} "
            f"protected={data['protected']} mass={data['mass']}"
        )
    for status, count in sorted(stats["sessions"].items()):
        print(f"  sessions {status:<12} {count}")


def cmd_status(args: argparse.Namespace) -> None:
    """Show version, config and database info."""
    from memrefine import __version__
    from memrefine.cli_config import CONFIG_PATH

    with _get_refiner(args) as refiner:
        db_path = refiner.config.store.db_path
        refinement = refiner.config.refinement.model_dump()
        owners = refiner.db.list_owner_ids()
    db_size = os.path.getsize(db_path) if os.path.exists(db_path) else 0
    info = {
        "version": __version__,
        "config_path": CONFIG_PATH,
        "config_exists": os.path.exists(CONFIG_PATH),
        "db_path": db_path,
        "db_size_bytes": db_size,
        "agents": owners,
        "refinement": refinement,
    }
    if args.json:
        _json_out(info)
        return
    print(f"memrefine v{__version__}")
    print(f"  Config:  {CONFIG_PATH}{'' if info['config_exists'] else ' (defaults)'}")
    print(f"  DB:      {db_path} ({db_size / 1024:.1f} KB)")
    print(f"  Agents:  {len(owners)}")
    print(f"  Threshold {refinement['default_threshold']}, cap {refinement['operation_cap']}")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="memrefine",
        description="memrefine — supervised memory refinement for AI agents",
    )
    parser.add_argument("--db", help="SQLite database path (overrides config and MEMREFINE_DB_PATH)")
    sub = parser.add_subparsers(dest="command")

    def owner_arg(p, required: bool = True):
        p.add_argument("--owner", required=required, help="Agent id")

    def json_arg(p):
        p.add_argument("--json", action="store_true", help="JSON output")

    # add
    p_add = sub.add_parser("add", help="Add a memory")
    p_add.add_argument("text", help="Memory content")
    owner_arg(p_add)
    p_add.add_argument("--type", default="core", choices=["core", "journal"], help="Memory type")
    p_add.add_argument("--origin-at", default=None, help="ISO timestamp the memory refers to")
    p_add.add_argument("--protected", action="store_true", help="Add as constitutional")
    json_arg(p_add)

    # list
    p_list = sub.add_parser("list", help="List active memories")
    owner_arg(p_list)
    p_list.add_argument("--type", default="core", choices=["core", "journal"], help="Memory type")
    json_arg(p_list)

    # search
    p_search = sub.add_parser("search", help="Search memories")
    p_search.add_argument("query", help="Substring to search for")
    owner_arg(p_search)
    p_search.add_argument("--limit", type=int, default=50, help="Max results")
    json_arg(p_search)

    # protect / unprotect / discard / restore
    for name, text in (
        ("protect", "Mark a memory constitutional"),
        ("unprotect", "Clear the constitutional flag"),
        ("discard", "Soft-delete a memory outside any session"),
        ("restore", "Restore a discarded memory"),
    ):
        p = sub.add_parser(name, help=text)
        p.add_argument("id", type=int, help="Memory id")
        json_arg(p)

    # settings
    p_settings = sub.add_parser("settings", help="Show or set per-agent settings")
    owner_arg(p_settings)
    p_settings.add_argument("--threshold", type=float, default=None, help="Mass threshold in (0, 1]")
    p_settings.add_argument("--token-budget", type=int, default=None, help="Core token budget")
    p_settings.add_argument("--refinement-prompt", default=None,
                            help="Extra instructions for this agent's sessions (empty string clears)")
    json_arg(p_settings)

    # open
    p_open = sub.add_parser("open", help="Open a refinement session")
    owner_arg(p_open)
    p_open.add_argument("--threshold", type=float, default=None, help="Override the threshold")
    json_arg(p_open)

    # tool
    p_tool = sub.add_parser("tool", help="Issue one tool call")
    p_tool.add_argument("session_id", help="Session id")
    p_tool.add_argument("action", help="search, get, consolidate, update, delete, protect, complete")
    p_tool.add_argument("--args", default=None, help="Arguments as a JSON object")
    p_tool.add_argument("--query", default=None)
    p_tool.add_argument("--ids", default=None, help="Comma separated ids")
    p_tool.add_argument("--id", type=int, default=None)
    p_tool.add_argument("--content", default=None)
    p_tool.add_argument("--summary", default=None)

    # sessions
    p_sessions = sub.add_parser("sessions", help="List sessions")
    owner_arg(p_sessions, required=False)
    p_sessions.add_argument("--status", default=None,
                            choices=["active", "completed", "rolled_back", "abandoned"])
    p_sessions.add_argument("--limit", type=int, default=20, help="Max sessions")
    json_arg(p_sessions)

    # audit
    p_audit = sub.add_parser("audit", help="Show a session's ledger")
    p_audit.add_argument("session_id", help="Session id")
    json_arg(p_audit)

    # rollback
    p_rollback = sub.add_parser("rollback", help="Roll back an active session")
    p_rollback.add_argument("session_id", help="Session id")
    p_rollback.add_argument("--reason", default=None, help="Recorded reason")
    p_rollback.add_argument("--dry-run", action="store_true", help="Show the plan without writing")
    json_arg(p_rollback)

    # reap
    p_reap = sub.add_parser("reap", help="Abandon sessions past their lease")
    p_reap.add_argument("--older-than", type=int, default=None, help="Lease in minutes")
    json_arg(p_reap)

    # due
    p_due = sub.add_parser("due", help="Owners over their token budget")
    json_arg(p_due)

    # stats
    p_stats = sub.add_parser("stats", help="Memory and session statistics")
    owner_arg(p_stats, required=False)
    json_arg(p_stats)

    # status
    p_status = sub.add_parser("status", help="Show version, config, and agents")
    json_arg(p_status)

    return parser


COMMAND_MAP = {
    "add": cmd_add,
    "list": cmd_list,
    "search": cmd_search,
    "protect": cmd_protect,
    "unprotect": cmd_unprotect,
    "discard": cmd_discard,
    "restore": cmd_restore,
    "settings": cmd_settings,
    "open": cmd_open,
    "tool": cmd_tool,
    "sessions": cmd_sessions,
    "audit": cmd_audit,
    "rollback": cmd_rollback,
    "reap": cmd_reap,
    "due": cmd_due,
    "stats": cmd_stats,
    "status": cmd_status,
}


def main(argv: Optional[list] = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    handler = COMMAND_MAP.get(args.command)
    if handler:
        try:
            handler(args)
        except KeyboardInterrupt:
            print("\nInterrupted.")
            sys.exit(1)
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
