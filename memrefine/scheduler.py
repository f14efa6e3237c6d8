"""Periodic refinement sweep.

The model loop itself is an external *driver*: any callable
``driver(refiner, session, prompt)`` that issues tool calls through
``refiner.call`` and finishes with ``complete``. The sweep only picks owners,
opens sessions, and keeps going when a driver fails. An agent's stored
``refinement_prompt`` is added to its prompt.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from memrefine.core.models import MemoryRecord, RefinementSession
from memrefine.exceptions import SessionAlreadyActiveError

logger = logging.getLogger(__name__)

Driver = Callable[[Any, RefinementSession, str], Any]


def due_owners(refiner) -> List[Dict[str, Any]]:
    """Owners whose core mass exceeds their token budget, heaviest first."""
    due = []
    for owner_id in refiner.db.list_owner_ids():
        mass = refiner.mass(owner_id)
        budget = refiner.sessions.resolve_token_budget(owner_id)
        if mass > budget:
            due.append({"owner_id": owner_id, "mass": mass, "token_budget": budget})
    due.sort(key=lambda item: item["mass"], reverse=True)
    return due


def format_memory_ledger(records: List[MemoryRecord]) -> str:
    return "\n".join(record.ledger_line() for record in records)


def build_refinement_prompt(refiner, session: RefinementSession, instructions: Optional[str] = None) -> str:
    """Prompt handed to the driver: status, the ledger, and the ground rules."""
    records = refiner.list_memories(session.owner_id)
    budget = refiner.sessions.resolve_token_budget(session.owner_id)
    usage = session.pre_mass
    if usage > budget:
        budget_line = f"Over budget by: {usage - budget} tokens"
    else:
        budget_line = "Within budget"
    cap = refiner.config.refinement.operation_cap
    floor = int(round(session.threshold * 100))

    lines = [
        "# Memory Refinement Session",
        "",
        "You are reviewing your own core memories. This is de-duplication, not compression.",
    ]
    if instructions:
        lines += ["", instructions.strip()]
    lines += [
        "",
        "## Current Status",
        f"- Core memories: {len(records)}",
        f"- Token usage: {usage} tokens",
        f"- Token budget: {budget} tokens",
        f"- {budget_line}",
        f"- At most {cap} consolidate/update/delete calls this session",
        f"- If less than {floor}% of your memory survives, every change is rolled back",
        "",
        "## Your Core Memory Ledger",
        format_memory_ledger(records),
        "",
        "Review your memories. De-duplicate exact duplicates. Tighten phrasing within "
        "individual memories if possible. When done, call complete with a brief summary. "
        "Doing nothing is fine.",
    ]
    return "\n".join(lines)


def run_sweep(refiner, driver: Driver, owner_ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """Open a session for each due owner and hand it to ``driver``.

    Returns one result per owner attempted. A failing driver is logged and
    the sweep moves on; its session stays active until the reaper runs.
    """
    if owner_ids is None:
        owner_ids = [item["owner_id"] for item in due_owners(refiner)]

    logger.info("Refinement sweep starting for %d owner(s)", len(owner_ids))
    results: List[Dict[str, Any]] = []
    for owner_id in owner_ids:
        try:
            session = refiner.open_session(owner_id)
        except SessionAlreadyActiveError as exc:
            logger.info("Skipping %s: %s", owner_id, exc.message)
            results.append({"owner_id": owner_id, "status": "skipped", "error": exc.message})
            continue

        prompt = build_refinement_prompt(
            refiner, session, refiner.sessions.resolve_refinement_prompt(owner_id),
        )
        try:
            driver(refiner, session, prompt)
        except Exception as exc:
            logger.exception("Refinement driver failed for %s (session %s)", owner_id, session.session_id)
            results.append({
                "owner_id": owner_id,
                "session_id": session.session_id,
                "status": "driver_failed",
                "error": str(exc),
            })
            continue

        final = refiner.get_session(session.session_id)
        if final.active:
            logger.warning(
                "Driver returned without completing session %s for %s",
                final.session_id, owner_id,
            )
        results.append({
            "owner_id": owner_id,
            "session_id": final.session_id,
            "status": final.status,
            "pre_mass": final.pre_mass,
            "post_mass": final.post_mass,
            "operation_count": final.operation_count,
        })

    logger.info("Refinement sweep complete")
    return results
