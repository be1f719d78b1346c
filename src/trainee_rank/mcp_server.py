"""MCP server for trainee-rank.

Exposes trainee levels and gift redemption as MCP tools.
Run via: python3 -m trainee_rank.mcp_server
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from mcp.server.fastmcp import FastMCP

mcp = FastMCP(name="trainee-rank")


def _get_db():
    from trainee_rank.config import get_db_path
    from trainee_rank.db import Database
    return Database(get_db_path())


def _get_levels():
    from trainee_rank.config import get_level_catalog
    return get_level_catalog()


@mcp.tool()
def get_trainee_level(trainee: str) -> dict[str, Any]:
    """Get a trainee's level, progress to the next level, and perks (by id or serial number)."""
    levels = _get_levels()
    db = _get_db()
    try:
        registry = db.load_registry(levels)
        found = registry.get(trainee) or registry.get_by_serial(trainee)
        if found is None:
            return {"error": f"Trainee not found: {trainee}"}
        level = levels.level_for(found.points)
        nxt = levels.next_level_for(found.points)
        progress = levels.progress_for(found.points)
        return {
            "trainee_id": found.id,
            "name": found.name,
            "points": found.points,
            "level": level.id,
            "level_name": level.name,
            "emoji": level.emoji,
            "next_level": nxt.id if nxt else None,
            "progress_percent": progress.progress_percent,
            "points_to_next": progress.points_to_next,
            "perks": list(level.perks),
        }
    finally:
        db.close()


@mcp.tool()
def list_available_rewards(trainee: str) -> dict[str, Any]:
    """List the gifts a trainee can redeem right now."""
    from trainee_rank.redemption import RedemptionEngine

    levels = _get_levels()
    db = _get_db()
    try:
        registry = db.load_registry(levels)
        found = registry.get(trainee) or registry.get_by_serial(trainee)
        if found is None:
            return {"error": f"Trainee not found: {trainee}"}
        engine = RedemptionEngine(db.load_catalog(), registry)
        rewards = engine.available_rewards_for(found.id)
        return {
            "trainee_id": found.id,
            "points": found.points,
            "rewards": [
                {
                    "id": r.id,
                    "title": r.title,
                    "points_required": r.points_required,
                    "remaining": r.remaining,
                    "category": r.category,
                    "type": r.type.value,
                }
                for r in rewards
            ],
        }
    finally:
        db.close()


@mcp.tool()
def redeem_reward(reward_id: str, trainee: str) -> dict[str, Any]:
    """Redeem one unit of a gift for a trainee. Returns the error code on rejection."""
    levels = _get_levels()
    db = _get_db()
    try:
        with db.transaction():
            registry = db.load_registry(levels)
            found = registry.get(trainee) or registry.get_by_serial(trainee)
            outcome = db.redeem(reward_id, found.id if found else trainee, levels=levels)
        if not outcome.ok:
            return {"ok": False, "error": outcome.error.value, "message": outcome.message}
        return {
            "ok": True,
            "redemption_id": outcome.record.id,
            "points_deducted": outcome.record.points_deducted,
            "points": found.points - outcome.record.points_deducted,
            "level": outcome.transition.new_level.id,
        }
    finally:
        db.close()


@mcp.tool()
def get_level_statistics() -> dict[str, Any]:
    """Count trainees per level, plus gift catalog totals."""
    levels = _get_levels()
    db = _get_db()
    try:
        registry = db.load_registry(levels)
        stats = levels.level_statistics(registry.points_by_trainee())
        catalog_stats = db.load_catalog().stats(datetime.now(tz=timezone.utc))
        return {
            "levels": [
                {"id": s.level.id, "name": s.level.name, "count": s.count}
                for s in stats.values()
            ],
            "trainees": len(registry.all()),
            "rewards_active": catalog_stats.active,
            "total_redemptions": catalog_stats.total_redemptions,
            "total_points_redeemed": catalog_stats.total_points_redeemed,
        }
    finally:
        db.close()


def main() -> None:
    mcp.run()


if __name__ == "__main__":
    main()
