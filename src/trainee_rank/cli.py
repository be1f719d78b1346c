"""CLI commands for trainee-rank."""

from __future__ import annotations

import argparse
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from loguru import logger

from trainee_rank.achievements import get_newly_earned, next_milestone, trainee_achievements
from trainee_rank.config import get_db_path, get_level_catalog
from trainee_rank.db import Database
from trainee_rank.display import (
    console,
    print_error,
    print_levels,
    print_point_update,
    print_redemption_result,
    print_redemptions,
    print_rewards,
    print_stats,
    print_trainee_card,
)
from trainee_rank.levels import DEFAULT_CATALOG, CatalogError, LevelCatalog
from trainee_rank.redemption import RedemptionEngine
from trainee_rank.rewards import (
    Availability,
    Reward,
    RewardCatalog,
    RewardNotFoundError,
    RewardType,
    RewardValidationError,
)
from trainee_rank.trainees import (
    LevelAdjustmentError,
    Trainee,
    TraineeRegistry,
)
from trainee_rank.transitions import LevelTransition


def build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="trainee-rank",
        description="Trainee levels, points and gift redemption",
    )
    parser.add_argument("--db", default=None, help="Database path (overrides config)")
    parser.add_argument("--quiet", "-q", action="store_true", help="Silence log output")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("levels", help="Show the level table")
    subparsers.add_parser("stats", help="Program totals and trainees per level")

    reg_p = subparsers.add_parser("register", help="Register a trainee")
    reg_p.add_argument("--name", "-n", required=True)
    reg_p.add_argument("--points", type=int, default=0, help="Starting points (e.g. photo bonus)")
    reg_p.add_argument("--email", default=None)
    reg_p.add_argument("--phone", default=None)

    show_p = subparsers.add_parser("show", help="Show a trainee's level and progress")
    show_p.add_argument("trainee", help="Trainee id or serial number")

    checkin_p = subparsers.add_parser("checkin", help="Check a trainee in by serial number")
    checkin_p.add_argument("serial")

    flag_p = subparsers.add_parser("flag", help="Flag a trainee (point penalty)")
    flag_p.add_argument("trainee")
    flag_p.add_argument("--reason", "-r", required=True)

    points_p = subparsers.add_parser("points", help="Adjust a trainee's points")
    points_p.add_argument("trainee")
    amount = points_p.add_mutually_exclusive_group(required=True)
    amount.add_argument("--delta", type=int, default=None)
    amount.add_argument("--set", dest="new_points", type=int, default=None)
    points_p.add_argument("--reason", "-r", default="manual adjustment")

    complete_p = subparsers.add_parser("complete", help="Award points for a completed activity")
    complete_p.add_argument("trainee")
    complete_p.add_argument("--kind", choices=["session", "course", "group-course"], default="session")
    complete_p.add_argument("--points", type=int, default=None)

    level_p = subparsers.add_parser("set-level", help="Move a trainee to a level (admin)")
    level_p.add_argument("trainee")
    level_p.add_argument("level", help="Level id, e.g. novice")
    level_p.add_argument("--reason", "-r", required=True)

    remove_p = subparsers.add_parser("remove", help="Delete a trainee and their history")
    remove_p.add_argument("trainee")

    reward_p = subparsers.add_parser("reward", help="Manage gifts")
    reward_sub = reward_p.add_subparsers(dest="reward_command")
    add_p = reward_sub.add_parser("add", help="Create a gift")
    add_p.add_argument("--title", required=True)
    add_p.add_argument("--description", required=True)
    _add_reward_fields(add_p, defaults=True)
    add_p.add_argument("--target", action="append", default=[], help="Restrict to a trainee (repeatable)")
    list_p = reward_sub.add_parser("list", help="List gifts")
    list_p.add_argument("--status", choices=[a.value for a in Availability], default=None)
    update_p = reward_sub.add_parser("update", help="Edit a gift")
    update_p.add_argument("reward")
    update_p.add_argument("--title", default=None)
    update_p.add_argument("--description", default=None)
    update_p.add_argument("--status", choices=["active", "inactive"], default=None)
    _add_reward_fields(update_p, defaults=False)
    retire_p = reward_sub.add_parser("retire", help="Deactivate a gift, keeping its history")
    retire_p.add_argument("reward")
    delete_p = reward_sub.add_parser("delete", help="Delete a gift and its redemption records")
    delete_p.add_argument("reward")

    redeem_p = subparsers.add_parser("redeem", help="Redeem a gift for a trainee")
    redeem_p.add_argument("reward")
    redeem_p.add_argument("trainee")

    available_p = subparsers.add_parser("available", help="Gifts a trainee can redeem now")
    available_p.add_argument("trainee")

    redemptions_p = subparsers.add_parser("redemptions", help="Redemption history")
    redemptions_p.add_argument("--reward", default=None)
    redemptions_p.add_argument("--trainee", default=None)
    return parser


def _add_reward_fields(parser: argparse.ArgumentParser, defaults: bool) -> None:
    parser.add_argument("--points", dest="points_required", type=int, default=50 if defaults else None)
    parser.add_argument("--quantity", dest="available_quantity", type=int, default=10 if defaults else None)
    parser.add_argument("--limit", dest="limit_per_person", type=int, default=1 if defaults else None)
    parser.add_argument("--expiry", dest="expiry_date", default=None, help="YYYY-MM-DD")
    parser.add_argument("--type", choices=[t.value for t in RewardType], default="gift" if defaults else None)
    parser.add_argument("--category", default="General" if defaults else None)
    parser.add_argument("--terms", default="" if defaults else None)


def main(argv: list[str] | None = None) -> None:
    """Entry point for the CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)
    command = args.command or "stats"
    if args.quiet:
        logger.remove()

    try:
        levels = get_level_catalog()
    except CatalogError as exc:
        print_error(f"Invalid level table in config: {exc}")
        return

    db_path = Path(args.db).expanduser() if args.db else get_db_path()
    db = Database(db_path)

    try:
        if command in _WRITE_COMMANDS:
            with db.transaction():
                _dispatch(db, command, args, levels)
        else:
            _dispatch(db, command, args, levels)
    finally:
        db.close()


# Commands that load, change and save; they run under the database write lock
_WRITE_COMMANDS = {
    "register", "checkin", "flag", "points", "complete", "set-level", "remove", "reward", "redeem",
}


def _dispatch(db: Database, command: str, args: argparse.Namespace, levels: LevelCatalog) -> None:
    if command == "levels":
        do_levels(db, levels=levels)
    elif command == "stats":
        do_stats(db, levels=levels)
    elif command == "register":
        do_register(db, args.name, points=args.points, levels=levels,
                    email=args.email, phone=args.phone)
    elif command == "show":
        do_show(db, args.trainee, levels=levels)
    elif command == "checkin":
        do_checkin(db, args.serial, levels=levels)
    elif command == "flag":
        do_flag(db, args.trainee, args.reason, levels=levels)
    elif command == "points":
        do_points(db, args.trainee, delta=args.delta, new_points=args.new_points,
                  reason=args.reason, levels=levels)
    elif command == "complete":
        do_complete(db, args.trainee, kind=args.kind, points=args.points, levels=levels)
    elif command == "set-level":
        do_set_level(db, args.trainee, args.level, args.reason, levels=levels)
    elif command == "remove":
        do_remove(db, args.trainee, levels=levels)
    elif command == "reward":
        _dispatch_reward(db, args)
    elif command == "redeem":
        do_redeem(db, args.reward, args.trainee, levels=levels)
    elif command == "available":
        do_available(db, args.trainee, levels=levels)
    elif command == "redemptions":
        do_redemptions(db, reward_key=args.reward, trainee_key=args.trainee, levels=levels)


def _dispatch_reward(db: Database, args: argparse.Namespace) -> None:
    sub = getattr(args, "reward_command", None)
    if sub == "add":
        do_reward_add(
            db, title=args.title, description=args.description,
            points_required=args.points_required, available_quantity=args.available_quantity,
            limit_per_person=args.limit_per_person, expiry_date=args.expiry_date,
            type=args.type, category=args.category, terms=args.terms,
            targeted_trainees=args.target,
        )
    elif sub == "update":
        fields = (
            "title", "description", "status", "points_required", "available_quantity",
            "limit_per_person", "expiry_date", "type", "category", "terms",
        )
        patch = {name: getattr(args, name) for name in fields if getattr(args, name) is not None}
        do_reward_update(db, args.reward, **patch)
    elif sub == "retire":
        do_reward_retire(db, args.reward)
    elif sub == "delete":
        do_reward_delete(db, args.reward)
    else:
        do_reward_list(db, status=getattr(args, "status", None))


# ── Helpers ───────────────────────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _resolve_trainee(registry: TraineeRegistry, key: str) -> Trainee | None:
    """Accept a trainee id or a serial number."""
    return registry.get(key) or registry.get_by_serial(key)


def _resolve_reward(catalog: RewardCatalog, key: str) -> Reward | None:
    """Accept a full reward id or an unambiguous prefix of one."""
    reward = catalog.get(key)
    if reward is not None:
        return reward
    matches = [r for r in catalog.all() if r.id.startswith(key)]
    return matches[0] if len(matches) == 1 else None


def _reward_row(reward: Reward, now: datetime) -> dict:
    return {
        "id": reward.id,
        "title": reward.title,
        "description": reward.description,
        "type": reward.type.value,
        "category": reward.category,
        "points_required": reward.points_required,
        "available_quantity": reward.available_quantity,
        "total_redeemed": reward.total_redeemed,
        "remaining": reward.remaining,
        "limit_per_person": reward.limit_per_person,
        "expiry_date": reward.expiry_date.date().isoformat() if reward.expiry_date else None,
        "status": reward.status.value,
        "availability": reward.availability(now).value,
        "targeted_trainees": list(reward.targeted_trainees),
    }


def _trainee_not_found(key: str) -> dict:
    print_error(f"Trainee not found: {key}")
    return {"ok": False, "reason": "trainee_not_found"}


def _reward_not_found(key: str) -> dict:
    print_error(f"Gift not found: {key}")
    return {"ok": False, "reason": "reward_not_found"}


def _transition_result(trainee: Trainee, transition: LevelTransition) -> dict:
    return {
        "ok": True,
        "trainee_id": trainee.id,
        "name": trainee.name,
        "points": trainee.points,
        "points_gained": transition.points_gained,
        "leveled_up": transition.leveled_up,
        "old_level_name": transition.old_level.name,
        "level_name": transition.new_level.name,
        "level_color": transition.new_level.color,
    }


def _apply_point_change(
    db: Database,
    registry: TraineeRegistry,
    trainee: Trainee,
    change: Callable[[], LevelTransition],
) -> dict:
    """Run a registry point operation, persist, and report level-ups and new achievements."""
    before = trainee_achievements(trainee.points, registry.catalog)
    transition = change()
    db.save_registry(registry)
    after = trainee_achievements(trainee.points, registry.catalog)
    result = _transition_result(trainee, transition)
    result["new_achievements"] = [a.title for a in get_newly_earned(before, after)]
    print_point_update(result)
    return result


# ── Trainee commands ──────────────────────────────────────────────────────────


def do_levels(db: Database, levels: LevelCatalog = DEFAULT_CATALOG) -> list[dict]:
    """Show the level catalog with the number of trainees at each level."""
    registry = db.load_registry(levels)
    stats = levels.level_statistics(registry.points_by_trainee())
    rows = [
        {
            "id": lv.id,
            "name": lv.name,
            "emoji": lv.emoji,
            "color": lv.color,
            "min_points": lv.min_points,
            "max_points": lv.max_points,
            "perks": list(lv.perks),
            "count": stats[lv.id].count,
        }
        for lv in levels
    ]
    print_levels(rows)
    return rows


def do_register(db: Database, name: str, points: int = 0,
                levels: LevelCatalog = DEFAULT_CATALOG, **details: object) -> dict:
    """Register a trainee and print their card."""
    registry = db.load_registry(levels)
    clean = {k: v for k, v in details.items() if v is not None}
    trainee = registry.register(name, points=points, **clean)
    db.save_registry(registry)
    return do_show(db, trainee.id, levels=levels)


def do_show(db: Database, key: str, levels: LevelCatalog = DEFAULT_CATALOG) -> dict:
    """Show a trainee's level card."""
    registry = db.load_registry(levels)
    trainee = _resolve_trainee(registry, key)
    if trainee is None:
        return _trainee_not_found(key)

    level = levels.level_for(trainee.points)
    nxt = levels.next_level_for(trainee.points)
    progress = levels.progress_for(trainee.points)
    data = {
        "ok": True,
        "trainee_id": trainee.id,
        "name": trainee.name,
        "serial_number": trainee.serial_number,
        "points": trainee.points,
        "level_id": level.id,
        "level_name": level.name,
        "level_emoji": level.emoji,
        "level_color": level.color,
        "next_level_name": nxt.name if nxt else None,
        "progress_percent": progress.progress_percent,
        "points_to_next": progress.points_to_next,
        "perks": list(level.perks),
        "achievements": [a.title for a in trainee_achievements(trainee.points, levels)],
        "next_milestone": next_milestone(trainee.points),
        "flags": len(trainee.flags),
    }
    print_trainee_card(data)
    return data


def do_checkin(db: Database, serial: str, levels: LevelCatalog = DEFAULT_CATALOG) -> dict:
    """QR check-in by serial number."""
    registry = db.load_registry(levels)
    trainee = registry.get_by_serial(serial)
    if trainee is None:
        return _trainee_not_found(serial)
    return _apply_point_change(db, registry, trainee, lambda: registry.check_in(serial)[1])


def do_flag(db: Database, key: str, reason: str, levels: LevelCatalog = DEFAULT_CATALOG) -> dict:
    registry = db.load_registry(levels)
    trainee = _resolve_trainee(registry, key)
    if trainee is None:
        return _trainee_not_found(key)
    return _apply_point_change(db, registry, trainee, lambda: registry.flag(trainee.id, reason)[1])


def do_points(
    db: Database,
    key: str,
    delta: int | None = None,
    new_points: int | None = None,
    reason: str = "manual adjustment",
    levels: LevelCatalog = DEFAULT_CATALOG,
) -> dict:
    """Manual point adjustment (delta or absolute)."""
    registry = db.load_registry(levels)
    trainee = _resolve_trainee(registry, key)
    if trainee is None:
        return _trainee_not_found(key)
    return _apply_point_change(
        db, registry, trainee,
        lambda: registry.update_points(trainee.id, delta=delta, new_points=new_points, reason=reason),
    )


def do_complete(
    db: Database,
    key: str,
    kind: str = "session",
    points: int | None = None,
    levels: LevelCatalog = DEFAULT_CATALOG,
) -> dict:
    """Award points for a completed session, course or group course."""
    registry = db.load_registry(levels)
    trainee = _resolve_trainee(registry, key)
    if trainee is None:
        return _trainee_not_found(key)
    actions = {
        "session": registry.complete_session,
        "course": registry.complete_course,
        "group-course": registry.complete_group_course,
    }
    return _apply_point_change(db, registry, trainee, lambda: actions[kind](trainee.id, points))


def do_set_level(
    db: Database, key: str, level_id: str, reason: str, levels: LevelCatalog = DEFAULT_CATALOG
) -> dict:
    """Admin level adjustment."""
    registry = db.load_registry(levels)
    trainee = _resolve_trainee(registry, key)
    if trainee is None:
        return _trainee_not_found(key)
    try:
        return _apply_point_change(
            db, registry, trainee, lambda: registry.set_level(trainee.id, level_id, reason)
        )
    except LevelAdjustmentError as exc:
        print_error(str(exc))
        return {"ok": False, "reason": "invalid_adjustment", "message": str(exc)}


def do_remove(db: Database, key: str, levels: LevelCatalog = DEFAULT_CATALOG) -> dict:
    """Delete a trainee together with their check-ins and redemption records."""
    registry = db.load_registry(levels)
    catalog = db.load_catalog()
    trainee = _resolve_trainee(registry, key)
    if trainee is None:
        return _trainee_not_found(key)
    registry.remove(trainee.id)
    removed = catalog.drop_trainee_redemptions(trainee.id)
    db.save(registry, catalog)
    console.print(f"Removed [bold]{trainee.name}[/] ({removed} redemption records)")
    return {"ok": True, "trainee_id": trainee.id, "redemptions_removed": removed}


# ── Gift commands ─────────────────────────────────────────────────────────────


def do_reward_add(db: Database, **fields: object) -> dict:
    catalog = db.load_catalog()
    try:
        reward = catalog.create_reward(**fields)
    except RewardValidationError as exc:
        for name, message in exc.errors.items():
            print_error(f"{name}: {message}")
        return {"ok": False, "reason": "invalid", "errors": exc.errors}
    db.save_catalog(catalog)
    row = _reward_row(reward, _now())
    print_rewards([row], title="Gift Created")
    return {"ok": True, **row}


def do_reward_list(db: Database, status: str | None = None) -> list[dict]:
    catalog = db.load_catalog()
    now = _now()
    rows = [_reward_row(r, now) for r in catalog.all()]
    if status:
        rows = [r for r in rows if r["availability"] == status]
    print_rewards(rows)
    return rows


def do_reward_update(db: Database, key: str, **patch: object) -> dict:
    catalog = db.load_catalog()
    reward = _resolve_reward(catalog, key)
    if reward is None:
        return _reward_not_found(key)
    try:
        catalog.update_reward(reward.id, **patch)
    except RewardValidationError as exc:
        for name, message in exc.errors.items():
            print_error(f"{name}: {message}")
        return {"ok": False, "reason": "invalid", "errors": exc.errors}
    db.save_catalog(catalog)
    row = _reward_row(reward, _now())
    print_rewards([row], title="Gift Updated")
    return {"ok": True, **row}


def do_reward_retire(db: Database, key: str) -> dict:
    catalog = db.load_catalog()
    reward = _resolve_reward(catalog, key)
    if reward is None:
        return _reward_not_found(key)
    catalog.retire_reward(reward.id)
    db.save_catalog(catalog)
    row = _reward_row(reward, _now())
    print_rewards([row], title="Gift Retired")
    return {"ok": True, **row}


def do_reward_delete(db: Database, key: str) -> dict:
    catalog = db.load_catalog()
    reward = _resolve_reward(catalog, key)
    if reward is None:
        return _reward_not_found(key)
    try:
        removed = catalog.delete_reward(reward.id)
    except RewardNotFoundError:
        return _reward_not_found(key)
    db.save_catalog(catalog)
    console.print(f"Deleted [bold]{reward.title}[/] ({removed} redemption records)")
    return {"ok": True, "reward_id": reward.id, "redemptions_removed": removed}


def do_redeem(db: Database, reward_key: str, trainee_key: str,
              levels: LevelCatalog = DEFAULT_CATALOG) -> dict:
    """Redeem a gift for a trainee.

    Lookup and redemption share one write transaction, so another process
    redeeming the same gift waits and then sees the reduced stock.
    """
    with db.transaction():
        registry = db.load_registry(levels)
        catalog = db.load_catalog()
        reward = _resolve_reward(catalog, reward_key)
        trainee = _resolve_trainee(registry, trainee_key)
        outcome = db.redeem(
            reward.id if reward else reward_key,
            trainee.id if trainee else trainee_key,
            levels=levels,
        )
    if not outcome.ok:
        result = {"ok": False, "reason": outcome.error.value, "message": outcome.message}
        print_redemption_result(result)
        return result

    record = outcome.record
    result = {
        "ok": True,
        "redemption_id": record.id,
        "reward_id": record.reward_id,
        "reward_title": reward.title,
        "trainee_id": record.trainee_id,
        "points_deducted": record.points_deducted,
        "points": trainee.points - record.points_deducted,
        "level_name": outcome.transition.new_level.name,
        "message": outcome.message,
    }
    print_redemption_result(result)
    return result


def do_available(db: Database, key: str, levels: LevelCatalog = DEFAULT_CATALOG) -> list[dict] | dict:
    """List gifts the trainee can redeem right now."""
    registry = db.load_registry(levels)
    catalog = db.load_catalog()
    trainee = _resolve_trainee(registry, key)
    if trainee is None:
        return _trainee_not_found(key)
    now = _now()
    engine = RedemptionEngine(catalog, registry)
    rows = [_reward_row(r, now) for r in engine.available_rewards_for(trainee.id, now=now)]
    print_rewards(rows, title=f"Gifts for {trainee.name} ({trainee.points} points)")
    return rows


def do_redemptions(
    db: Database,
    reward_key: str | None = None,
    trainee_key: str | None = None,
    levels: LevelCatalog = DEFAULT_CATALOG,
) -> list[dict]:
    """Redemption history, optionally filtered by gift and/or trainee."""
    registry = db.load_registry(levels)
    catalog = db.load_catalog()
    records = catalog.redemptions()
    if reward_key:
        reward = _resolve_reward(catalog, reward_key)
        wanted = reward.id if reward else reward_key
        records = [r for r in records if r.reward_id == wanted]
    if trainee_key:
        trainee = _resolve_trainee(registry, trainee_key)
        wanted = trainee.id if trainee else trainee_key
        records = [r for r in records if r.trainee_id == wanted]

    rows = []
    for record in sorted(records, key=lambda r: r.redeemed_at, reverse=True):
        reward = catalog.get(record.reward_id)
        trainee = registry.get(record.trainee_id)
        rows.append({
            "id": record.id,
            "reward_id": record.reward_id,
            "reward_title": reward.title if reward else record.reward_id,
            "trainee_id": record.trainee_id,
            "trainee_name": trainee.name if trainee else record.trainee_id,
            "points_deducted": record.points_deducted,
            "redeemed_at": record.redeemed_at.isoformat(),
        })
    print_redemptions(rows)
    return rows


def do_stats(db: Database, levels: LevelCatalog = DEFAULT_CATALOG) -> dict:
    """Program totals and trainees per level."""
    registry = db.load_registry(levels)
    catalog = db.load_catalog()
    trainees = registry.all()
    catalog_stats = catalog.stats(_now())
    per_level = levels.level_statistics(registry.points_by_trainee())
    data = {
        "trainees": len(trainees),
        "check_ins": len(registry.check_ins()),
        "flags": sum(len(t.flags) for t in trainees),
        "rewards_total": catalog_stats.total,
        "rewards_active": catalog_stats.active,
        "total_redemptions": catalog_stats.total_redemptions,
        "total_points_redeemed": catalog_stats.total_points_redeemed,
        "levels": [
            {"id": s.level.id, "name": s.level.name, "emoji": s.level.emoji, "count": s.count}
            for s in per_level.values()
        ],
    }
    print_stats(data)
    return data
