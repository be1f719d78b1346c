"""Rich terminal display for trainee-rank."""

from __future__ import annotations

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

console = Console()

# Map level colors from levels.py to valid Rich color names
_COLOR_MAP: dict[str, str] = {
    "green": "green3",
    "blue": "dodger_blue2",
    "yellow": "yellow3",
    "orange": "dark_orange",
    "indigo": "slate_blue1",
    "violet": "medium_purple",
    "amber": "orange3",
    "red": "red1",
}

_AVAILABILITY_COLORS: dict[str, str] = {
    "active": "green",
    "inactive": "grey50",
    "expired": "red",
    "out_of_stock": "yellow",
}


def _safe_color(color: str) -> str:
    """Map a level color to a valid Rich color name."""
    return _COLOR_MAP.get(color, color)


def format_number(n: int) -> str:
    """Format large numbers: 421543 -> '421.5K', 1200 -> '1,200', 1234567 -> '1.2M'."""
    if n >= 1_000_000:
        value = n / 1_000_000
        if value >= 100:
            return f"{value:.0f}M"
        return f"{value:.1f}M"
    if n >= 10_000:
        value = n / 1_000
        if value >= 1000:
            return f"{value:.0f}K"
        return f"{value:.1f}K"
    return f"{n:,}"


def _progress_bar(percent: int, width: int = 20) -> str:
    """Render a progress bar as text: [████████░░░░░░░░░░░░]."""
    ratio = max(0, min(percent, 100)) / 100
    filled = int(ratio * width)
    return "[" + "█" * filled + "░" * (width - filled) + "]"


def print_error(message: str) -> None:
    console.print(f"[red]{message}[/]")


def print_trainee_card(data: dict) -> None:
    """Print a trainee's level, progress toward the next level, and perks."""
    color = _safe_color(data.get("level_color", "white"))
    points = data.get("points", 0)
    percent = data.get("progress_percent", 0)
    points_to_next = data.get("points_to_next", 0)
    next_level = data.get("next_level_name")

    lines: list[str] = []
    lines.append("")
    lines.append(f"  [bold]{data.get('name', '')}[/]  ({data.get('serial_number', '')})")
    lines.append(f"  [bold {color}]{data.get('level_emoji', '')} {data.get('level_name', '')}[/]")
    lines.append(f"  Points: [bold]{format_number(points)}[/]")
    lines.append("")
    if next_level:
        lines.append(f"  {_progress_bar(percent)} {percent}%")
        lines.append(f"  {format_number(points_to_next)} points to {next_level}")
    else:
        lines.append(f"  {_progress_bar(100)} MAX LEVEL")

    perks = data.get("perks", [])
    if perks:
        lines.append("")
        lines.append("  [bold]Perks:[/]")
        for perk in perks:
            lines.append(f"  • {perk}")

    achievements = data.get("achievements", [])
    if achievements:
        lines.append("")
        lines.append(f"  Achievements: {len(achievements)}")

    flags = data.get("flags", 0)
    if flags:
        lines.append(f"  [red]Flags: {flags}[/]")
    lines.append("")

    panel = Panel(
        "\n".join(lines),
        title="[bold]TRAINEE[/]",
        box=box.ROUNDED,
        border_style=color,
        width=60,
    )
    console.print(panel)


def print_point_update(result: dict) -> None:
    """Print a balance change and celebrate a level-up if one happened."""
    gained = result.get("points_gained", 0)
    sign = "+" if gained >= 0 else ""
    console.print(
        f"  {result.get('name', '')}: {sign}{gained} points "
        f"-> [bold]{format_number(result.get('points', 0))}[/] ({result.get('level_name', '')})"
    )
    if result.get("leveled_up"):
        print_level_up(result)
    for title in result.get("new_achievements", []):
        console.print(f"  \U0001f3c6 {title}")


def print_level_up(result: dict) -> None:
    color = _safe_color(result.get("level_color", "white"))
    lines = [
        "",
        f"  [bold {color}]LEVEL UP![/]",
        "",
        f"  {result.get('old_level_name', '')} → [bold]{result.get('level_name', '')}[/]",
        f"  +{result.get('points_gained', 0)} points",
        "",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Congratulations[/]", box=box.ROUNDED,
                        border_style=color, width=50))


def print_levels(levels: list[dict]) -> None:
    """Print the level catalog as a table."""
    table = Table(title="Levels", box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Level", min_width=10)
    table.add_column("Points", justify="right")
    table.add_column("Perks", justify="right")
    table.add_column("Trainees", justify="right")

    for lv in levels:
        color = _safe_color(lv.get("color", "white"))
        high = lv.get("max_points")
        span = f"{lv['min_points']:,}+" if high is None else f"{lv['min_points']:,}-{high:,}"
        table.add_row(
            lv.get("emoji", ""),
            f"[{color}]{lv['name']}[/]",
            span,
            str(len(lv.get("perks", []))),
            str(lv.get("count", "")),
        )
    console.print(table)


def print_rewards(rewards: list[dict], title: str = "Gifts") -> None:
    """Print rewards with price, stock and live availability."""
    table = Table(title=title, box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("ID", style="dim", max_width=10)
    table.add_column("Gift", min_width=18)
    table.add_column("Type", width=10)
    table.add_column("Points", justify="right")
    table.add_column("Stock", justify="right")
    table.add_column("Expires", width=12)
    table.add_column("State", width=12)

    for r in rewards:
        state = r.get("availability", "active")
        color = _AVAILABILITY_COLORS.get(state, "white")
        table.add_row(
            r["id"][:8],
            f"[bold]{r['title']}[/]\n{r.get('category', '')}",
            r.get("type", ""),
            format_number(r.get("points_required", 0)),
            f"{r.get('remaining', 0)}/{r.get('available_quantity', 0)}",
            r.get("expiry_date") or "",
            f"[{color}]{state.upper()}[/{color}]",
        )
    console.print(table)


def print_redemption_result(result: dict) -> None:
    """Print the outcome of a redemption attempt."""
    if not result.get("ok"):
        panel = Panel(
            f"\n  {result.get('message', 'Redemption failed')}\n",
            title="[bold]Redemption Failed[/]",
            box=box.ROUNDED,
            border_style="red",
            width=50,
        )
        console.print(panel)
        return

    lines = [
        "",
        f"  Gift:            [bold]{result.get('reward_title', '')}[/]",
        f"  Points deducted: {format_number(result.get('points_deducted', 0))}",
        f"  New balance:     {format_number(result.get('points', 0))}",
        f"  Level:           {result.get('level_name', '')}",
        "",
    ]
    console.print(Panel("\n".join(lines), title="[bold]Gift Redeemed[/]", box=box.ROUNDED,
                        border_style="green", width=50))


def print_redemptions(rows: list[dict]) -> None:
    table = Table(title="Redemptions", box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("Date", width=12)
    table.add_column("Gift", min_width=16)
    table.add_column("Trainee", min_width=14)
    table.add_column("Points", justify="right")
    for row in rows:
        table.add_row(
            row.get("redeemed_at", "")[:10],
            row.get("reward_title", row.get("reward_id", "")),
            row.get("trainee_name", row.get("trainee_id", "")),
            format_number(row.get("points_deducted", 0)),
        )
    console.print(table)


def print_stats(data: dict) -> None:
    """Print trainee and gift totals."""
    table = Table(title="Program Stats", box=box.ROUNDED, show_header=True, header_style="bold")
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")

    table.add_row("Trainees", format_number(data.get("trainees", 0)))
    table.add_row("Check-ins", format_number(data.get("check_ins", 0)))
    table.add_row("Flags", format_number(data.get("flags", 0)))

    table.add_section()
    table.add_row("Total Gifts", format_number(data.get("rewards_total", 0)))
    table.add_row("Active Gifts", format_number(data.get("rewards_active", 0)))
    table.add_row("Total Redemptions", format_number(data.get("total_redemptions", 0)))
    table.add_row("Points Redeemed", format_number(data.get("total_points_redeemed", 0)))

    levels = data.get("levels", [])
    if levels:
        table.add_section()
        table.add_row("[bold]Trainees by Level[/]", "")
        for lv in levels:
            table.add_row(f"  {lv.get('emoji', '')} {lv['name']}", str(lv.get("count", 0)))

    console.print(table)
