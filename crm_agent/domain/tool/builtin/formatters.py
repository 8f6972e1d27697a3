"""Markdown formatting helpers for tool output."""

from typing import Dict, List, Any, Callable, Optional, Tuple


Column = Tuple[str, str, Optional[Callable[[Any], str]]]


def format_currency(value: float) -> str:
    """Whole-dollar AUD, e.g. $12,345"""
    sign = "-" if value < 0 else ""
    return f"{sign}${abs(value):,.0f}"


def format_number(value: float) -> str:
    if isinstance(value, float) and not value.is_integer():
        return f"{value:,.2f}"
    return f"{int(value):,}"


def format_percent(value: float) -> str:
    return f"{value:.1f}%"


def format_status(value: str) -> str:
    return (value or "unknown").replace("_", " ").title()


def format_as_table(rows: List[Dict[str, Any]], columns: List[Column]) -> str:
    """Render rows as a markdown table"""

    if not rows:
        return ""

    header = "| " + " | ".join(title for _, title, _ in columns) + " |"
    divider = "| " + " | ".join("---" for _ in columns) + " |"
    lines = [header, divider]
    for row in rows:
        cells = []
        for key, _, formatter in columns:
            value = row.get(key)
            cells.append(formatter(value) if formatter and value is not None else str(value if value is not None else ""))
        lines.append("| " + " | ".join(cells) + " |")
    return "\n".join(lines)
