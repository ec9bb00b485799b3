"""Length-bounded SMS notification text.

The message is a header line with the call duration, the summary (truncated
with an explicit ellipsis when needed) and, if available, the storage link.
Room for the link is reserved before the summary is cut, and the result is
never longer than the budget.
"""
from typing import Optional

DEFAULT_BUDGET = 640
ELLIPSIS = "..."


def format_duration(duration_seconds: int) -> str:
    minutes, seconds = divmod(max(0, int(duration_seconds)), 60)
    if minutes:
        return f"{minutes}m {seconds:02d}s"
    return f"{seconds}s"


def truncate(text: str, limit: int) -> str:
    """Cut text to at most `limit` characters, ending with an ellipsis if cut."""
    if limit <= 0:
        return ""
    if len(text) <= limit:
        return text
    if limit <= len(ELLIPSIS):
        return ELLIPSIS[:limit]
    return text[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS


def compose_notification(
    duration_seconds: int,
    summary_text: Optional[str],
    storage_link: Optional[str] = None,
    budget: int = DEFAULT_BUDGET,
) -> str:
    """
    Build the call notification.

    Args:
        duration_seconds: Call duration for the header line
        summary_text: AI summary or raw transcript (may be empty)
        storage_link: URL of the stored file, appended on its own line
        budget: Maximum message length in characters

    Returns:
        A message with len(message) <= budget
    """
    if budget <= 0:
        return ""

    header = f"Call summary ({format_duration(duration_seconds)})"
    link_part = f"\n{storage_link}" if storage_link else ""

    summary = " ".join((summary_text or "").split())
    available = budget - len(header) - 1 - len(link_part)
    summary = truncate(summary, available)

    body = f"{header}\n{summary}" if summary else header
    message = body + link_part

    # Header and link alone can exceed a very small budget
    if len(message) > budget:
        message = truncate(body, budget)
    return message
