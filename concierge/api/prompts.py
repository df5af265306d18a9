"""System prompt for the dashboard assistant."""

from __future__ import annotations

from datetime import datetime, timezone

from concierge.api.tools import ToolRegistry

_CATEGORY_DESCRIPTIONS = {
    "calendar": "Calendar events (view, create, update, delete events)",
    "kanban": "Kanban boards (view boards/columns/cards, create/update cards)",
    "notes": "Notes (search, read, create, update notes and list folders)",
    "timetable": "Timetable (view, create, update, delete weekly schedule entries)",
    "contacts": "Contacts (view contact form submissions, update status)",
    "blog": "Blog posts (search, list, read posts -- read-only)",
    "projects": "Projects (list, view portfolio projects -- read-only)",
    "timeline": "Timeline (view career/education timeline -- read-only)",
    "email": "Email (list, read emails -- read-only)",
}


def build_system_prompt(
    owner_name: str,
    registry: ToolRegistry | None = None,
    now: datetime | None = None,
) -> str:
    """Assistant persona, current time and the data domains tools can reach."""
    now = now or datetime.now(timezone.utc)
    timestamp = now.strftime("%A, %B %d, %Y, %H:%M %Z").strip()

    parts = [
        f"You are {owner_name}'s personal AI assistant integrated into their "
        "dashboard app. You are helpful, concise, and proactive.",
        f"Current date and time: {timestamp}",
    ]

    if registry is not None and len(registry):
        domains = "\n".join(
            f"- {_CATEGORY_DESCRIPTIONS.get(category, category.capitalize())}"
            for category in registry.categories()
        )
        parts.append(
            "You have access to tools that let you interact with the dashboard's "
            "data. Use them when the user's request involves their data. For read "
            "operations, use tools directly. For write operations (create, update, "
            "delete), the user will be asked to confirm before the action is "
            "executed.\n\n"
            f"Available data domains:\n{domains}"
        )

    parts.append(
        "Guidelines:\n"
        "- Be concise. Use markdown formatting when helpful.\n"
        "- When using tools, prefer to gather all needed data before responding.\n"
        "- When a write action requires confirmation, explain clearly what you intend to do.\n"
        "- If a tool call fails, explain the issue and suggest alternatives.\n"
        "- Do not fabricate data -- only report what tools return."
    )
    return "\n\n".join(parts)
