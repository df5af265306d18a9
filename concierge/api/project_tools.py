"""Project tools (read-only): list portfolio projects and read one in full."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select

from concierge.api.calendar_tools import parse_uuid
from concierge.api.tools import ToolDefinition, ToolError
from concierge.storage.database import Database
from concierge.storage.models import Project


def _project_dict(project: Project, full: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": str(project.id),
        "title": project.title,
        "subtitle": project.subtitle,
        "tags": list(project.tags or []),
        "isActive": project.is_active,
        "isFeatured": project.is_featured,
        "links": project.links or [],
    }
    if full:
        data["images"] = list(project.images or [])
        data["markdown"] = project.markdown
        data["order"] = project.order
    return data


def create_project_tools(db: Database) -> list[ToolDefinition]:
    """Project tool definitions bound to ``db``."""

    async def list_projects(tool_input: dict[str, Any]) -> list[dict[str, Any]]:
        async with db.session() as session:
            result = await session.execute(select(Project).order_by(Project.order, Project.created_at))
            return [_project_dict(p) for p in result.scalars()]

    async def get_project(tool_input: dict[str, Any]) -> dict[str, Any]:
        project_id = parse_uuid(tool_input.get("id"), "Project")
        async with db.session() as session:
            project = await session.get(Project, project_id)
            if project is None:
                raise ToolError("Project not found")
            return _project_dict(project, full=True)

    return [
        ToolDefinition(
            name="list_projects",
            description="List all portfolio projects with their titles, tags, and metadata.",
            input_schema={"type": "object", "properties": {}},
            handler=list_projects,
            category="projects",
        ),
        ToolDefinition(
            name="get_project",
            description="Get full details of a project by its ID, including markdown content.",
            input_schema={
                "type": "object",
                "properties": {"id": {"type": "string", "description": "Project ID"}},
                "required": ["id"],
            },
            handler=get_project,
            category="projects",
        ),
    ]
