"""Blog tools (read-only): list, read and search published posts."""

from __future__ import annotations

from typing import Any

from sqlalchemy import or_, select

from concierge.api.calendar_tools import parse_uuid
from concierge.api.tools import ToolDefinition, ToolError
from concierge.storage.database import Database
from concierge.storage.models import BlogPost


def _post_dict(post: BlogPost, full: bool = False) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": str(post.id),
        "title": post.title,
        "slug": post.slug,
        "summary": post.summary,
        "tags": list(post.tags or []),
        "createdAt": post.created_at.isoformat() if post.created_at else None,
    }
    if full:
        data["content"] = post.content
    return data


def create_blog_tools(db: Database) -> list[ToolDefinition]:
    """Blog tool definitions bound to ``db``."""

    async def list_blogs(tool_input: dict[str, Any]) -> list[dict[str, Any]]:
        async with db.session() as session:
            result = await session.execute(
                select(BlogPost).where(BlogPost.published.is_(True)).order_by(BlogPost.created_at.desc())
            )
            return [_post_dict(p) for p in result.scalars()]

    async def get_blog(tool_input: dict[str, Any]) -> dict[str, Any]:
        post_id = parse_uuid(tool_input.get("id"), "Blog post")
        async with db.session() as session:
            post = await session.get(BlogPost, post_id)
            if post is None or not post.published:
                raise ToolError("Blog post not found")
            return _post_dict(post, full=True)

    async def search_blogs(tool_input: dict[str, Any]) -> list[dict[str, Any]]:
        query = (tool_input.get("query") or "").strip()
        tags = [t for t in tool_input.get("tags") or [] if isinstance(t, str)]

        stmt = select(BlogPost).where(BlogPost.published.is_(True))
        if query:
            pattern = f"%{query}%"
            stmt = stmt.where(
                or_(BlogPost.title.ilike(pattern), BlogPost.summary.ilike(pattern), BlogPost.content.ilike(pattern))
            )
        if tags:
            stmt = stmt.where(BlogPost.tags.overlap(tags))

        async with db.session() as session:
            result = await session.execute(stmt.order_by(BlogPost.created_at.desc()).limit(20))
            return [_post_dict(p) for p in result.scalars()]

    return [
        ToolDefinition(
            name="list_blogs",
            description="List all blog posts with their titles, tags, and metadata.",
            input_schema={"type": "object", "properties": {}},
            handler=list_blogs,
            category="blog",
        ),
        ToolDefinition(
            name="get_blog",
            description="Get the full content of a blog post by its ID.",
            input_schema={
                "type": "object",
                "properties": {"id": {"type": "string", "description": "Blog post ID"}},
                "required": ["id"],
            },
            handler=get_blog,
            category="blog",
        ),
        ToolDefinition(
            name="search_blogs",
            description="Search blog posts by query text and/or tags.",
            input_schema={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "Search query (optional)"},
                    "tags": {
                        "type": "array",
                        "description": "Filter by tags (optional)",
                        "items": {"type": "string"},
                    },
                },
            },
            handler=search_blogs,
            category="blog",
        ),
    ]
