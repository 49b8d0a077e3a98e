"""FastMCP server definition (tools)."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from mcp.server.fastmcp import Context, FastMCP

from .models import Entity, EntityEdit, EntityType, FolderNode, ListPage, SortOrder, SyncReport
from .runtime import NotesRuntime
from .settings import Settings
from .tree import build_folder_tree, visible_entities


@dataclass(slots=True)
class AppContext:
    settings: Settings
    runtime: NotesRuntime


def _status(entity: Entity) -> dict[str, Any]:
    return {
        "item": entity.model_dump(mode="json"),
        "status": "saved offline" if entity.pending else "saved",
    }


def _navigation_state(runtime: NotesRuntime) -> dict[str, Any]:
    return {
        "active_folder_id": runtime.navigation.active_folder_id,
        "history": runtime.navigation.history,
    }


def create_mcp_server(settings: Settings, runtime: NotesRuntime) -> FastMCP:
    @asynccontextmanager
    async def lifespan(_: FastMCP) -> AsyncIterator[AppContext]:
        # The runtime outlives MCP sessions; the ASGI lifespan owns it.
        yield AppContext(settings=settings, runtime=runtime)

    mcp = FastMCP(
        "Notes",
        instructions=(
            "Manage a tree of notes and folders that keeps working offline. "
            "Changes made while offline are pushed by sync_on_reconnect."
        ),
        lifespan=lifespan,
        stateless_http=True,
        json_response=True,
    )

    @mcp.tool()
    async def notes_list(
        ctx: Context,
        parent_id: str | None = None,
        page: int = 1,
    ) -> ListPage:
        """List one page of a folder's children (root when parent_id is omitted)."""
        app: AppContext = ctx.request_context.lifespan_context
        return await app.runtime.engine.list_page(parent_id, page)

    @mcp.tool()
    async def notes_view(
        ctx: Context,
        search: str | None = None,
        sort: SortOrder | None = None,
    ) -> list[Entity]:
        """Items of the active folder, filtered by search, folders first."""
        app: AppContext = ctx.request_context.lifespan_context
        return visible_entities(
            app.runtime.engine.entities,
            app.runtime.navigation.active_folder_id,
            search,
            sort or app.settings.notes_sort_order,
        )

    @mcp.tool()
    async def notes_get(entity_id: str, ctx: Context) -> Entity:
        """Get a single note or folder by id."""
        app: AppContext = ctx.request_context.lifespan_context
        return await app.runtime.engine.get_entity(entity_id)

    @mcp.tool()
    async def notes_create(
        ctx: Context,
        kind: EntityType = EntityType.FILE,
        parent_id: str | None = None,
        title: str | None = None,
    ) -> dict[str, Any]:
        """Create a note or folder (inside the active folder unless parent_id is given)."""
        app: AppContext = ctx.request_context.lifespan_context
        parent = parent_id or app.runtime.navigation.active_folder_id
        entity = await app.runtime.engine.create_entity(kind, parent, title=title)
        return _status(entity)

    @mcp.tool()
    async def notes_edit(
        entity_id: str,
        ctx: Context,
        title: str | None = None,
        content: str | None = None,
        tags: str | None = None,
        parent_id: str | None = None,
        reminder_date: str | None = None,
        move_to_root: bool = False,
        clear_reminder: bool = False,
    ) -> dict[str, Any]:
        """Edit a note or folder. Tags are comma separated."""
        app: AppContext = ctx.request_context.lifespan_context
        fields: dict[str, Any] = {}
        if title is not None:
            fields["title"] = title
        if content is not None:
            fields["content"] = content
        if tags is not None:
            fields["tags"] = tags
        if move_to_root:
            fields["parent_id"] = None
        elif parent_id is not None:
            fields["parent_id"] = parent_id
        if clear_reminder:
            fields["reminder_date"] = None
        elif reminder_date is not None:
            fields["reminder_date"] = reminder_date
        if not fields:
            raise ValueError("Nothing to change")
        entity = await app.runtime.engine.save_entity(entity_id, EntityEdit(**fields))
        return _status(entity)

    @mcp.tool()
    async def notes_remove(entity_id: str, ctx: Context) -> dict[str, Any]:
        """Delete a note, or a folder with everything inside it."""
        app: AppContext = ctx.request_context.lifespan_context
        await app.runtime.engine.delete_entity(entity_id)
        app.runtime.prune_navigation()
        return {"deleted": True, "id": entity_id}

    @mcp.tool()
    async def navigate_open(folder_id: str, ctx: Context) -> dict[str, Any]:
        """Open a folder and list its first page."""
        app: AppContext = ctx.request_context.lifespan_context
        folder = await app.runtime.engine.get_entity(folder_id)
        if not folder.is_folder:
            raise ValueError(f"'{folder.title}' is not a folder")
        app.runtime.navigation.open(folder_id)
        await app.runtime.engine.list_page(folder_id)
        return _navigation_state(app.runtime)

    @mcp.tool()
    async def navigate_back(ctx: Context) -> dict[str, Any]:
        """Go back to the previously opened folder."""
        app: AppContext = ctx.request_context.lifespan_context
        app.runtime.navigation.back()
        return _navigation_state(app.runtime)

    @mcp.tool()
    async def folders_tree(ctx: Context) -> list[FolderNode]:
        """Return the known folder tree."""
        app: AppContext = ctx.request_context.lifespan_context
        return build_folder_tree(app.runtime.engine.entities)

    @mcp.tool()
    async def sync_on_reconnect(ctx: Context) -> SyncReport:
        """Mark the client online and push changes made while offline."""
        app: AppContext = ctx.request_context.lifespan_context
        return await app.runtime.set_connectivity(True) or SyncReport()

    @mcp.tool()
    async def connectivity_set(online: bool, ctx: Context) -> dict[str, Any]:
        """Report a connectivity change; going online triggers a sync."""
        app: AppContext = ctx.request_context.lifespan_context
        report = await app.runtime.set_connectivity(online)
        return {
            "online": app.runtime.engine.online,
            "sync": report.model_dump() if report is not None else None,
        }

    @mcp.tool()
    async def reminders_due(ctx: Context) -> list[Entity]:
        """Notes whose reminder is due and has not been shown yet."""
        app: AppContext = ctx.request_context.lifespan_context
        return app.runtime.engine.due_reminders()

    return mcp
