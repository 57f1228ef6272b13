#!/usr/bin/env python3
"""
Context Memory MCP Server - LanceDB Context Store

Provides persistent project context for a coding agent using:
- FastMCP for clean, idiomatic MCP server patterns
- LanceDB for vector search over typed entries (conversation, decision, code, task, document)
- OpenAI-compatible embeddings with a deterministic offline hash fallback
- Google Gemini for transcript summarization
- watchfiles for incremental indexing of new and changed transcripts
"""

from __future__ import annotations

import asyncio
import functools
import json
import sys
from dataclasses import dataclass
from typing import Annotated, Any

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from mcp.types import ToolAnnotations
from pydantic import AliasChoices, Field

from config import Config
from errors import ContextMemoryError
from indexer import ConversationIndexer
from models import ENTRY_TYPES, TASK_PRIORITIES, TASK_STATUSES
from store import ContextStore

# =============================================================================
# Application Context
# =============================================================================


@dataclass
class AppContext:
    """Explicitly constructed store + indexer pair handed to the tool layer."""

    config: Config
    store: ContextStore
    indexer: ConversationIndexer

    @classmethod
    def create(cls, config: Config | None = None) -> AppContext:
        config = config or Config()
        store = ContextStore(config)
        return cls(config=config, store=store, indexer=ConversationIndexer(store))

    async def start(self) -> None:
        """Open the store, then auto-index and watch the configured project."""
        await self.store.initialize()
        print(
            f"[context-mcp] Store ready at {self.store.db_path} "
            f"(embeddings: {self.store.embeddings.strategy}, {self.config.embedding_dim}D)",
            file=sys.stderr,
        )
        project_path = self.config.project_path
        if not project_path:
            return
        print(f"[context-mcp] Auto-indexing project: {project_path}", file=sys.stderr)
        try:
            await self.indexer.start_watching(project_path)
            await self.indexer.index_project(project_path)
        except Exception as e:
            print(f"[context-mcp] Failed to auto-index project: {e}", file=sys.stderr)

    async def close(self) -> None:
        await self.indexer.stop_watching()


# =============================================================================
# Tool Arguments
# =============================================================================
# Tools advertise the camelCase names MCP clients send; snake_case is accepted too.

EntryTypeArg = Annotated[str | None, Field(validation_alias=AliasChoices("type", "entry_type"))]
ProjectPathArg = Annotated[
    str, Field(validation_alias=AliasChoices("projectPath", "project_path"))
]
OptionalProjectPathArg = Annotated[
    str | None, Field(validation_alias=AliasChoices("projectPath", "project_path"))
]
TaskIdArg = Annotated[str, Field(validation_alias=AliasChoices("taskId", "task_id"))]
DocIdArg = Annotated[str, Field(validation_alias=AliasChoices("docId", "doc_id"))]
FilePathArg = Annotated[str, Field(validation_alias=AliasChoices("filePath", "file_path"))]


# =============================================================================
# Validation Helpers
# =============================================================================


def _check_choice(value: str | None, valid: frozenset[str], label: str) -> str | None:
    """Error message if ``value`` is set and not one of ``valid``."""
    if value is None or value in valid:
        return None
    return f"Error: Invalid {label} '{value}'. Valid: {sorted(valid)}"


def _json(payload: Any) -> str:
    return json.dumps(payload, indent=2)


def tool_errors(fn):
    """Turn any failure inside a tool into an ``Error: ...`` payload."""

    @functools.wraps(fn)
    async def wrapper(*args, **kwargs) -> str:
        try:
            return await fn(*args, **kwargs)
        except ContextMemoryError as e:
            return f"Error: {e}"
        except Exception as e:
            print(f"[context-mcp] {fn.__name__} failed: {e!r}", file=sys.stderr)
            return f"Error: {e}"

    return wrapper


def flag_errors(method):
    """Raise ``ToolError`` for ``Error: ...`` results so MCP marks the call ``isError``."""

    @functools.wraps(method)
    async def call(*args, **kwargs) -> str:
        result = await method(*args, **kwargs)
        if result.startswith("Error: "):
            raise ToolError(result)
        return result

    return call


# =============================================================================
# Tools
# =============================================================================


class ContextTools:
    """MCP tool implementations bound to one :class:`AppContext`."""

    def __init__(self, ctx: AppContext) -> None:
        self.ctx = ctx
        self.store = ctx.store
        self.indexer = ctx.indexer
        self.config = ctx.config

    def _check_limit(self, limit: int) -> str | None:
        if limit <= 0:
            return f"Error: limit must be positive, got {limit}"
        if limit > self.config.max_limit:
            return f"Error: limit cannot exceed {self.config.max_limit}, got {limit}"
        return None

    @tool_errors
    async def search_context(
        self,
        query: str,
        limit: int | None = None,
        entry_type: EntryTypeArg = None,
    ) -> str:
        """Search past conversations, decisions, code, tasks and documents by similarity.

        Args:
            query: What you're looking for
            limit: Max results (default 5, max 50)
            type: Optional filter: all, conversation, decision, code, task, document
        """
        if not query.strip():
            return "Error: query is required"
        limit = self.config.default_limit if limit is None else limit
        error = self._check_limit(limit) or _check_choice(
            entry_type, ENTRY_TYPES | {"all"}, "type"
        )
        if error:
            return error
        results = await self.store.search(query, limit, entry_type)
        return _json(results)

    @tool_errors
    async def get_project_summary(self, project_path: ProjectPathArg) -> str:
        """Summary of a project: entry counts, recent conversations and key decisions.

        Args:
            projectPath: Path to the project directory
        """
        return _json(await self.store.get_project_summary(project_path))

    @tool_errors
    async def store_decision(
        self,
        title: str,
        content: str,
        tags: list[str] | None = None,
        project_path: OptionalProjectPathArg = None,
    ) -> str:
        """Store an important decision or piece of knowledge for future reference.

        Args:
            title: Brief title for the decision
            content: The decision and its reasoning
            tags: Optional tags for categorization
            projectPath: Optional project the decision belongs to
        """
        if not title.strip() or not content.strip():
            return "Error: title and content are required"
        decision_id = await self.store.store_decision(title, content, tags or [], project_path)
        return f'Decision "{title}" stored (ID: {decision_id})'

    @tool_errors
    async def get_related_conversations(self, topic: str, limit: int | None = None) -> str:
        """Find past conversations related to a topic or file.

        Args:
            topic: Topic or file path
            limit: Max conversations (default 5, max 50)
        """
        if not topic.strip():
            return "Error: topic is required"
        limit = self.config.default_limit if limit is None else limit
        error = self._check_limit(limit)
        if error:
            return error
        return _json(await self.store.get_related_conversations(topic, limit))

    @tool_errors
    async def index_project(self, project_path: ProjectPathArg, force: bool = False) -> str:
        """Index or re-index a project's coding-agent conversations.

        Args:
            projectPath: Path to the project directory
            force: Re-index transcripts even if already indexed
        """
        report = await self.indexer.index_project(project_path, force)
        if report["project_dir"] is None:
            return f'No conversations found for "{project_path}"'
        return (
            f'Project "{project_path}" indexed: {report["indexed"]} stored, '
            f'{report["unchanged"]} unchanged, {report["skipped"]} skipped, '
            f'{report["failed"]} failed'
        )

    @tool_errors
    async def start_watching(self, project_path: ProjectPathArg) -> str:
        """Watch a project for new or changed conversations. Also performs initial indexing.

        Args:
            projectPath: Path to the project directory to watch
        """
        await self.indexer.start_watching(project_path)
        report = await self.indexer.index_project(project_path)
        return (
            f'Now watching project "{project_path}" for new conversations. '
            f'Initial indexing complete ({report["indexed"]} stored).'
        )

    @tool_errors
    async def get_memory_status(self) -> str:
        """Memory system status: watch state, indexed projects, entry counts, database path."""
        stats = await self.store.get_stats()
        status = {
            "is_watching": self.indexer.is_watching,
            "watching_project": self.indexer.watched_project or "none",
            "embedding_strategy": self.store.embeddings.strategy,
            "summary_strategy": self.store.embeddings.summary_strategy,
            "embedding_dim": self.config.embedding_dim,
            **stats,
        }
        return _json(status)

    @tool_errors
    async def list_tasks(
        self, project_path: OptionalProjectPathArg = None, status: str | None = None
    ) -> str:
        """List tasks, newest first.

        Args:
            projectPath: Optional project filter
            status: Optional filter: pending, in_progress, completed
        """
        error = _check_choice(status, TASK_STATUSES, "status")
        if error:
            return error
        return _json(await self.store.list_entries("task", project_path=project_path, status=status))

    @tool_errors
    async def create_task(
        self,
        title: str,
        content: str,
        priority: str = "medium",
        tags: list[str] | None = None,
        project_path: OptionalProjectPathArg = None,
    ) -> str:
        """Create a pending task.

        Args:
            title: Short task title
            content: Task details
            priority: low, medium or high (default medium)
            tags: Optional tags
            projectPath: Optional project the task belongs to
        """
        if not title.strip():
            return "Error: title is required"
        error = _check_choice(priority, TASK_PRIORITIES, "priority")
        if error:
            return error
        task_id = await self.store.create_task(title, content, priority, tags or [], project_path)
        return f"Task created (ID: {task_id})"

    @tool_errors
    async def update_task_status(self, task_id: TaskIdArg, status: str) -> str:
        """Change a task's status.

        Args:
            taskId: The task ID
            status: pending, in_progress or completed
        """
        error = _check_choice(status, TASK_STATUSES, "status")
        if error:
            return error
        await self.store.update_task_status(task_id, status)
        return f"Task {task_id} status updated to {status}"

    @tool_errors
    async def delete_task(self, task_id: TaskIdArg) -> str:
        """Delete a task.

        Args:
            taskId: The task ID
        """
        await self.store.delete(task_id, "task")
        return f"Deleted task {task_id}"

    @tool_errors
    async def list_documents(
        self, project_path: OptionalProjectPathArg = None, tags: list[str] | None = None
    ) -> str:
        """List documents, newest first.

        Args:
            projectPath: Optional project filter
            tags: Optional tags; documents must carry all of them
        """
        return _json(
            await self.store.list_entries("document", project_path=project_path, tags=tags)
        )

    @tool_errors
    async def store_document(
        self,
        title: str,
        content: str,
        tags: list[str] | None = None,
        project_path: OptionalProjectPathArg = None,
    ) -> str:
        """Store a document (notes, specs, references).

        Args:
            title: Document title
            content: Full document text
            tags: Optional tags
            projectPath: Optional project the document belongs to
        """
        if not title.strip():
            return "Error: title is required"
        doc_id = await self.store.store_document(title, content, tags or [], project_path)
        return f"Document created (ID: {doc_id})"

    @tool_errors
    async def get_document(self, doc_id: DocIdArg) -> str:
        """Get a document's full content.

        Args:
            docId: The document ID
        """
        document = await self.store.get_entry(doc_id, "document")
        if document is None:
            return f"Document {doc_id} not found"
        return _json(document)

    @tool_errors
    async def delete_document(self, doc_id: DocIdArg) -> str:
        """Delete a document.

        Args:
            docId: The document ID
        """
        await self.store.delete(doc_id, "document")
        return f"Deleted document {doc_id}"

    @tool_errors
    async def store_code_context(
        self, file_path: FilePathArg, content: str, project_path: OptionalProjectPathArg = None
    ) -> str:
        """Store a code snippet or file excerpt worth remembering.

        Args:
            filePath: Path of the source file
            content: The code or notes about it
            projectPath: Optional project the file belongs to
        """
        if not file_path.strip() or not content.strip():
            return "Error: file_path and content are required"
        code_id = await self.store.store_code_context(file_path, content, project_path)
        return f"Code context stored (ID: {code_id})"


# =============================================================================
# FastMCP Server
# =============================================================================

READ_ONLY = ToolAnnotations(readOnlyHint=True, destructiveHint=False, idempotentHint=True)
APPEND = ToolAnnotations(readOnlyHint=False, destructiveHint=False, idempotentHint=False)
IDEMPOTENT_WRITE = ToolAnnotations(readOnlyHint=False, destructiveHint=False, idempotentHint=True)
DESTRUCTIVE = ToolAnnotations(readOnlyHint=False, destructiveHint=True, idempotentHint=True)

TOOL_ANNOTATIONS: dict[str, ToolAnnotations] = {
    "search_context": READ_ONLY,
    "get_project_summary": READ_ONLY,
    "store_decision": APPEND,
    "get_related_conversations": READ_ONLY,
    "index_project": IDEMPOTENT_WRITE,
    "start_watching": IDEMPOTENT_WRITE,
    "get_memory_status": READ_ONLY,
    "list_tasks": READ_ONLY,
    "create_task": APPEND,
    "update_task_status": IDEMPOTENT_WRITE,
    "delete_task": DESTRUCTIVE,
    "list_documents": READ_ONLY,
    "store_document": APPEND,
    "get_document": READ_ONLY,
    "delete_document": DESTRUCTIVE,
    "store_code_context": APPEND,
}


def create_server(tools: ContextTools) -> FastMCP:
    """Register every context tool on a new FastMCP server."""
    mcp = FastMCP(
        "context-memory",
        instructions=(
            "Persistent project memory: search past conversations, store decisions, "
            "and manage tasks and documents"
        ),
    )
    for name, annotations in TOOL_ANNOTATIONS.items():
        mcp.add_tool(flag_errors(getattr(tools, name)), name=name, annotations=annotations)
    return mcp


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server(config: Config | None = None) -> None:
    """Run the MCP server with store initialization and transcript watching."""
    ctx = AppContext.create(config)
    await ctx.start()
    try:
        await create_server(ContextTools(ctx)).run_stdio_async()
    finally:
        await ctx.close()
        print("[context-mcp] Shutting down...", file=sys.stderr)


def main():
    """Entry point."""
    asyncio.run(run_server())


if __name__ == "__main__":
    main()
