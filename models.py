"""Shared data models for context-mcp."""

import json
from functools import lru_cache
from typing import Any

from lancedb.pydantic import LanceModel, Vector

ENTRY_TYPES = frozenset({"conversation", "decision", "code", "task", "document"})
TASK_STATUSES = frozenset({"pending", "in_progress", "completed"})
TASK_PRIORITIES = frozenset({"low", "medium", "high"})

SYSTEM_TYPE = "system"
SYSTEM_ENTRY_ID = "__system__"


@lru_cache(maxsize=None)
def entry_model(dim: int) -> type[LanceModel]:
    """LanceDB row schema for context entries with a ``dim``-sized vector.

    IMPORTANT: Any changes to this schema require a fresh index; there is
    no migration path for existing tables.
    """

    class ContextEntry(LanceModel):
        id: str  # globally unique across types
        type: str
        title: str
        content: str
        project_path: str | None = None
        file_path: str | None = None  # code entries only
        tags: str  # JSON array as string
        timestamp: str
        vector: Vector(dim)  # type: ignore[valid-type]
        status: str | None = None  # tasks only
        priority: str | None = None  # tasks only
        source_hash: str | None = None  # conversations: sha256 of transcript file

    return ContextEntry


def encode_tags(tags: list[str] | None) -> str:
    """Tags as a JSON array string, duplicates dropped, order kept."""
    return json.dumps(list(dict.fromkeys(tags or [])))


def decode_tags(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        tags = json.loads(raw)
    except json.JSONDecodeError:
        return []
    return [str(t) for t in tags] if isinstance(tags, list) else []


def public_entry(row: dict[str, Any]) -> dict[str, Any]:
    """Row as returned to callers: no vector, decoded tags, task fields only on tasks."""
    entry = {
        "id": row["id"],
        "type": row["type"],
        "title": row["title"],
        "content": row["content"],
        "project_path": row.get("project_path"),
        "tags": decode_tags(row.get("tags")),
        "timestamp": row["timestamp"],
    }
    if row.get("file_path"):
        entry["file_path"] = row["file_path"]
    if row["type"] == "task":
        entry["status"] = row.get("status")
        entry["priority"] = row.get("priority")
    return entry
