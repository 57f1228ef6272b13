"""
Context store - typed, vector-searchable records in LanceDB.

One table holds every entry type. A seed ``system`` row fixes the schema and
vector dimension when the table is created and is never returned to callers.
Updates use LanceDB's keyed ``merge_insert`` so a record is never absent
between removal and reinsertion.
"""

from __future__ import annotations

import sys
import uuid
from pathlib import Path
from typing import Any

import lancedb
import pyarrow as pa

from config import Config
from embeddings import EmbeddingProvider
from errors import NotFoundError, NotInitializedError
from models import (
    ENTRY_TYPES,
    SYSTEM_ENTRY_ID,
    SYSTEM_TYPE,
    TASK_PRIORITIES,
    TASK_STATUSES,
    decode_tags,
    encode_tags,
    entry_model,
    public_entry,
)
from utils import escape_filter_value, now_iso

RECENT_LIMIT = 5
DECISION_EXCERPT_CHARS = 200


def _table_names(db: lancedb.DBConnection) -> list[str]:
    try:
        response = db.list_tables()
    except AttributeError:
        return list(db.table_names())
    return list(getattr(response, "tables", response))


def _new_id(prefix: str) -> str:
    # UUID keeps ids unique even for entries created in the same instant
    return f"{prefix}-{uuid.uuid4().hex}"


def _count_by_type(rows: list[dict[str, Any]]) -> dict[str, int]:
    counts = dict.fromkeys(sorted(ENTRY_TYPES), 0)
    for row in rows:
        if row["type"] in counts:
            counts[row["type"]] += 1
    return counts


def _newest_first(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(rows, key=lambda r: r.get("timestamp") or "", reverse=True)


class ContextStore:
    """Durable, typed, vector-searchable record store."""

    def __init__(self, config: Config, embeddings: EmbeddingProvider | None = None) -> None:
        self.config = config
        self.embeddings = embeddings or EmbeddingProvider(config)
        self.model = entry_model(config.embedding_dim)
        self._db: lancedb.DBConnection | None = None
        self._table: lancedb.table.Table | None = None

    @property
    def db_path(self) -> Path:
        return self.config.db_path

    @property
    def is_initialized(self) -> bool:
        return self._table is not None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> None:
        """Open (or create) the index at the configured path."""
        if self._table is not None:
            return
        self.db_path.mkdir(parents=True, exist_ok=True)
        db = lancedb.connect(str(self.db_path))
        name = self.config.table_name
        try:
            table = db.open_table(name)
        except Exception:
            if name in _table_names(db):
                raise
            table = db.create_table(name, schema=self.model)
            print(f"[context-mcp] Created context table at {self.db_path}", file=sys.stderr)

        vector_dim = table.schema.field("vector").type.list_size
        if vector_dim != self.config.embedding_dim:
            raise ValueError(
                f"Index at {self.db_path} has vector dimension {vector_dim}, "
                f"configured dimension is {self.config.embedding_dim}. "
                "Changing the dimension requires a fresh index."
            )

        if table.count_rows(f"id = '{SYSTEM_ENTRY_ID}'") == 0:
            sentinel = self.model(
                id=SYSTEM_ENTRY_ID,
                type=SYSTEM_TYPE,
                title="Initial entry",
                content="Database initialized",
                tags='["system"]',
                timestamp=now_iso(),
                vector=[0.0] * self.config.embedding_dim,
            )
            table.add([sentinel.model_dump()])

        self._db = db
        self._table = table

    def _require_table(self) -> lancedb.table.Table:
        if self._table is None:
            raise NotInitializedError()
        return self._table

    # =========================================================================
    # Row access
    # =========================================================================

    def _find(self, entry_id: str, entry_type: str | None = None) -> dict[str, Any] | None:
        table = self._require_table()
        if entry_id == SYSTEM_ENTRY_ID:
            return None
        where = f"id = '{escape_filter_value(entry_id)}'"
        if entry_type:
            where += f" AND `type` = '{escape_filter_value(entry_type)}'"
        results = table.search().where(where).limit(1).to_list()
        if not results:
            return None
        return {k: v for k, v in results[0].items() if not k.startswith("_")}

    def _scan(self) -> list[dict[str, Any]]:
        """All caller-visible rows, without vectors."""
        table = self._require_table()
        columns = [name for name in table.schema.names if name != "vector"]
        rows = table.to_arrow().select(columns).to_pylist()
        return [r for r in rows if r["type"] != SYSTEM_TYPE]

    def _upsert(self, row: dict[str, Any]) -> None:
        table = self._require_table()
        data = pa.Table.from_pylist([row], schema=table.schema)
        (
            table.merge_insert("id")
            .when_matched_update_all()
            .when_not_matched_insert_all()
            .execute(data)
        )

    # =========================================================================
    # Search
    # =========================================================================

    async def search(
        self, query: str, limit: int = 5, type_filter: str | None = None
    ) -> list[dict[str, Any]]:
        """Nearest entries to ``query``, optionally restricted to one type.

        The index has no per-type partitioning, so ``2 * limit`` neighbours
        are fetched and the type filter is applied afterwards. A filtered
        search can therefore return fewer than ``limit`` results.
        """
        table = self._require_table()
        vector = await self.embeddings.embed(query)
        rows = table.search(vector).distance_type("l2").limit(limit * 2).to_list()

        if type_filter == "all":
            type_filter = None
        results = []
        for row in rows:
            if row["type"] == SYSTEM_TYPE:
                continue
            if type_filter and row["type"] != type_filter:
                continue
            results.append(
                {
                    "id": row["id"],
                    "type": row["type"],
                    "title": row["title"],
                    "preview": self._preview(row["content"]),
                    "score": 1 - row["_distance"],
                    "timestamp": row["timestamp"],
                }
            )
        results.sort(key=lambda r: r["score"], reverse=True)
        return results[:limit]

    def _preview(self, content: str) -> str:
        limit = self.config.preview_chars
        if len(content) <= limit:
            return content
        return content[: limit - 3] + "..."

    async def get_related_conversations(self, topic: str, limit: int = 5) -> list[dict[str, Any]]:
        return await self.search(topic, limit, "conversation")

    # =========================================================================
    # Writes
    # =========================================================================

    async def add(self, entry: dict[str, Any], *, replace: bool = False) -> str:
        """Embed ``title + "\\n" + content`` and store the entry with its vector.

        With ``replace=True`` an existing row with the same id and type is
        overwritten in place; otherwise a duplicate id is rejected. An id is
        never reused across types.
        """
        table = self._require_table()
        entry_type = entry.get("type")
        if entry_type not in ENTRY_TYPES:
            raise ValueError(f"Invalid entry type '{entry_type}'. Valid: {sorted(ENTRY_TYPES)}")

        status = entry.get("status")
        priority = entry.get("priority")
        if entry_type == "task":
            if status not in TASK_STATUSES:
                raise ValueError(f"Invalid status '{status}'. Valid: {sorted(TASK_STATUSES)}")
            if priority not in TASK_PRIORITIES:
                raise ValueError(f"Invalid priority '{priority}'. Valid: {sorted(TASK_PRIORITIES)}")
        elif status is not None or priority is not None:
            raise ValueError("status and priority are only valid on tasks")
        if entry.get("file_path") and entry_type != "code":
            raise ValueError("file_path is only valid on code entries")

        entry_id = entry["id"]
        if entry_id == SYSTEM_ENTRY_ID:
            raise ValueError(f"Entry id {SYSTEM_ENTRY_ID} is reserved")
        existing = self._find(entry_id)
        if existing is not None:
            if not replace:
                raise ValueError(f"Entry {entry_id} already exists")
            if existing["type"] != entry_type:
                raise ValueError(
                    f"Entry {entry_id} already exists as a {existing['type']}, "
                    f"cannot replace it with a {entry_type}"
                )

        title = entry.get("title", "")
        content = entry.get("content", "")
        vector = await self.embeddings.embed(f"{title}\n{content}")
        record = self.model(
            id=entry_id,
            type=entry_type,
            title=title,
            content=content,
            project_path=entry.get("project_path") or None,
            file_path=entry.get("file_path") or None,
            tags=encode_tags(entry.get("tags")),
            timestamp=entry.get("timestamp") or now_iso(),
            vector=vector,
            status=status,
            priority=priority,
            source_hash=entry.get("source_hash"),
        )
        if replace:
            self._upsert(record.model_dump())
        else:
            table.add([record.model_dump()])
        return entry_id

    async def store_decision(
        self,
        title: str,
        content: str,
        tags: list[str] | None = None,
        project_path: str | None = None,
    ) -> str:
        return await self.add(
            {
                "id": _new_id("decision"),
                "type": "decision",
                "title": title,
                "content": content,
                "tags": tags,
                "project_path": project_path,
            }
        )

    async def store_conversation(
        self,
        conversation_id: str,
        title: str,
        content: str,
        project_path: str | None,
        source_hash: str | None = None,
    ) -> str:
        """Store a conversation, replacing any earlier version with the same id."""
        return await self.add(
            {
                "id": conversation_id,
                "type": "conversation",
                "title": title,
                "content": content,
                "project_path": project_path,
                "source_hash": source_hash,
            },
            replace=True,
        )

    async def store_code_context(
        self, file_path: str, content: str, project_path: str | None = None
    ) -> str:
        return await self.add(
            {
                "id": _new_id("code"),
                "type": "code",
                "title": Path(file_path).name,
                "content": content,
                "project_path": project_path,
                "file_path": file_path,
            }
        )

    async def create_task(
        self,
        title: str,
        content: str,
        priority: str = "medium",
        tags: list[str] | None = None,
        project_path: str | None = None,
    ) -> str:
        return await self.add(
            {
                "id": _new_id("task"),
                "type": "task",
                "title": title,
                "content": content,
                "tags": tags,
                "project_path": project_path,
                "status": "pending",
                "priority": priority,
            }
        )

    async def store_document(
        self,
        title: str,
        content: str,
        tags: list[str] | None = None,
        project_path: str | None = None,
    ) -> str:
        return await self.add(
            {
                "id": _new_id("doc"),
                "type": "document",
                "title": title,
                "content": content,
                "tags": tags,
                "project_path": project_path,
            }
        )

    async def update_task_status(self, task_id: str, status: str) -> dict[str, Any]:
        """Set a task's status and refresh its timestamp.

        Raises:
            NotFoundError: no task with ``task_id`` exists.
        """
        if status not in TASK_STATUSES:
            raise ValueError(f"Invalid status '{status}'. Valid: {sorted(TASK_STATUSES)}")
        row = self._find(task_id, "task")
        if row is None:
            raise NotFoundError(task_id, "task")
        row["status"] = status
        row["timestamp"] = now_iso()
        self._upsert(row)
        return public_entry(row)

    async def delete(self, entry_id: str, entry_type: str | None = None) -> None:
        """Delete an entry by id.

        Raises:
            NotFoundError: nothing with ``entry_id`` (of ``entry_type``, if
                given) exists.
        """
        table = self._require_table()
        if self._find(entry_id, entry_type) is None:
            raise NotFoundError(entry_id, entry_type)
        table.delete(f"id = '{escape_filter_value(entry_id)}'")

    # =========================================================================
    # Reads
    # =========================================================================

    async def get_entry(self, entry_id: str, entry_type: str | None = None) -> dict[str, Any] | None:
        row = self._find(entry_id, entry_type)
        return public_entry(row) if row else None

    async def get_source_hash(self, conversation_id: str) -> str | None:
        """Transcript hash recorded on a stored conversation, if any."""
        row = self._find(conversation_id, "conversation")
        return row.get("source_hash") if row else None

    async def list_entries(
        self,
        entry_type: str,
        project_path: str | None = None,
        status: str | None = None,
        tags: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        """Full scan filtered in memory, newest first.

        A tag filter keeps entries carrying every requested tag.
        """
        wanted_tags = set(tags or [])
        matches = []
        for row in self._scan():
            if row["type"] != entry_type:
                continue
            if project_path is not None and row.get("project_path") != project_path:
                continue
            if status is not None and row.get("status") != status:
                continue
            if wanted_tags and not wanted_tags.issubset(decode_tags(row.get("tags"))):
                continue
            matches.append(row)
        return [public_entry(r) for r in _newest_first(matches)]

    async def has_project(self, project_path: str) -> bool:
        return any(row.get("project_path") == project_path for row in self._scan())

    async def get_project_summary(self, project_path: str) -> dict[str, Any]:
        rows = [r for r in self._scan() if r.get("project_path") == project_path]
        conversations = _newest_first([r for r in rows if r["type"] == "conversation"])
        decisions = _newest_first([r for r in rows if r["type"] == "decision"])
        return {
            "project_path": project_path,
            "stats": _count_by_type(rows),
            "recent_conversations": [
                {"id": c["id"], "title": c["title"], "timestamp": c["timestamp"]}
                for c in conversations[:RECENT_LIMIT]
            ],
            "recent_decisions": [
                {
                    "id": d["id"],
                    "title": d["title"],
                    "content": d["content"][:DECISION_EXCERPT_CHARS],
                }
                for d in decisions[:RECENT_LIMIT]
            ],
        }

    async def get_stats(self) -> dict[str, Any]:
        rows = self._scan()
        projects = {r["project_path"] for r in rows if r.get("project_path")}
        return {
            "total_entries": len(rows),
            "by_type": _count_by_type(rows),
            "indexed_projects": sorted(projects),
            "database_path": str(self.db_path),
        }
