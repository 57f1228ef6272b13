"""
Conversation indexer - ingests the coding agent's transcripts into the store.

Transcripts live under ``<claude_dir>/projects/<project-dir>/`` either as
``conversations/*.json`` (one JSON object with a ``messages`` list) or as
``*.jsonl`` session logs (one JSON event per line). Each transcript becomes a
single ``conversation`` entry keyed by its own id, so re-indexing replaces
rather than duplicates it.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from watchfiles import Change, awatch

from errors import MalformedTranscriptError, NotInitializedError, WatchFailureError
from store import ContextStore
from utils import dash_project_path, hash_project_path

TITLE_CHARS = 100
TRANSCRIPT_CHARS = 5000
WATCH_STARTUP_SECONDS = 0.5
WATCHED_CHANGES = frozenset({Change.added, Change.modified})


# =============================================================================
# Transcript Parsing
# =============================================================================


def _message_text(content: Any) -> str:
    """Flatten message content: a plain string or a list of text parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(str(part.get("text", "")))
        return " ".join(p for p in parts if p)
    return ""


def _parse_json(text: str, path: Path) -> tuple[str | None, list[tuple[str, str]]]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedTranscriptError(f"{path.name}: invalid JSON ({e})") from e
    if not isinstance(data, dict) or not isinstance(data.get("messages"), list):
        raise MalformedTranscriptError(f"{path.name}: missing 'messages' list")

    messages = []
    for message in data["messages"]:
        if not isinstance(message, dict) or not message.get("role"):
            continue
        body = _message_text(message.get("content"))
        if body:
            messages.append((str(message["role"]), body))
    conversation_id = data.get("id")
    return (str(conversation_id) if conversation_id else None), messages


def _parse_jsonl(text: str, path: Path) -> tuple[str | None, list[tuple[str, str]]]:
    session_id = None
    messages = []
    valid_lines = 0
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            event = json.loads(line)
        except json.JSONDecodeError:
            continue
        valid_lines += 1
        if not isinstance(event, dict):
            continue
        session_id = session_id or event.get("sessionId")
        message = event.get("message")
        if not isinstance(message, dict):
            continue
        role = message.get("role") or event.get("type")
        body = _message_text(message.get("content"))
        if role and body:
            messages.append((str(role), body))

    if valid_lines == 0:
        raise MalformedTranscriptError(f"{path.name}: no JSON lines")
    return (str(session_id) if session_id else None), messages


def parse_transcript(path: Path, raw: bytes | None = None) -> tuple[str | None, list[tuple[str, str]]]:
    """Parse a transcript into ``(conversation_id, [(role, text), ...])``.

    Raises:
        MalformedTranscriptError: the file is not a readable transcript.
    """
    if raw is None:
        raw = path.read_bytes()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedTranscriptError(f"{path.name}: not UTF-8") from e
    if path.suffix == ".jsonl":
        return _parse_jsonl(text, path)
    return _parse_json(text, path)


def format_transcript(messages: list[tuple[str, str]]) -> str:
    return "\n\n".join(f"[{role}]: {text}" for role, text in messages)


# =============================================================================
# Indexer
# =============================================================================


class ConversationIndexer:
    """Discovers, parses, summarizes and stores a project's transcripts."""

    def __init__(self, store: ContextStore) -> None:
        self.store = store
        self.config = store.config
        self.projects_dir = self.config.claude_dir / "projects"
        # Files indexed during this process; a restart relies on stored hashes
        self._indexed_files: set[Path] = set()
        self._file_locks: dict[Path, asyncio.Lock] = {}
        self._lock_users: dict[Path, int] = {}
        self._watch_task: asyncio.Task | None = None
        self._stop_event: asyncio.Event | None = None
        self._pending: set[asyncio.Task] = set()
        self._watched_project: str | None = None
        self._watch_error: Exception | None = None

    @property
    def is_watching(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    @property
    def watched_project(self) -> str | None:
        return self._watched_project if self.is_watching else None

    # -------------------------------------------------------------------------
    # Project resolution
    # -------------------------------------------------------------------------

    def _candidate_dirs(self, project_path: str) -> list[Path]:
        return [
            self.projects_dir / hash_project_path(project_path),
            self.projects_dir / dash_project_path(project_path),
        ]

    def resolve_project_dir(self, project_path: str) -> Path | None:
        """Find the transcript directory for a project path.

        Project metadata (``settings.json``) wins: an exact ``projectPath``
        match, or a directory name contained in the path. Otherwise the
        hashed and dash-encoded directory names are tried in turn.
        """
        if not self.projects_dir.is_dir():
            return None

        for project_dir in sorted(p for p in self.projects_dir.iterdir() if p.is_dir()):
            try:
                settings = json.loads((project_dir / "settings.json").read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue
            if not isinstance(settings, dict):
                continue
            if settings.get("projectPath") == project_path or project_dir.name in project_path:
                return project_dir

        for candidate in self._candidate_dirs(project_path):
            if candidate.is_dir():
                return candidate
        return None

    @staticmethod
    def transcript_files(project_dir: Path) -> list[Path]:
        files = sorted((project_dir / "conversations").glob("*.json"))
        files.extend(sorted(project_dir.glob("*.jsonl")))
        return files

    @staticmethod
    def _is_transcript(path: Path, project_dir: Path) -> bool:
        if path.suffix == ".json":
            return path.parent.name == "conversations" and path.parent.parent == project_dir
        return path.suffix == ".jsonl" and path.parent == project_dir

    # -------------------------------------------------------------------------
    # Indexing
    # -------------------------------------------------------------------------

    async def index_project(self, project_path: str, force: bool = False) -> dict[str, Any]:
        """Index every transcript of a project.

        Files already indexed by this process are skipped unless ``force``.
        A file that fails to parse or store is logged and counted; the pass
        continues with the next file.
        """
        project_dir = self.resolve_project_dir(project_path)
        report = {
            "project_path": project_path,
            "project_dir": str(project_dir) if project_dir else None,
            "files": 0,
            "indexed": 0,
            "unchanged": 0,
            "skipped": 0,
            "failed": 0,
        }
        if project_dir is None:
            print(f"[context-mcp] No transcript directory found for {project_path}", file=sys.stderr)
            return report

        files = self.transcript_files(project_dir)
        report["files"] = len(files)
        for path in files:
            path = path.resolve()
            if not force and path in self._indexed_files:
                report["skipped"] += 1
                continue
            try:
                stored = await self.index_file(path, project_path, force=force)
            except NotInitializedError:
                raise
            except Exception as e:
                print(f"[context-mcp] Failed to index conversation {path.name}: {e}", file=sys.stderr)
                report["failed"] += 1
                continue
            self._indexed_files.add(path)
            report["indexed" if stored else "unchanged"] += 1

        print(
            f"[context-mcp] Indexed {report['indexed']} of {len(files)} conversations for {project_path}",
            file=sys.stderr,
        )
        return report

    @asynccontextmanager
    async def _file_lock(self, path: Path):
        """Serialize work on one file; the lock is dropped once nobody holds or awaits it."""
        lock = self._file_locks.setdefault(path, asyncio.Lock())
        self._lock_users[path] = self._lock_users.get(path, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[path] -= 1
            if not self._lock_users[path]:
                del self._lock_users[path]
                del self._file_locks[path]

    async def index_file(self, path: Path, project_path: str, force: bool = False) -> str | None:
        """Index one transcript; returns the conversation id, or None if unchanged.

        Runs are serialized per file. A transcript whose content hash matches
        the stored conversation is not re-summarized unless ``force``.
        """
        path = path.resolve()
        async with self._file_lock(path):
            raw = path.read_bytes()
            source_hash = hashlib.sha256(raw).hexdigest()
            conversation_id, messages = parse_transcript(path, raw)
            conversation_id = conversation_id or path.stem

            if not force and await self.store.get_source_hash(conversation_id) == source_hash:
                return None

            transcript = format_transcript(messages)
            summary = await self.store.embeddings.summarize(transcript)
            title = next(
                (text[:TITLE_CHARS] for role, text in messages if role == "user"),
                "Untitled conversation",
            )
            return await self.store.store_conversation(
                conversation_id,
                title,
                f"{summary}\n\n---\n\n{transcript[:TRANSCRIPT_CHARS]}",
                project_path,
                source_hash=source_hash,
            )

    # -------------------------------------------------------------------------
    # Watching
    # -------------------------------------------------------------------------

    async def start_watching(self, project_path: str) -> None:
        """Watch the transcript root and re-index changed transcripts.

        Any active watch is stopped first.

        Raises:
            WatchFailureError: the transcript root is missing or cannot be watched.
        """
        await self.stop_watching()

        if not self.projects_dir.is_dir():
            raise WatchFailureError(f"Transcript root {self.projects_dir} does not exist")
        root = self.projects_dir.resolve()

        resolved = self.resolve_project_dir(project_path)
        project_dirs = [resolved] if resolved else self._candidate_dirs(project_path)
        project_dirs = [d.resolve() for d in project_dirs]

        def within_depth(_change: Change, raw_path: str) -> bool:
            try:
                relative = Path(raw_path).relative_to(root)
            except ValueError:
                return False
            return len(relative.parts) <= self.config.watch_depth

        stop_event = asyncio.Event()
        watcher = awatch(
            root,
            watch_filter=within_depth,
            stop_event=stop_event,
            debounce=self.config.watch_debounce_ms,
            force_polling=self.config.watch_force_polling,
            recursive=True,
        )

        self._stop_event = stop_event
        self._watched_project = project_path
        self._watch_error = None
        task = asyncio.create_task(self._watch_loop(watcher, project_path, project_dirs))
        self._watch_task = task

        # awatch opens the OS watcher on first iteration; failures surface within the grace period
        await asyncio.wait({task}, timeout=WATCH_STARTUP_SECONDS)
        if task.done():
            error = self._watch_error
            await self.stop_watching()
            raise WatchFailureError(f"Could not watch {root}: {error or 'watcher exited'}")
        print(f"[context-mcp] Started watching {root} for {project_path}", file=sys.stderr)

    async def _watch_loop(self, watcher, project_path: str, project_dirs: list[Path]) -> None:
        try:
            async for changes in watcher:
                for change, raw_path in changes:
                    if change not in WATCHED_CHANGES:
                        continue
                    path = Path(raw_path)
                    if any(self._is_transcript(path, d) for d in project_dirs):
                        self._schedule_reindex(path, project_path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._watch_error = e
            print(f"[context-mcp] Watch error: {e}", file=sys.stderr)

    def _schedule_reindex(self, path: Path, project_path: str) -> None:
        task = asyncio.create_task(self._reindex_file(path, project_path))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _reindex_file(self, path: Path, project_path: str) -> None:
        try:
            stored = await self.index_file(path, project_path)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            print(f"[context-mcp] Failed to re-index {path.name}: {e}", file=sys.stderr)
            return
        self._indexed_files.add(path)
        if stored:
            print(f"[context-mcp] Re-indexed conversation {path.name}", file=sys.stderr)

    async def stop_watching(self) -> None:
        """Stop the active watch; no re-index callback runs after this returns."""
        if self._watch_task is None:
            return
        task, self._watch_task = self._watch_task, None
        if self._stop_event is not None:
            self._stop_event.set()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        pending = list(self._pending)
        for reindex in pending:
            reindex.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()
        self._stop_event = None
        self._watched_project = None
        print("[context-mcp] Stopped watching", file=sys.stderr)
