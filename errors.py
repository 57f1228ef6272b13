"""Error taxonomy for context-mcp.

Provider failures are recovered inside the embedding layer, transcript
failures are isolated per file inside the indexer, and everything that
reaches the tool boundary is turned into an ``Error: ...`` payload.
"""


class ContextMemoryError(Exception):
    """Base class for all context-mcp errors."""


class NotInitializedError(ContextMemoryError):
    """Store operation attempted before ``initialize()``."""

    def __init__(self) -> None:
        super().__init__("Context store not initialized")


class NotFoundError(ContextMemoryError):
    """Update or delete targeted an id that does not exist."""

    def __init__(self, entry_id: str, entry_type: str | None = None) -> None:
        self.entry_id = entry_id
        self.entry_type = entry_type
        label = entry_type.capitalize() if entry_type else "Entry"
        super().__init__(f"{label} {entry_id} not found")


class UpstreamUnavailableError(ContextMemoryError):
    """Remote embedding or summarization call failed."""


class MalformedTranscriptError(ContextMemoryError):
    """Transcript file could not be parsed."""


class WatchFailureError(ContextMemoryError):
    """Filesystem watch could not be established."""
