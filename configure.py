#!/usr/bin/env python3
"""
Register the context-mcp server in the agent's settings.json.

Adds, removes or checks the ``mcpServers`` entry the agent reads at startup.
Other keys in the settings file are left untouched.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any

from config import Config

SERVER_NAME = "context-mcp"


def settings_file(config: Config | None = None) -> Path:
    return (config or Config()).claude_dir / "settings.json"


def _read_settings(path: Path) -> dict[str, Any]:
    """Existing settings, or an empty dict when the file is absent.

    A file that exists but is not a JSON object raises ``ValueError`` so it is
    never overwritten.
    """
    if not path.exists():
        return {}
    try:
        settings = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"{path} is not valid JSON: {e}") from e
    if not isinstance(settings, dict):
        raise ValueError(f"{path} does not contain a JSON object")
    return settings


def _write_settings(path: Path, settings: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(settings, indent=2) + "\n", encoding="utf-8")


def server_entry(
    project_path: str | None = None,
    api_key: str | None = None,
    command: str = "context-mcp",
) -> dict[str, Any]:
    """The ``mcpServers`` entry launching this server over stdio."""
    entry: dict[str, Any] = {"command": command, "args": []}
    env = {}
    if api_key:
        env["OPENAI_API_KEY"] = api_key
    if project_path:
        env["CONTEXT_MCP_PROJECT_PATH"] = str(Path(project_path).expanduser().resolve())
    if env:
        entry["env"] = env
    return entry


def configure_server(path: Path, entry: dict[str, Any]) -> None:
    settings = _read_settings(path)
    servers = settings.setdefault("mcpServers", {})
    if not isinstance(servers, dict):
        raise ValueError(f"{path}: mcpServers is not a JSON object")
    servers[SERVER_NAME] = entry
    _write_settings(path, settings)
    print(f"[context-mcp] Configured MCP server {SERVER_NAME!r} in {path}", file=sys.stderr)


def remove_server(path: Path) -> bool:
    """Drop the entry. Returns False when there was nothing to remove."""
    settings = _read_settings(path)
    servers = settings.get("mcpServers")
    if not isinstance(servers, dict) or SERVER_NAME not in servers:
        print("[context-mcp] No existing configuration to remove", file=sys.stderr)
        return False
    del servers[SERVER_NAME]
    _write_settings(path, settings)
    print(f"[context-mcp] Removed MCP server {SERVER_NAME!r} from {path}", file=sys.stderr)
    return True


def is_configured(path: Path) -> bool:
    try:
        settings = _read_settings(path)
    except ValueError:
        return False
    servers = settings.get("mcpServers")
    return isinstance(servers, dict) and SERVER_NAME in servers


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Register context-mcp in the agent's MCP settings",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  context-mcp-configure add --project ~/code/acme   # Index and watch acme on startup
  context-mcp-configure check
  context-mcp-configure remove
        """,
    )
    parser.add_argument("action", choices=["add", "remove", "check"])
    parser.add_argument("--project", help="Project to index and watch when the server starts")
    parser.add_argument(
        "--settings",
        type=Path,
        help="Settings file to edit (default: <claude dir>/settings.json)",
    )
    args = parser.parse_args(argv)
    path = args.settings or settings_file()

    try:
        if args.action == "add":
            entry = server_entry(args.project, os.environ.get("OPENAI_API_KEY"))
            configure_server(path, entry)
        elif args.action == "remove":
            remove_server(path)
        else:
            configured = is_configured(path)
            print("MCP server is configured" if configured else "MCP server is not configured")
            return 0 if configured else 1
    except (OSError, ValueError) as e:
        print(f"[context-mcp] {e}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
