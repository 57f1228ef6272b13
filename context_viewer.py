#!/usr/bin/env python3
"""Web viewer for stored context - browse entries by type in the browser."""

from __future__ import annotations

import asyncio
import sys

from flask import Flask, abort, render_template_string, request

from config import Config
from models import ENTRY_TYPES
from store import ContextStore

ITEMS_PER_PAGE = 10
TYPE_TABS = ["all", *sorted(ENTRY_TYPES)]


async def get_entries(store: ContextStore, entry_type: str) -> list[dict]:
    """Fetch entries of one type (or all types), newest first."""
    types = sorted(ENTRY_TYPES) if entry_type == "all" else [entry_type]
    entries = []
    for t in types:
        entries.extend(await store.list_entries(t))
    return sorted(entries, key=lambda e: e.get("timestamp", ""), reverse=True)


def get_page_links(current: int, total: int) -> list:
    """Generate smart pagination links with ellipsis for gaps."""
    if total <= 7:
        return list(range(1, total + 1))

    links = []
    for p in range(1, total + 1):
        show_page = (
            p <= 3  # First 3 pages
            or p >= total - 2  # Last 3 pages
            or abs(p - current) <= 1  # Pages around current
        )
        if show_page:
            links.append(p)
        elif links[-1] != "...":
            links.append("...")
    return links


HTML = """
<!DOCTYPE html>
<html>
<head>
    <title>Context Viewer</title>
    <style>
        body { font-family: system-ui; max-width: 900px; margin: 0 auto; padding: 20px; background: #1a1a2e; color: #eee; }
        h1 { color: #00d9ff; }
        .header { display: flex; justify-content: space-between; align-items: center; margin-bottom: 20px; flex-wrap: wrap; gap: 10px; }
        .tabs, .pagination { display: flex; gap: 6px; align-items: center; flex-wrap: wrap; }
        .tabs a, .pagination a, .pagination span { padding: 6px 12px; background: #0f3460; color: #00d9ff; text-decoration: none; border-radius: 5px; display: inline-block; }
        .tabs a.current, .pagination span.current { background: #00d9ff; color: #1a1a2e; font-weight: bold; }
        .pagination span.ellipsis { color: #888; background: transparent; }
        .pagination a.disabled { color: #666; pointer-events: none; }
        .entry { background: #16213e; padding: 15px; margin: 10px 0; border-radius: 8px; border-left: 4px solid #00d9ff; }
        .badge { display: inline-block; padding: 2px 8px; border-radius: 4px; font-size: 12px; font-weight: bold; margin-right: 4px; }
        .conversation { background: #4a90d9; }
        .decision { background: #9b59b6; }
        .code { background: #e74c3c; }
        .task { background: #f39c12; }
        .document { background: #2ecc71; }
        .status { background: #0f3460; }
        .title { font-weight: bold; margin: 8px 0 4px; }
        .content { white-space: pre-wrap; }
        .tag { background: #0f3460; padding: 2px 6px; border-radius: 3px; font-size: 11px; margin-right: 5px; }
        .meta { color: #888; font-size: 12px; margin-top: 8px; }
        input { padding: 10px; width: 100%; border-radius: 5px; border: none; background: #0f3460; color: #fff; margin-bottom: 20px; }
    </style>
</head>
<body>
    <div class="header">
        <h1>Context Viewer</h1>
        <div class="tabs">
            {% for t in tabs %}
            <a href="/?type={{ t }}" class="{{ 'current' if t == entry_type else '' }}">{{ t }}</a>
            {% endfor %}
        </div>
    </div>
    <p>{{ total_entries }} {{ entry_type if entry_type != 'all' else '' }} entries</p>
    <input type="text" id="search" placeholder="Filter entries..." onkeyup="filterEntries()">
    <div id="entries">
        {% for e in entries %}
        <div class="entry" data-content="{{ (e.title ~ ' ' ~ e.content)|lower }}">
            <span class="badge {{ e.type }}">{{ e.type }}</span>
            {% if e.type == 'task' %}
            <span class="badge status">{{ e.status }}</span>
            <span class="badge status">{{ e.priority }}</span>
            {% endif %}
            <div class="title">{{ e.title }}</div>
            <div class="content">{{ e.content[:500] }}</div>
            <div>
                {% for t in e.tags %}
                <span class="tag">{{ t }}</span>
                {% endfor %}
            </div>
            <div class="meta">{{ e.id }} | {{ e.project_path or 'no project' }} | {{ e.timestamp[:19] }}</div>
        </div>
        {% endfor %}
    </div>
    <div class="pagination">
        {% if page > 1 %}
        <a href="/?type={{ entry_type }}&page={{ page-1 }}">← Prev</a>
        {% else %}
        <a class="disabled">← Prev</a>
        {% endif %}

        {% for p in page_links %}
        {% if p == "..." %}
        <span class="ellipsis">...</span>
        {% elif p == page %}
        <span class="current">{{ p }}</span>
        {% else %}
        <a href="/?type={{ entry_type }}&page={{ p }}">{{ p }}</a>
        {% endif %}
        {% endfor %}

        {% if page < total_pages %}
        <a href="/?type={{ entry_type }}&page={{ page+1 }}">Next →</a>
        {% else %}
        <a class="disabled">Next →</a>
        {% endif %}
    </div>
    <script>
        function filterEntries() {
            const q = document.getElementById('search').value.toLowerCase();
            document.querySelectorAll('.entry').forEach(el => {
                el.style.display = el.dataset.content.includes(q) ? 'block' : 'none';
            });
        }
    </script>
</body>
</html>
"""


def create_app(store: ContextStore) -> Flask:
    """Flask app over an initialized store."""
    app = Flask(__name__)

    @app.route("/")
    async def index():
        entry_type = request.args.get("type", "all")
        if entry_type not in TYPE_TABS:
            abort(400, f"Invalid type '{entry_type}'")
        all_entries = await get_entries(store, entry_type)

        total = len(all_entries)
        page = max(request.args.get("page", 1, type=int), 1)
        start = (page - 1) * ITEMS_PER_PAGE
        end = start + ITEMS_PER_PAGE
        total_pages = (total + ITEMS_PER_PAGE - 1) // ITEMS_PER_PAGE

        return render_template_string(
            HTML,
            entries=all_entries[start:end],
            entry_type=entry_type,
            tabs=TYPE_TABS,
            page=page,
            total_pages=total_pages,
            total_entries=total,
            page_links=get_page_links(page, total_pages),
        )

    return app


def main():
    store = ContextStore(Config())
    asyncio.run(store.initialize())
    print(f"[context-mcp] Viewing {store.db_path}", file=sys.stderr)
    print("Open http://localhost:5000 in your browser")
    create_app(store).run(port=5000)


if __name__ == "__main__":
    main()
