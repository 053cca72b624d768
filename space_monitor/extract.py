"""
Searchable text extraction for the Content Processor.
"""

import json
import logging
import os
import posixpath
import re
from datetime import datetime
from typing import Any, Dict, Optional


logger = logging.getLogger(__name__)


TEXT_EXTENSIONS = {".md", ".markdown", ".txt", ".json"}
MARKDOWN_EXTENSIONS = {".md", ".markdown"}
BINARY_EXTENSIONS = {".pdf", ".jpg", ".jpeg", ".png", ".gif"}

TITLE_MAX_LENGTH = 100
TITLE_WORDS = 10

# Applied in order; code blocks before inline code
_MARKDOWN_RULES = [
    (re.compile(r"^#{1,6}\s+", re.MULTILINE), ""),                # headers
    (re.compile(r"[*_]{1,2}([^*_]+)[*_]{1,2}"), r"\1"),           # emphasis
    (re.compile(r"!\[([^\]]*)\]\([^)]+\)"), r"\1"),                # images
    (re.compile(r"\[([^\]]+)\]\([^)]+\)"), r"\1"),                 # links
    (re.compile(r"```[\s\S]*?```"), ""),                           # fenced code
    (re.compile(r"`([^`]+)`"), r"\1"),                             # inline code
    (re.compile(r"^[-*_]{3,}$", re.MULTILINE), ""),                # rules
    (re.compile(r"<!--[\s\S]*?-->"), ""),                          # html comments
    (re.compile(r"\s+"), " "),
]


def extract_markdown_text(markdown: str) -> str:
    """
    Strip markdown syntax, keeping the readable text.

    Args:
        markdown: Raw markdown source

    Returns:
        Plain text with whitespace collapsed to single spaces
    """
    text = markdown
    for pattern, replacement in _MARKDOWN_RULES:
        text = pattern.sub(replacement, text)
    return text.strip()


def extract_title(content: Optional[str], path: str) -> str:
    """
    Pick a display title for a search document.

    The first line if it is short, else the first words, else the filename.
    """
    filename = posixpath.basename(path)
    if not content:
        return filename

    first_line = content.split("\n", 1)[0].strip()
    if first_line and len(first_line) < TITLE_MAX_LENGTH:
        return first_line

    words = content.split()[:TITLE_WORDS]
    if words:
        return " ".join(words) + ("..." if len(words) == TITLE_WORDS else "")

    return filename


def _read_text(full_path: str) -> str:
    with open(full_path, "r", encoding="utf-8", errors="replace") as f:
        return f.read()


def process_file(full_path: str, relative_path: str, owner: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """
    Read a file and build its cache content, search text and metadata.

    Args:
        full_path: Absolute path on disk
        relative_path: Path relative to the owning root
        owner: Scope and identity fields copied into the metadata

    Returns:
        Dict with content, searchableText and metadata, or None if the path
        is missing or not a regular file
    """
    try:
        stat = os.stat(full_path)
    except FileNotFoundError:
        return None

    if not os.path.isfile(full_path):
        return None

    ext = os.path.splitext(relative_path)[1].lower()
    mtime = datetime.fromtimestamp(stat.st_mtime).isoformat()
    content: Optional[Dict[str, Any]] = None
    searchable_text = ""

    if ext in TEXT_EXTENSIONS:
        raw = _read_text(full_path)

        if ext in MARKDOWN_EXTENSIONS:
            searchable_text = extract_markdown_text(raw)
            content = {"raw": raw, "clean": searchable_text, "type": "markdown"}
        elif ext == ".json":
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                searchable_text = raw
                content = {"raw": raw, "type": "json", "error": "Invalid JSON"}
            else:
                searchable_text = json.dumps(parsed, indent=2)
                content = {"raw": raw, "parsed": parsed, "type": "json"}
        else:
            searchable_text = raw
            content = {"raw": raw, "type": "text"}

    elif ext in BINARY_EXTENSIONS:
        searchable_text = f"{posixpath.basename(relative_path)} {ext[1:]} file"
        content = {"type": "binary", "extension": ext, "size": stat.st_size, "mtime": mtime}

    else:
        logger.debug(f"No extractor for '{ext}', indexing metadata only: {relative_path}")

    metadata = {
        "path": relative_path,
        **owner,
        "size": stat.st_size,
        "mtime": mtime,
        "type": ext[1:],
        "processedAt": datetime.now().isoformat(),
    }

    return {
        "content": content,
        "searchableText": searchable_text,
        "metadata": metadata,
    }
