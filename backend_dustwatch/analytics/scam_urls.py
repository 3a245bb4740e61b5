"""
Scam URL detection in transaction memos.

Dusting transfers often carry a memo advertising a phishing site. URLs and
bare domains are extracted from the memo and matched (substring) against a
blocklist loaded from JSON (SCAM_URLS_PATH, default data/scam_urls.json).
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Iterable

from backend_dustwatch.dustwatch_logging import get_logger

logger = get_logger(__name__)

DEFAULT_SCAM_URLS_PATH = Path(__file__).resolve().parent.parent / "data" / "scam_urls.json"
URL_PATTERN = re.compile(r"https?://[^\s]+|[a-zA-Z0-9\-_.]+\.[a-zA-Z]{2,}")


def load_scam_url_blocklist(path: str | Path | None = None) -> set[str]:
    """Load blocklisted domains/URLs from a JSON array. Returns empty set on failure."""
    path_str = str(path or os.getenv("SCAM_URLS_PATH", "").strip() or DEFAULT_SCAM_URLS_PATH)
    list_path = Path(path_str)
    if not list_path.is_file():
        logger.debug("scam_urls_blocklist_missing", path=path_str)
        return set()
    try:
        with open(list_path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("scam_urls_blocklist_load_failed", path=path_str, error=str(e))
        return set()
    if not isinstance(data, list):
        return set()
    return {str(u).strip().lower() for u in data if u and str(u).strip()}


def extract_urls(text: str | None) -> list[str]:
    if not text:
        return []
    return URL_PATTERN.findall(text)


def is_scam_url_present(text: str | None, blocklist: Iterable[str]) -> bool:
    """True when any URL in text contains a blocklisted entry."""
    urls = [u.lower() for u in extract_urls(text)]
    if not urls:
        return False
    entries = [b for b in blocklist if b]
    return any(entry in url for url in urls for entry in entries)
