"""
Durable user preferences (prompt dismissals, semantic search toggles).

A small JSON file read once at construction. A missing or corrupt file is
treated as empty so preferences can never block startup.
"""

import os
import json
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DISMISSED_DATA_PROMPT = "dismissedDataPrompt"
DISMISSED_EMBEDDINGS_PROMPT = "dismissedEmbeddingsPrompt"
STATUTE_SEMANTIC_ENABLED = "statuteSemanticEnabled"
CASE_LAW_SEMANTIC_ENABLED = "caseLawSemanticEnabled"
LIBRARY_SEMANTIC_ENABLED = "librarySemanticEnabled"

DEFAULT_PATH = Path.home() / ".legal_search" / "preferences.json"


class PreferenceStore:
    """JSON-file key/value store for boolean preferences."""

    def __init__(self, path: Optional[str] = None):
        self.path = Path(path or os.getenv("LEGAL_SEARCH_PREFS") or DEFAULT_PATH)
        self._values = self._load()

    def _load(self) -> dict:
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable preferences file {self.path}: {e}")
            return {}
        if not isinstance(data, dict):
            logger.warning(f"Ignoring preferences file {self.path}: not a JSON object")
            return {}
        return data

    def get_bool(self, key: str, default: bool = False) -> bool:
        value = self._values.get(key)
        return value if isinstance(value, bool) else default

    def set_bool(self, key: str, value: bool) -> None:
        self._values[key] = bool(value)
        self._save()

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._values, f, indent=2)
        os.replace(tmp, self.path)
