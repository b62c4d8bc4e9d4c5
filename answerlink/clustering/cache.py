"""Persistent adjudication decision cache."""
from __future__ import annotations

import json
import logging
import threading
from hashlib import sha256
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

LOGGER = logging.getLogger(__name__)


class _JSONCacheBase:
    """Lightweight JSON-backed cache with basic concurrency protection."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._data = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            with self._path.open("r", encoding="utf-8") as handle:
                payload = json.load(handle)
        except (OSError, json.JSONDecodeError):
            LOGGER.warning("Failed to load cache from %s; starting fresh", self._path)
            return {}
        if isinstance(payload, dict):
            return payload
        LOGGER.warning("Cache payload at %s was not a mapping; starting fresh", self._path)
        return {}

    def _write(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.parent / f"{self._path.name}.tmp"
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(self._data, handle, indent=2, sort_keys=True)
        tmp_path.replace(self._path)


class DecisionCache(_JSONCacheBase):
    """Store adjudication verdicts keyed by the normalized pair."""

    @staticmethod
    def make_key(prompt_version: str, mode: str, left_form: str, right_form: str, *, ordered: bool) -> str:
        """Return a stable key; equivalence keys ignore pair order."""

        if ordered:
            sides = [left_form, right_form]
        else:
            sides = sorted((left_form, right_form))
        digest_input = "||".join([prompt_version, mode, *sides])
        return sha256(digest_input.encode("utf-8")).hexdigest()

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return a cached verdict payload if available."""

        with self._lock:
            payload = self._data.get(key)
            if not isinstance(payload, dict) or "outcome" not in payload:
                return None
            return dict(payload)

    def set_many(self, verdicts: Mapping[str, Mapping[str, Any]]) -> None:
        """Persist several verdicts with a single write."""

        if not verdicts:
            return
        with self._lock:
            for key, payload in verdicts.items():
                self._data[key] = dict(payload)
            self._write()

    def clear(self) -> int:
        """Drop every cached verdict and return how many were removed."""

        with self._lock:
            removed = len(self._data)
            self._data = {}
            self._write()
        LOGGER.info("Cleared %d cached adjudication decisions", removed)
        return removed

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


__all__ = ["DecisionCache"]
