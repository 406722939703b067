"""Persistent trust cache: one readiness entry per device identity."""
from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Dict, Optional, Protocol

from hmideploy.device.types import TrustCacheEntry

logger = logging.getLogger(__name__)

DEFAULT_CACHE_PATH = Path.home() / ".hmideploy" / "trust_cache.json"


class TrustStore(Protocol):
    """Key-value store of ``TrustCacheEntry`` keyed by identity."""

    def load(self) -> Dict[str, TrustCacheEntry]:
        ...

    def save(self, entries: Dict[str, TrustCacheEntry]) -> None:
        ...


class MemoryTrustStore:
    """In-process store; nothing survives a restart."""

    def __init__(self, entries: Optional[Dict[str, TrustCacheEntry]] = None):
        self._entries: Dict[str, TrustCacheEntry] = dict(entries or {})

    def load(self) -> Dict[str, TrustCacheEntry]:
        return dict(self._entries)

    def save(self, entries: Dict[str, TrustCacheEntry]) -> None:
        self._entries = dict(entries)


class JsonTrustStore:
    """
    JSON file store.

    Writes go to a temporary file in the same directory followed by
    ``os.replace`` so a concurrent reader sees either the old or the new file.
    Two processes racing on read-modify-write still resolve last-writer-wins.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else DEFAULT_CACHE_PATH

    def load(self) -> Dict[str, TrustCacheEntry]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable trust cache {self.path}: {e}")
            return {}

        entries: Dict[str, TrustCacheEntry] = {}
        if not isinstance(data, dict):
            return entries
        for identity, raw in data.items():
            if not isinstance(raw, dict):
                continue
            entries[identity] = TrustCacheEntry(
                identity=identity,
                ready=bool(raw.get("ready", False)),
                timestamp=float(raw.get("timestamp", 0.0)),
            )
        return entries

    def save(self, entries: Dict[str, TrustCacheEntry]) -> None:
        payload = {
            identity: {"ready": entry.ready, "timestamp": entry.timestamp}
            for identity, entry in entries.items()
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".trust_cache_", suffix=".tmp", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.remove(tmp_name)
            except OSError:
                pass
            raise


class TrustCache:
    """Readiness lookups and best-effort updates on top of a ``TrustStore``."""

    def __init__(self, store: Optional[TrustStore] = None):
        self.store = store if store is not None else JsonTrustStore()

    def is_ready(self, identity: str) -> bool:
        try:
            entry = self.store.load().get(identity)
        except Exception as e:
            logger.warning(f"Trust cache read failed: {e}")
            return False
        return bool(entry and entry.ready)

    def mark_ready(self, identity: str, ready: bool = True) -> bool:
        """Persist readiness for ``identity``. Failure is logged, never raised."""
        try:
            entries = self.store.load()
            entries[identity] = TrustCacheEntry(identity=identity, ready=ready, timestamp=time.time())
            self.store.save(entries)
            return True
        except Exception as e:
            logger.warning(f"Could not persist trust cache for {identity}: {e}")
            return False

    def forget(self, identity: str) -> bool:
        try:
            entries = self.store.load()
            if entries.pop(identity, None) is None:
                return False
            self.store.save(entries)
            return True
        except Exception as e:
            logger.warning(f"Could not update trust cache for {identity}: {e}")
            return False
