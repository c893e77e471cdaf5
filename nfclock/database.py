"""
Member database.
A JSON file mapping card UID (lowercase hex) to
{"secret": <64 hex chars>, "owner": ..., "name": ...}.
"""

import json
import logging
import threading
from typing import Dict

logger = logging.getLogger(__name__)

Members = Dict[str, Dict[str, str]]


class MemberDatabase:
    """In-memory member table backed by a JSON file."""

    def __init__(self, filename: str):
        self.filename = filename
        self._members: Members = {}
        self._lock = threading.Lock()

    def load(self):
        """Read the file; keeps an empty table when it cannot be read."""
        try:
            with open(self.filename, "r", encoding="utf-8") as f:
                members = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Failed to load database from %s: %s", self.filename, e)
            return
        if not isinstance(members, dict):
            logger.warning("Ignoring database %s: expected a JSON object", self.filename)
            return
        with self._lock:
            self._members = members
        logger.info("Database loaded from disk, %d keys in database", len(members))

    def store(self):
        """Write the table back to the file."""
        with self._lock:
            snapshot = dict(self._members)
        try:
            with open(self.filename, "w", encoding="utf-8") as f:
                json.dump(snapshot, f, indent=2)
        except OSError as e:
            logger.warning("Failed to store database to %s: %s", self.filename, e)

    def get(self) -> Members:
        """Snapshot of the member table."""
        with self._lock:
            return dict(self._members)

    def set(self, members: Members):
        with self._lock:
            self._members = dict(members)
