"""JSON backup of the learning data."""
import json
import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from vocabsync.config import settings
from vocabsync.errors import MalformedBackup
from vocabsync.models.records import to_iso, utc_now
from vocabsync.monitoring import error_count

logger = logging.getLogger(__name__)

SECTIONS = ("words", "flashcard", "review")


class BackupService:
    """Reads and writes the single backup document.

    The document holds ``words``, ``flashcard`` and ``review`` sections plus
    ``backup_time``. Writes go to a temporary file that then replaces the
    backup, so a crash never leaves a half-written document behind.
    """

    def __init__(self, path: Optional[Path] = None, clock: Callable[[], datetime] = utc_now):
        self.path = Path(path) if path else settings.paths.backup_file
        self.clock = clock

    def load(self) -> Optional[Dict[str, Any]]:
        """Read the document; None when there is no backup yet.

        Raises:
            MalformedBackup: The file exists but is not a valid document.
        """
        if not self.path.exists():
            return None
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise MalformedBackup(f"Cannot read {self.path}: {e}") from e
        if not text.strip():
            return None
        try:
            document = json.loads(text)
        except ValueError as e:
            raise MalformedBackup(f"Invalid JSON in {self.path}: {e}") from e
        if not isinstance(document, dict):
            raise MalformedBackup(f"{self.path} does not hold a JSON object")
        for section in SECTIONS:
            if section in document and not isinstance(document[section], dict):
                raise MalformedBackup(f"Section {section!r} of {self.path} is not an object")
        return document

    def write(self, document: Dict[str, Any]) -> bool:
        """Replace the backup with ``document``; returns whether it was written."""
        payload = {section: document.get(section) or {} for section in SECTIONS}
        payload["backup_time"] = to_iso(self.clock())
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            error_count.labels(error_type="backup_write").inc()
            logger.error("Could not write backup %s: %s", self.path, str(e))
            return False
        logger.info(
            "Backed up %d word(s), %d flashcard record(s)",
            len(payload["words"]),
            len(payload["flashcard"].get("progress") or {}),
        )
        return True

    def delete_section(self, section: str) -> None:
        """Drop one section from the backup, keeping the others."""
        try:
            document = self.load()
        except MalformedBackup as e:
            logger.warning("Not editing malformed backup: %s", str(e))
            return
        if not document or section not in document:
            return
        document.pop(section)
        self.write(document)
