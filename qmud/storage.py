"""JSON file storage for book session snapshots.

Directory layout:

    {base}/
      players/
        {player_id}/
          books/
            {book_id}.json    ← {bookId, title, seed, pages, current, path, createdAt, lastAt}

Snapshots hold plain data only. The `active` flag is runtime state and is
not persisted; a loaded session starts inactive until it is opened.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from qmud.models import NarrativeSession

logger = logging.getLogger(__name__)


class SessionStore:
    def __init__(self, base_path: Path, player_id: str) -> None:
        self._books_dir = base_path / "players" / player_id / "books"
        self._books_dir.mkdir(parents=True, exist_ok=True)

    def _book_file(self, book_id: str) -> Path:
        return self._books_dir / f"{book_id}.json"

    def save(self, session: NarrativeSession) -> None:
        self._book_file(session.book_id).write_text(json.dumps(session.snapshot(), indent=2))

    def load(self, book_id: str) -> NarrativeSession | None:
        path = self._book_file(book_id)
        if not path.is_file():
            return None
        try:
            session = NarrativeSession.model_validate_json(path.read_text())
        except ValidationError as e:
            logger.warning("Discarding unreadable snapshot %s: %s", path, e)
            return None
        session.active = False
        return session

    def list_books(self) -> list[str]:
        return sorted(p.stem for p in self._books_dir.glob("*.json"))
