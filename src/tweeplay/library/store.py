"""On-disk library of uploaded story documents.

Layout of a library folder::

    <folder>/library.sqlite     index of stored stories
    <folder>/stories/<uuid>.twee  the documents, stored verbatim

Only documents that build successfully and declare a title are accepted.
Sessions are never stored here.
"""

from __future__ import annotations

import sqlite3
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from tweeplay.observability.logging import get_logger
from tweeplay.story.builder import DEFAULT_START, load_document
from tweeplay.story.errors import TweeplayError

if TYPE_CHECKING:
    from types import TracebackType

log = get_logger(__name__)

DATABASE_NAME = "library.sqlite"
STORIES_DIR = "stories"
STORY_SUFFIX = ".twee"

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS stories (
    id       INTEGER PRIMARY KEY AUTOINCREMENT,
    name     TEXT NOT NULL,
    filename TEXT NOT NULL UNIQUE,
    added_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%S','now'))
);
"""


class StoryLibraryError(TweeplayError):
    """Raised when the library cannot store or read a story."""


class StoryNotFoundError(StoryLibraryError):
    """Raised when no stored story has the requested id."""

    def __init__(self, story_id: int) -> None:
        self.story_id = story_id
        super().__init__(f"No stored story with id {story_id}")


@dataclass(frozen=True)
class StoredStory:
    """Index entry of a stored story.

    Attributes:
        id: Library id, stable for the lifetime of the entry.
        name: Story title at upload time.
        filename: Document file name under ``stories/``.
        added_at: UTC timestamp of the upload (ISO 8601).
    """

    id: int
    name: str
    filename: str
    added_at: str


class StoryLibrary:
    """SQLite-indexed folder of story documents.

    Creates the folder, the database and the stories directory on first use.
    Usable as a context manager, which closes the connection on exit.
    """

    def __init__(self, folder: str | Path, *, default_start: str = DEFAULT_START) -> None:
        self.folder = Path(folder)
        self.default_start = default_start
        try:
            self.stories_dir.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                str(self.folder / DATABASE_NAME),
                isolation_level=None,  # autocommit
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(_SCHEMA)
        except (OSError, sqlite3.Error) as e:
            raise StoryLibraryError(f"Cannot open story library at {self.folder}: {e}") from e

    @property
    def stories_dir(self) -> Path:
        return self.folder / STORIES_DIR

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def __enter__(self) -> StoryLibrary:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    def add_story(self, raw_text: str) -> StoredStory:
        """Validate and store a story document.

        Args:
            raw_text: Twee document.

        Returns:
            The new index entry.

        Raises:
            StoryBuildError: If the document does not build. Nothing is stored.
            StoryLibraryError: If the story has no title or cannot be written.
        """
        result = load_document(raw_text, default_start=self.default_start)
        title = result.graph.title
        if not title:
            raise StoryLibraryError("Story has no title; add a StoryTitle passage")

        while True:
            filename = f"{uuid.uuid4()}{STORY_SUFFIX}"
            file_path = self.stories_dir / filename
            if not file_path.exists():
                break

        try:
            file_path.write_text(raw_text, encoding="utf-8")
        except OSError as e:
            raise StoryLibraryError(f"Cannot write story file {file_path}: {e}") from e

        try:
            cursor = self._conn.execute(
                "INSERT INTO stories (name, filename) VALUES (?, ?)",
                (title, filename),
            )
            row = self._conn.execute(
                "SELECT id, name, filename, added_at FROM stories WHERE id = ?",
                (cursor.lastrowid,),
            ).fetchone()
        except sqlite3.Error as e:
            log.warning("library_insert_failed", filename=filename, error=str(e))
            file_path.unlink(missing_ok=True)
            raise StoryLibraryError(f"Cannot index story '{title}': {e}") from e

        stored = _row_to_story(row)
        log.info("library_story_added", story_id=stored.id, name=stored.name)
        return stored

    def list_stories(self) -> list[StoredStory]:
        """All stored stories, oldest first."""
        rows = self._conn.execute(
            "SELECT id, name, filename, added_at FROM stories ORDER BY id"
        ).fetchall()
        return [_row_to_story(row) for row in rows]

    def get(self, story_id: int) -> StoredStory:
        """Return the index entry of a story.

        Raises:
            StoryNotFoundError: If the id is unknown.
        """
        row = self._conn.execute(
            "SELECT id, name, filename, added_at FROM stories WHERE id = ?",
            (story_id,),
        ).fetchone()
        if row is None:
            raise StoryNotFoundError(story_id)
        return _row_to_story(row)

    def load_content(self, story_id: int) -> str:
        """Read the document text of a stored story.

        Raises:
            StoryNotFoundError: If the id is unknown.
            StoryLibraryError: If the document file cannot be read.
        """
        stored = self.get(story_id)
        file_path = self.stories_dir / stored.filename
        try:
            return file_path.read_text(encoding="utf-8")
        except OSError as e:
            raise StoryLibraryError(f"Cannot read story file {file_path}: {e}") from e

    def delete_story(self, story_id: int) -> StoredStory:
        """Remove a story from the index and delete its document.

        A document file that cannot be removed is logged and left behind.

        Returns:
            The deleted index entry.

        Raises:
            StoryNotFoundError: If the id is unknown.
        """
        stored = self.get(story_id)
        cursor = self._conn.execute("DELETE FROM stories WHERE id = ?", (story_id,))
        if cursor.rowcount == 0:
            raise StoryNotFoundError(story_id)

        file_path = self.stories_dir / stored.filename
        try:
            file_path.unlink(missing_ok=True)
        except OSError as e:
            log.warning("library_file_not_removed", path=str(file_path), error=str(e))

        log.info("library_story_deleted", story_id=stored.id, name=stored.name)
        return stored


def _row_to_story(row: sqlite3.Row) -> StoredStory:
    return StoredStory(
        id=row["id"],
        name=row["name"],
        filename=row["filename"],
        added_at=row["added_at"],
    )
