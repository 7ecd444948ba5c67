"""Story library - uploaded story documents kept on disk."""

from tweeplay.library.store import (
    StoredStory,
    StoryLibrary,
    StoryLibraryError,
    StoryNotFoundError,
)

__all__ = [
    "StoredStory",
    "StoryLibrary",
    "StoryLibraryError",
    "StoryNotFoundError",
]
