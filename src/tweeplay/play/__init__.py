"""Play package - sessions, rendering and the story engine."""

from tweeplay.play.engine import LoadResult, StoryEngine, StoryHandle
from tweeplay.play.renderer import ChoiceView, RenderedView, render_passage
from tweeplay.play.sessions import Session, SessionManager

__all__ = [
    "ChoiceView",
    "LoadResult",
    "RenderedView",
    "Session",
    "SessionManager",
    "StoryEngine",
    "StoryHandle",
    "render_passage",
]
