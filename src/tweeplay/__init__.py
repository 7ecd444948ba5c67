"""tweeplay: play Twee interactive fiction with many concurrent users.

The engine is transport-agnostic: a chat bot, web handler or terminal loop
calls ``StoryEngine`` and presents the returned ``RenderedView``.
"""

from tweeplay.config import EngineConfig, EngineConfigError, load_engine_config
from tweeplay.library import StoredStory, StoryLibrary, StoryLibraryError, StoryNotFoundError
from tweeplay.play import (
    ChoiceView,
    LoadResult,
    RenderedView,
    Session,
    SessionManager,
    StoryEngine,
    StoryHandle,
)
from tweeplay.story import (
    BuildWarning,
    DanglingTarget,
    DuplicatePassage,
    InvalidChoiceIndex,
    MalformedDocument,
    MalformedLink,
    MalformedLinkError,
    NavigationError,
    NoStartPassage,
    SessionBusy,
    StoryBuildError,
    StoryGraph,
    TweeplayError,
    UnknownStoryError,
)

__version__ = "0.1.0"

__all__ = [
    "BuildWarning",
    "ChoiceView",
    "DanglingTarget",
    "DuplicatePassage",
    "EngineConfig",
    "EngineConfigError",
    "InvalidChoiceIndex",
    "LoadResult",
    "MalformedDocument",
    "MalformedLink",
    "MalformedLinkError",
    "NavigationError",
    "NoStartPassage",
    "RenderedView",
    "Session",
    "SessionBusy",
    "SessionManager",
    "StoredStory",
    "StoryBuildError",
    "StoryEngine",
    "StoryGraph",
    "StoryHandle",
    "StoryLibrary",
    "StoryLibraryError",
    "StoryNotFoundError",
    "TweeplayError",
    "UnknownStoryError",
    "__version__",
    "load_engine_config",
]
