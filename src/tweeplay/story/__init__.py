"""Story package - parsing Twee documents into immutable story graphs.

Data flow: document text -> parser -> link extraction -> builder -> StoryGraph.
"""

from tweeplay.story.builder import (
    DEFAULT_START,
    BuildResult,
    build_story,
    load_document,
    resolve_start,
)
from tweeplay.story.diagnostics import BuildReport, BuildWarning, format_warning
from tweeplay.story.errors import (
    DanglingTarget,
    DuplicatePassage,
    InvalidChoiceIndex,
    MalformedDocument,
    NavigationError,
    NoStartPassage,
    SessionBusy,
    StoryBuildError,
    TweeplayError,
    UnknownStoryError,
)
from tweeplay.story.graph import Choice, Passage, StoryGraph
from tweeplay.story.links import (
    LinkRecord,
    MalformedLink,
    MalformedLinkError,
    extract_links,
    parse_link,
    scan_links,
    strip_links,
)
from tweeplay.story.parser import PassageRecord, StoryMetadata, parse_document

__all__ = [
    "DEFAULT_START",
    "BuildReport",
    "BuildResult",
    "BuildWarning",
    "Choice",
    "DanglingTarget",
    "DuplicatePassage",
    "InvalidChoiceIndex",
    "LinkRecord",
    "MalformedDocument",
    "MalformedLink",
    "MalformedLinkError",
    "NavigationError",
    "NoStartPassage",
    "Passage",
    "PassageRecord",
    "SessionBusy",
    "StoryBuildError",
    "StoryGraph",
    "StoryMetadata",
    "TweeplayError",
    "UnknownStoryError",
    "build_story",
    "extract_links",
    "format_warning",
    "load_document",
    "parse_document",
    "parse_link",
    "resolve_start",
    "scan_links",
    "strip_links",
]
