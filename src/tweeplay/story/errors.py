"""Story loading and navigation error types.

Build errors abort loading a story document. Navigation errors are raised
per request and leave the player's session untouched.

Each error carries structured fields for callers and can format itself as
operator-readable feedback via ``to_feedback()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from difflib import get_close_matches


class TweeplayError(Exception):
    """Base class for all errors raised by the story engine."""

    def to_feedback(self) -> str:
        """Format the error as Markdown feedback for an operator or player."""
        return str(self)


def _suggestions(name: str, available: list[str]) -> list[str]:
    """Find passage names that look like typos of *name*."""
    return get_close_matches(name, available, n=3, cutoff=0.6)


# ---------------------------------------------------------------------------
# Fatal build errors
# ---------------------------------------------------------------------------


class StoryBuildError(TweeplayError):
    """Base class for errors that abort loading a story."""


@dataclass
class MalformedDocument(StoryBuildError):
    """Raised when the document does not follow the passage structure.

    Attributes:
        reason: What is wrong with the document.
        line: 1-based line number where the problem was found.
        passage: Name of the passage being parsed, if it could be recovered.
    """

    reason: str
    line: int = 0
    passage: str | None = None

    def __post_init__(self) -> None:
        msg = f"Malformed story document: {self.reason}"
        if self.line:
            msg += f" (line {self.line})"
        if self.passage:
            msg += f" in passage '{self.passage}'"
        super().__init__(msg)

    def to_feedback(self) -> str:
        lines = ["## Story Rejected: Malformed Document", ""]
        lines.append(f"**Problem**: {self.reason}")
        if self.line:
            lines.append(f"**Line**: {self.line}")
        if self.passage:
            lines.append(f"**Passage**: `{self.passage}`")
        return "\n".join(lines)


@dataclass
class DuplicatePassage(StoryBuildError):
    """Raised when two passages share a name.

    Attributes:
        name: The duplicated passage name.
        lines: Header line numbers of every passage using the name.
    """

    name: str
    lines: list[int] = field(default_factory=list)

    def __post_init__(self) -> None:
        msg = f"Duplicate passage '{self.name}'"
        if self.lines:
            msg += " (lines " + ", ".join(str(n) for n in self.lines) + ")"
        super().__init__(msg)

    def to_feedback(self) -> str:
        lines = [
            "## Story Rejected: Duplicate Passage",
            "",
            f"**Passage**: `{self.name}`",
            "**Problem**: Passage names must be unique within a story.",
        ]
        if self.lines:
            lines.append("**Defined at lines**: " + ", ".join(str(n) for n in self.lines))
        lines.extend(["", "**Solution**: Rename or merge the passages."])
        return "\n".join(lines)


@dataclass
class NoStartPassage(StoryBuildError):
    """Raised when the start passage cannot be resolved.

    Attributes:
        reason: Why no start passage was found.
        declared: Start passage name declared by the document, if any.
        available: Passage names present in the document.
    """

    reason: str
    declared: str | None = None
    available: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        super().__init__(f"No start passage: {self.reason}")

    def to_feedback(self) -> str:
        lines = [
            "## Story Rejected: No Start Passage",
            "",
            f"**Problem**: {self.reason}",
        ]
        if self.declared:
            suggestions = _suggestions(self.declared, self.available)
            if suggestions:
                lines.append("")
                lines.append("**Did you mean one of these?**")
                lines.extend(f"  - `{s}`" for s in suggestions)
        lines.extend(
            [
                "",
                "**Solution**: Set `start` in StoryData, tag one passage `start`, "
                "or name a passage `Start`.",
            ]
        )
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Navigation errors
# ---------------------------------------------------------------------------


class NavigationError(TweeplayError):
    """Base class for per-request navigation failures."""


@dataclass
class InvalidChoiceIndex(NavigationError):
    """Raised when a choice index is outside ``[0, choice_count)``.

    Attributes:
        index: The requested index.
        choice_count: Number of choices on the current passage.
        passage: Name of the current passage.
    """

    index: int
    choice_count: int
    passage: str

    def __post_init__(self) -> None:
        super().__init__(
            f"Choice {self.index} does not exist in passage '{self.passage}' "
            f"({self.choice_count} choice(s))"
        )

    def to_feedback(self) -> str:
        if self.choice_count == 0:
            return f"**{self.passage}** has no choices left. Reset to play again."
        return (
            f"Choice {self.index} is not available here. "
            f"Pick a number from 0 to {self.choice_count - 1}."
        )


@dataclass
class DanglingTarget(NavigationError):
    """Raised when the selected choice points to a passage that does not exist.

    Attributes:
        passage: Name of the current passage.
        index: Index of the selected choice.
        target: The missing destination passage.
        available: Passage names in the story, used for suggestions.
    """

    passage: str
    index: int
    target: str
    available: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        super().__init__(
            f"Choice {self.index} in passage '{self.passage}' leads to missing passage "
            f"'{self.target}'"
        )

    def to_feedback(self) -> str:
        lines = [
            "## Broken Choice",
            "",
            f"**Choice**: {self.index} in `{self.passage}`",
            f"**Leads to**: `{self.target}`, which is not part of this story.",
        ]
        suggestions = _suggestions(self.target, self.available)
        if suggestions:
            lines.append("")
            lines.append("**The author may have meant**:")
            lines.extend(f"  - `{s}`" for s in suggestions)
        return "\n".join(lines)


@dataclass
class SessionBusy(NavigationError):
    """Raised when another request is already advancing the same session.

    Only raised with the ``reject`` busy policy; the ``queue`` policy waits.
    """

    story_id: str
    user_id: str

    def __post_init__(self) -> None:
        super().__init__(
            f"Session for user '{self.user_id}' in story '{self.story_id}' is busy"
        )

    def to_feedback(self) -> str:
        return "Your previous choice is still being processed. Try again in a moment."


# ---------------------------------------------------------------------------
# Registry errors
# ---------------------------------------------------------------------------


@dataclass
class UnknownStoryError(TweeplayError):
    """Raised when a story id is not loaded in the engine."""

    story_id: str
    available: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        super().__init__(f"Story '{self.story_id}' is not loaded")
