"""Choice link extraction.

Recognized link forms, in passage text:

- ``[[Target]]``: the target name doubles as the label
- ``[[Label->Target]]`` and ``[[Target<-Label]]``
- ``[[Label|Target]]``
- any of the above followed by a setter, ``[[Label->Target][$x to 1]]``

Setters are kept on the record but never executed.

Link parsing is strict: ``parse_link`` returns either a ``LinkRecord`` or a
``MalformedLink``, and ``extract_links`` raises ``MalformedLinkError`` for the
first malformed link in a passage. A malformed link only affects its own
passage.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from tweeplay.story.errors import TweeplayError

if TYPE_CHECKING:
    from collections.abc import Sequence

LINK_OPEN = "[["
LINK_CLOSE = "]]"
SETTER_SEPARATOR = "]["

# Shown in MalformedLink snippets
_SNIPPET_LENGTH = 30


@dataclass(frozen=True, slots=True)
class LinkRecord:
    """A well-formed choice link.

    Attributes:
        label: Text shown to the player.
        target: Name of the destination passage (may not exist).
        start: Offset of the opening ``[[`` in the passage text.
        end: Offset just past the closing ``]]``.
        setter: Raw setter component, if any. Never executed.
    """

    label: str
    target: str
    start: int
    end: int
    setter: str | None = None


@dataclass(frozen=True, slots=True)
class MalformedLink:
    """A link that could not be parsed.

    Attributes:
        reason: What is wrong with the link markup.
        offset: Offset in the passage text where the problem starts.
        snippet: The surrounding text, for error reports.
    """

    reason: str
    offset: int
    snippet: str = ""


LinkResult = LinkRecord | MalformedLink


class MalformedLinkError(TweeplayError):
    """Raised when a passage body contains malformed link markup."""

    def __init__(self, malformed: MalformedLink, passage: str | None = None) -> None:
        self.malformed = malformed
        self.passage = passage
        where = f" in passage '{passage}'" if passage else ""
        super().__init__(
            f"Malformed link{where} at offset {malformed.offset}: {malformed.reason}"
        )


def parse_link(inner: str, start: int, end: int) -> LinkResult:
    """Parse the text between ``[[`` and ``]]``.

    Args:
        inner: Link markup without the surrounding brackets.
        start: Offset of the opening brackets in the passage text.
        end: Offset just past the closing brackets.

    Returns:
        LinkRecord on success, MalformedLink otherwise.
    """
    setter: str | None = None
    if SETTER_SEPARATOR in inner:
        inner, setter = inner.split(SETTER_SEPARATOR, 1)
        if SETTER_SEPARATOR in setter:
            return MalformedLink("more than one setter component", start, _snippet(inner))

    if "->" in inner:
        label, target = inner.rsplit("->", 1)
    elif "<-" in inner:
        target, label = inner.split("<-", 1)
    elif "|" in inner:
        label, target = inner.split("|", 1)
    else:
        label = target = inner

    label = label.strip()
    target = target.strip()
    if not target:
        return MalformedLink("link has no target passage", start, _snippet(inner))
    if "[" in target or "]" in target:
        return MalformedLink("unbalanced brackets inside link", start, _snippet(inner))
    return LinkRecord(label=label or target, target=target, start=start, end=end, setter=setter)


def scan_links(text: str) -> list[LinkResult]:
    """Scan passage text for links, stopping at the first malformed one.

    Returns:
        Parsed links in source order. If a malformed link is found it is the
        last element of the list.
    """
    results: list[LinkResult] = []
    pos = 0
    while True:
        open_at = text.find(LINK_OPEN, pos)
        close_at = text.find(LINK_CLOSE, pos)

        if open_at == -1 and close_at == -1:
            return results
        if open_at == -1 or (close_at != -1 and close_at < open_at):
            results.append(
                MalformedLink(
                    "closing ']]' without opening '[['", close_at, _snippet_at(text, close_at)
                )
            )
            return results

        close_at = text.find(LINK_CLOSE, open_at + len(LINK_OPEN))
        nested_at = text.find(LINK_OPEN, open_at + len(LINK_OPEN))
        if close_at == -1:
            results.append(
                MalformedLink("link is never closed", open_at, _snippet_at(text, open_at))
            )
            return results
        if nested_at != -1 and nested_at < close_at:
            results.append(
                MalformedLink(
                    "link opened inside another link", nested_at, _snippet_at(text, open_at)
                )
            )
            return results

        end = close_at + len(LINK_CLOSE)
        result = parse_link(text[open_at + len(LINK_OPEN) : close_at], open_at, end)
        results.append(result)
        if isinstance(result, MalformedLink):
            return results
        pos = end


def extract_links(text: str, passage: str | None = None) -> list[LinkRecord]:
    """Extract choice links from passage text in source order.

    Args:
        text: Passage body.
        passage: Passage name, used in the error message.

    Returns:
        Well-formed links in the order they appear.

    Raises:
        MalformedLinkError: If any link in the text is malformed.
    """
    links: list[LinkRecord] = []
    for result in scan_links(text):
        if isinstance(result, MalformedLink):
            raise MalformedLinkError(result, passage)
        links.append(result)
    return links


def strip_links(text: str, links: Sequence[LinkRecord], template: str = "{label}") -> str:
    """Replace every link span with its formatted label."""
    parts: list[str] = []
    pos = 0
    for link in links:
        parts.append(text[pos : link.start])
        parts.append(template.format(label=link.label))
        pos = link.end
    parts.append(text[pos:])
    return "".join(parts)


def _snippet(text: str) -> str:
    if len(text) <= _SNIPPET_LENGTH:
        return text
    return text[:_SNIPPET_LENGTH] + "..."


def _snippet_at(text: str, offset: int) -> str:
    return _snippet(text[offset:])
