"""Twee 3 document parser.

Splits a story document into raw passage records in a single pass over its
lines. Any structural violation aborts the whole parse with a
MalformedDocument error naming the line and, when known, the passage.

Format reference:
https://github.com/iftechfoundation/twine-specs/blob/master/twee-3-specification.md
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from tweeplay.observability.logging import get_logger
from tweeplay.story.errors import MalformedDocument

log = get_logger(__name__)

HEADER_MARKER = "::"
ESCAPED_HEADER_MARKER = "\\::"

STORY_TITLE = "StoryTitle"
STORY_DATA = "StoryData"


@dataclass(frozen=True, slots=True)
class PassageRecord:
    """A passage exactly as written in the document.

    Attributes:
        name: Passage name with escapes resolved.
        text: Body text, still containing link markup.
        tags: Tags in the order they were written.
        metadata: Decoded metadata block (editor position, size, ...).
        line: 1-based line number of the passage header.
    """

    name: str
    text: str
    tags: tuple[str, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)
    line: int = 0


@dataclass(frozen=True, slots=True)
class StoryMetadata:
    """Story-level data from the StoryTitle and StoryData passages."""

    title: str | None = None
    ifid: str | None = None
    format: str | None = None
    format_version: str | None = None
    start: str | None = None


def parse_document(raw_text: str) -> list[PassageRecord]:
    """Parse a Twee 3 document into passage records.

    Args:
        raw_text: Full document text.

    Returns:
        Passage records in document order, special passages included.

    Raises:
        MalformedDocument: If the document breaks the passage structure.
    """
    lines = raw_text.removeprefix("\ufeff").splitlines()
    records: list[PassageRecord] = []

    header: tuple[str, tuple[str, ...], dict[str, Any], int] | None = None
    body: list[str] = []

    for number, line in enumerate(lines, start=1):
        if line.startswith(HEADER_MARKER):
            if header is not None:
                records.append(_finish_passage(header, body))
            header = _parse_header(line, number)
            body = []
            continue

        if header is None:
            if line.strip():
                raise MalformedDocument("text found before the first passage header", number)
            continue

        if line.startswith(ESCAPED_HEADER_MARKER):
            line = line[1:]
        body.append(line)

    if header is not None:
        records.append(_finish_passage(header, body))

    if not records:
        raise MalformedDocument("document contains no passages")

    log.debug("document_parsed", passages=len(records), lines=len(lines))
    return records


def _finish_passage(
    header: tuple[str, tuple[str, ...], dict[str, Any], int], body: list[str]
) -> PassageRecord:
    name, tags, metadata, line = header
    while body and not body[0].strip():
        body.pop(0)
    text = "\n".join(body).rstrip()
    return PassageRecord(name=name, text=text, tags=tags, metadata=metadata, line=line)


def _parse_header(line: str, number: int) -> tuple[str, tuple[str, ...], dict[str, Any], int]:
    """Parse ``:: Name [tags] {metadata}`` into its parts."""
    content = line[len(HEADER_MARKER) :]
    name, pos = _read_until(content, 0, stops="[{", number=number)
    name = name.strip()
    if not name:
        raise MalformedDocument("passage header has no name", number)
    for forbidden in "]}":
        if forbidden in _unescaped_chars(content[:pos]):
            raise MalformedDocument(
                f"unescaped '{forbidden}' in passage name", number, passage=name
            )

    tags: tuple[str, ...] = ()
    metadata: dict[str, Any] = {}

    pos = _skip_spaces(content, pos)
    if pos < len(content) and content[pos] == "[":
        raw_tags, end = _read_until(content, pos + 1, stops="]", number=number)
        if end >= len(content):
            raise MalformedDocument("unclosed tag block", number, passage=name)
        tags = tuple(raw_tags.split())
        pos = _skip_spaces(content, end + 1)

    if pos < len(content) and content[pos] == "{":
        raw_metadata = content[pos:].rstrip()
        if not raw_metadata.endswith("}"):
            raise MalformedDocument("unclosed metadata block", number, passage=name)
        try:
            decoded = json.loads(raw_metadata)
        except json.JSONDecodeError as e:
            raise MalformedDocument(
                f"metadata block is not valid JSON: {e.msg}", number, passage=name
            ) from e
        if not isinstance(decoded, dict):
            raise MalformedDocument("metadata block must be a JSON object", number, passage=name)
        metadata = decoded
        pos = len(content)

    if content[pos:].strip():
        raise MalformedDocument(
            f"unexpected text after passage header: {content[pos:].strip()!r}",
            number,
            passage=name,
        )

    return name, tags, metadata, number


def _read_until(text: str, start: int, *, stops: str, number: int) -> tuple[str, int]:
    """Read from *start* until an unescaped stop character.

    Returns the unescaped text and the index of the stop character
    (``len(text)`` when none was found).
    """
    out: list[str] = []
    pos = start
    while pos < len(text):
        char = text[pos]
        if char == "\\":
            if pos + 1 >= len(text):
                raise MalformedDocument("dangling escape at end of passage header", number)
            out.append(text[pos + 1])
            pos += 2
            continue
        if char in stops:
            break
        out.append(char)
        pos += 1
    return "".join(out), pos


def _unescaped_chars(text: str) -> str:
    """Return the characters of *text* that are not escaped."""
    out: list[str] = []
    escaped = False
    for char in text:
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        else:
            out.append(char)
    return "".join(out)


def _skip_spaces(text: str, pos: int) -> int:
    while pos < len(text) and text[pos] in " \t":
        pos += 1
    return pos


def read_story_metadata(records: list[PassageRecord]) -> StoryMetadata:
    """Extract story-level metadata from the special passages.

    Raises:
        MalformedDocument: If StoryData is not a JSON object.
    """
    title: str | None = None
    data: dict[str, Any] = {}

    for record in records:
        if record.name == STORY_TITLE:
            title = record.text.strip() or None
        elif record.name == STORY_DATA:
            try:
                decoded = json.loads(record.text) if record.text.strip() else {}
            except json.JSONDecodeError as e:
                raise MalformedDocument(
                    f"StoryData is not valid JSON: {e.msg}", record.line, passage=STORY_DATA
                ) from e
            if not isinstance(decoded, dict):
                raise MalformedDocument(
                    "StoryData must be a JSON object", record.line, passage=STORY_DATA
                )
            data = decoded

    def _str_field(key: str) -> str | None:
        value = data.get(key)
        return str(value) if value not in (None, "") else None

    return StoryMetadata(
        title=title,
        ifid=_str_field("ifid"),
        format=_str_field("format"),
        format_version=_str_field("format-version"),
        start=_str_field("start"),
    )
