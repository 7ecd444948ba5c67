"""Story graph builder.

Turns parsed passage records into a validated StoryGraph:

1. Passage names must be unique (DuplicatePassage otherwise).
2. The start passage is resolved from StoryData ``start``, then a single
   passage tagged ``start``, then the default name (NoStartPassage otherwise).
3. Links are extracted per passage. A malformed link empties that passage's
   choices and is reported as a warning.
4. Choices whose target does not exist are kept and flagged as dangling.
5. Passages unreachable from the start are reported as warnings.
"""

from __future__ import annotations

from dataclasses import dataclass

from tweeplay.observability.logging import get_logger
from tweeplay.story.diagnostics import BuildReport, BuildWarning
from tweeplay.story.errors import DuplicatePassage, NoStartPassage
from tweeplay.story.graph import Choice, Passage, StoryGraph
from tweeplay.story.links import LinkRecord, MalformedLinkError, extract_links
from tweeplay.story.parser import (
    STORY_DATA,
    STORY_TITLE,
    PassageRecord,
    StoryMetadata,
    parse_document,
    read_story_metadata,
)

log = get_logger(__name__)

DEFAULT_START = "Start"
START_TAG = "start"

# Story-format special passages that hold scripts or UI chrome, not story text
IGNORED_PASSAGE_NAMES = frozenset(
    {
        "StoryInit",
        "StoryMenu",
        "StoryBanner",
        "StoryCaption",
        "StorySubtitle",
        "StoryAuthor",
        "PassageReady",
        "PassageDone",
        "PassageHeader",
        "PassageFooter",
    }
)
IGNORED_TAGS = frozenset({"script", "stylesheet"})


@dataclass(frozen=True)
class BuildResult:
    """A built story plus its non-fatal findings."""

    graph: StoryGraph
    report: BuildReport

    @property
    def warnings(self) -> list[BuildWarning]:
        """Non-fatal findings in discovery order."""
        return list(self.report.warnings)


def load_document(
    raw_text: str,
    *,
    default_start: str = DEFAULT_START,
    check_reachability: bool = True,
) -> BuildResult:
    """Parse and build a story document.

    Raises:
        MalformedDocument: If the document structure is invalid.
        DuplicatePassage: If two passages share a name.
        NoStartPassage: If the start passage cannot be resolved.
    """
    records = parse_document(raw_text)
    return build_story(
        records, default_start=default_start, check_reachability=check_reachability
    )


def build_story(
    records: list[PassageRecord],
    *,
    default_start: str = DEFAULT_START,
    check_reachability: bool = True,
) -> BuildResult:
    """Build a StoryGraph from parsed passage records.

    Args:
        records: Passages in document order, special passages included.
        default_start: Start passage name used when nothing else declares one.
        check_reachability: Report passages unreachable from the start.

    Returns:
        The graph and its warnings.

    Raises:
        MalformedDocument: If StoryData is not a JSON object.
        DuplicatePassage: If two passages share a name.
        NoStartPassage: If the start passage cannot be resolved.
    """
    _check_unique_names(records)

    report = BuildReport()
    metadata = read_story_metadata(records)
    if metadata.title is None:
        log.debug("story_untitled")

    playable: list[PassageRecord] = []
    for record in records:
        if record.name in (STORY_TITLE, STORY_DATA):
            continue
        if record.name in IGNORED_PASSAGE_NAMES or IGNORED_TAGS.intersection(record.tags):
            report.add(
                "IGNORED_PASSAGE",
                "Script and special passages are not played.",
                passage=record.name,
            )
            continue
        playable.append(record)

    start_name = resolve_start(playable, metadata, default_start=default_start)
    index = {record.name: position for position, record in enumerate(playable)}

    passages: list[Passage] = []
    for position, record in enumerate(playable):
        links = _passage_links(record, report)
        choices: list[Choice] = []
        for choice_index, link in enumerate(links):
            target_index = index.get(link.target)
            if target_index is None:
                report.add(
                    "DANGLING_CHOICE",
                    "Choice leads to a passage that does not exist.",
                    passage=record.name,
                    choice=str(choice_index),
                    target=link.target,
                )
            choices.append(
                Choice(
                    index=choice_index,
                    label=link.label,
                    target=link.target,
                    target_index=target_index,
                    offset=link.start,
                )
            )
        passages.append(
            Passage(
                index=position,
                name=record.name,
                text=record.text,
                tags=record.tags,
                choices=tuple(choices),
                links=tuple(links),
                line=record.line,
            )
        )

    graph = StoryGraph(passages=tuple(passages), start_index=index[start_name], metadata=metadata)

    if check_reachability:
        reachable = graph.reachable()
        for passage in graph.passages:
            if passage.index not in reachable:
                report.add(
                    "UNREACHABLE_PASSAGE",
                    "Passage cannot be reached from the start passage.",
                    passage=passage.name,
                )

    log.info(
        "story_built",
        title=metadata.title,
        passages=len(graph),
        start=start_name,
        warnings=len(report.warnings),
    )
    return BuildResult(graph=graph, report=report)


def _check_unique_names(records: list[PassageRecord]) -> None:
    lines_by_name: dict[str, list[int]] = {}
    for record in records:
        lines_by_name.setdefault(record.name, []).append(record.line)
    for record in records:
        lines = lines_by_name[record.name]
        if len(lines) > 1:
            raise DuplicatePassage(name=record.name, lines=lines)


def _passage_links(record: PassageRecord, report: BuildReport) -> list[LinkRecord]:
    try:
        return extract_links(record.text, record.name)
    except MalformedLinkError as e:
        report.add(
            "MALFORMED_LINK",
            f"{e.malformed.reason}; passage has no choices.",
            passage=record.name,
            offset=str(e.malformed.offset),
            snippet=e.malformed.snippet,
        )
        return []


def resolve_start(
    records: list[PassageRecord],
    metadata: StoryMetadata,
    *,
    default_start: str = DEFAULT_START,
) -> str:
    """Resolve the start passage name.

    Raises:
        NoStartPassage: If no unambiguous start passage exists.
    """
    names = [record.name for record in records]

    if metadata.start is not None:
        if metadata.start not in names:
            raise NoStartPassage(
                reason=(
                    f"StoryData declares start passage '{metadata.start}', "
                    "which does not exist"
                ),
                declared=metadata.start,
                available=names,
            )
        return metadata.start

    tagged = [record.name for record in records if START_TAG in record.tags]
    if len(tagged) == 1:
        return tagged[0]
    if len(tagged) > 1:
        raise NoStartPassage(
            reason="ambiguous start, several passages are tagged 'start': " + ", ".join(tagged),
            available=names,
        )

    if default_start in names:
        return default_start

    raise NoStartPassage(
        reason=f"no passage is tagged 'start' and no passage is named '{default_start}'",
        declared=default_start,
        available=names,
    )
