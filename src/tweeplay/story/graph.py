"""Immutable story graph.

Passages are addressed by position: every passage has an index, the graph
keeps a name -> index table, and choices store the index of their target
(``None`` when the target passage does not exist). Traversals walk indices,
so cyclic stories never create reference cycles between passage objects.

A StoryGraph is never mutated after it is built. Reloading a story builds a
new graph.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    from tweeplay.story.links import LinkRecord
    from tweeplay.story.parser import StoryMetadata


@dataclass(frozen=True, slots=True)
class Choice:
    """An authored choice (edge) leaving a passage.

    Attributes:
        index: Position among the passage's choices, in source order.
        label: Text shown to the player.
        target: Destination passage name as written.
        target_index: Index of the destination passage, None if it is missing.
        offset: Offset of the link in the passage text.
    """

    index: int
    label: str
    target: str
    target_index: int | None
    offset: int = 0

    @property
    def dangling(self) -> bool:
        """True if the destination passage does not exist."""
        return self.target_index is None


@dataclass(frozen=True, slots=True)
class Passage:
    """A story passage (node).

    Attributes:
        index: Position of the passage in the graph.
        name: Unique, case-sensitive passage name.
        text: Body text with link markup.
        tags: Passage tags.
        choices: Outgoing choices in source order.
        links: Link spans in the body text, parallel to ``choices``.
        line: Header line number in the source document.
    """

    index: int
    name: str
    text: str
    tags: tuple[str, ...] = ()
    choices: tuple[Choice, ...] = ()
    links: tuple[LinkRecord, ...] = ()
    line: int = 0

    @property
    def is_ending(self) -> bool:
        """A passage without choices ends the story."""
        return not self.choices


@dataclass(frozen=True, slots=True)
class StoryGraph:
    """A validated, read-only story.

    Attributes:
        passages: All playable passages, indexed by ``Passage.index``.
        start_index: Index of the start passage.
        metadata: Title, IFID and format information from the document.
    """

    passages: tuple[Passage, ...]
    start_index: int
    metadata: StoryMetadata
    _index: Mapping[str, int] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        index = {passage.name: passage.index for passage in self.passages}
        object.__setattr__(self, "_index", MappingProxyType(index))

    def __len__(self) -> int:
        return len(self.passages)

    def __iter__(self) -> Iterator[Passage]:
        return iter(self.passages)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    @property
    def title(self) -> str | None:
        """Story title from the StoryTitle passage."""
        return self.metadata.title

    @property
    def start(self) -> Passage:
        """The start passage."""
        return self.passages[self.start_index]

    @property
    def names(self) -> list[str]:
        """Passage names in document order."""
        return [passage.name for passage in self.passages]

    def index_of(self, name: str) -> int | None:
        """Return the index of the named passage, or None."""
        return self._index.get(name)

    def get(self, name: str) -> Passage | None:
        """Return the named passage, or None."""
        index = self._index.get(name)
        return None if index is None else self.passages[index]

    def passage(self, name: str) -> Passage:
        """Return the named passage.

        Raises:
            KeyError: If no passage has that name.
        """
        passage = self.get(name)
        if passage is None:
            raise KeyError(name)
        return passage

    def successors(self, index: int) -> list[int]:
        """Indices of passages directly reachable from passage *index*."""
        return [
            choice.target_index
            for choice in self.passages[index].choices
            if choice.target_index is not None
        ]

    def edges(self) -> list[tuple[int, int]]:
        """All non-dangling edges as (source index, target index) pairs."""
        return [
            (passage.index, target)
            for passage in self.passages
            for target in self.successors(passage.index)
        ]

    def dangling_choices(self) -> list[tuple[Passage, Choice]]:
        """Every choice whose target passage is missing."""
        return [
            (passage, choice)
            for passage in self.passages
            for choice in passage.choices
            if choice.dangling
        ]

    def reachable(self, from_index: int | None = None) -> set[int]:
        """Breadth-first set of passage indices reachable from *from_index*.

        Defaults to the start passage.
        """
        origin = self.start_index if from_index is None else from_index
        seen = {origin}
        queue = deque([origin])
        while queue:
            current = queue.popleft()
            for target in self.successors(current):
                if target not in seen:
                    seen.add(target)
                    queue.append(target)
        return seen
