"""Transport-agnostic projection of a passage into a view.

Rendering is pure: it reads the immutable graph and never touches sessions.
Choice validity comes from the flag computed at build time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field

from tweeplay.story.links import strip_links

if TYPE_CHECKING:
    from tweeplay.config import DanglingPolicy
    from tweeplay.story.graph import Passage

ChoiceStatus = Literal["valid", "dangling"]


class ChoiceView(BaseModel):
    """One choice as presented to the player.

    Attributes:
        index: Authored index, the value to pass to ``choose``.
        label: Text shown to the player.
        target: Destination passage name.
        status: ``dangling`` when the destination does not exist.
    """

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    label: str
    target: str
    status: ChoiceStatus = "valid"

    @property
    def available(self) -> bool:
        return self.status == "valid"


class RenderedView(BaseModel):
    """Presentation payload for one request.

    Serializable with ``model_dump()`` / ``model_dump_json()`` for any
    transport.
    """

    model_config = ConfigDict(frozen=True)

    story_id: str
    title: str = Field(description="Passage name")
    text: str = Field(description="Body text with link markup replaced by labels")
    choices: list[ChoiceView] = Field(default_factory=list)
    is_ending: bool = False
    story_title: str | None = None

    def choice(self, index: int) -> ChoiceView | None:
        """Return the choice with the given authored index, if it is shown."""
        for choice in self.choices:
            if choice.index == index:
                return choice
        return None


def render_passage(
    passage: Passage,
    *,
    story_id: str,
    story_title: str | None = None,
    dangling_choices: DanglingPolicy = "show",
    link_template: str = "{label}",
) -> RenderedView:
    """Project a passage into a RenderedView.

    Args:
        passage: Passage to render.
        story_id: Identifier of the story the passage belongs to.
        story_title: Story title, if the document has one.
        dangling_choices: ``show`` keeps dangling choices in the list with
            status ``dangling``; ``hide`` leaves them out. Indices are never
            renumbered.
        link_template: Replacement for each link span, formatted with ``label``.
    """
    choices = [
        ChoiceView(
            index=choice.index,
            label=choice.label,
            target=choice.target,
            status="dangling" if choice.dangling else "valid",
        )
        for choice in passage.choices
        if not (choice.dangling and dangling_choices == "hide")
    ]
    return RenderedView(
        story_id=story_id,
        title=passage.name,
        text=strip_links(passage.text, passage.links, link_template),
        choices=choices,
        is_ending=passage.is_ending,
        story_title=story_title,
    )
