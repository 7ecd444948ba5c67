"""Story engine: the request -> render contract used by chat transports.

The engine holds a table of loaded stories (story_id -> StoryGraph) and a
SessionManager. Every request resolves the story's graph once, at its start,
and works against that graph until it returns. Reloading a story builds the
new graph first and then swaps the table entry, so a request never sees a
half-built story and a failed reload leaves the old graph in place.

Example::

    engine = StoryEngine()
    loaded = engine.load_story(text)
    view = engine.render_current(loaded.handle, "alice")
    view = engine.choose(loaded.handle, "alice", 0)
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tweeplay.config import EngineConfig
from tweeplay.library.store import StoryLibraryError
from tweeplay.observability.logging import get_logger
from tweeplay.play.renderer import RenderedView, render_passage
from tweeplay.play.sessions import SessionManager
from tweeplay.story.builder import load_document
from tweeplay.story.diagnostics import format_warning
from tweeplay.story.errors import StoryBuildError, UnknownStoryError

if TYPE_CHECKING:
    from collections.abc import Callable

    from tweeplay.library.store import StoryLibrary
    from tweeplay.story.diagnostics import BuildReport, BuildWarning
    from tweeplay.story.graph import Passage, StoryGraph

log = get_logger(__name__)


@dataclass(frozen=True)
class StoryHandle:
    """Reference to a loaded story, passed into every engine call.

    Attributes:
        story_id: Registry key of the story.
        title: Story title, if the document declares one.
    """

    story_id: str
    title: str | None = None


@dataclass(frozen=True)
class LoadResult:
    """Outcome of a successful load or reload."""

    handle: StoryHandle
    report: BuildReport
    replaced: bool = False

    @property
    def warnings(self) -> list[BuildWarning]:
        return list(self.report.warnings)


@dataclass
class _Registry:
    graphs: dict[str, StoryGraph] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock)


class StoryEngine:
    """Loads stories and serves navigation requests for many users.

    Safe to call from many threads at once. Requests for the same
    (story, user) pair are serialized; everything else runs in parallel.

    Args:
        config: Engine configuration. Defaults to ``EngineConfig()``.
        clock: Monotonic time source, in seconds.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or EngineConfig()
        self._clock = clock
        self._registry = _Registry()
        self.sessions = SessionManager(busy_policy=self.config.busy_policy, clock=clock)
        self._sweep_lock = threading.Lock()
        self._last_sweep = clock()

    # -- Story registry --------------------------------------------------------

    def load_story(self, raw_text: str, story_id: str | None = None) -> LoadResult:
        """Build a story document and register it.

        Loading under an id that is already registered replaces that story,
        exactly like ``reload_story``.

        Args:
            raw_text: Twee document.
            story_id: Registry key. Generated when omitted.

        Returns:
            Handle plus non-fatal warnings.

        Raises:
            StoryBuildError: If the document cannot be built. Nothing is
                registered or replaced.
        """
        story_id = story_id or uuid.uuid4().hex[:12]
        result = load_document(raw_text, default_start=self.config.default_start)
        graph = result.graph

        with self._registry.lock:
            replaced = story_id in self._registry.graphs
            self._registry.graphs[story_id] = graph

        if replaced:
            self.sessions.invalidate_story(story_id)

        self._log_report(story_id, result.report)
        log.info(
            "story_reloaded" if replaced else "story_loaded",
            story_id=story_id,
            title=graph.title,
            passages=len(graph),
            warnings=len(result.report.warnings),
        )
        return LoadResult(
            handle=StoryHandle(story_id=story_id, title=graph.title),
            report=result.report,
            replaced=replaced,
        )

    def reload_story(self, handle: StoryHandle | str, raw_text: str) -> LoadResult:
        """Replace a loaded story with a new build of *raw_text*.

        The new graph is swapped in atomically. Sessions of the story are
        discarded once any in-flight request on them has finished.

        Raises:
            UnknownStoryError: If the story is not loaded.
            StoryBuildError: If the document cannot be built. The old graph
                stays active.
        """
        story_id = self._story_id(handle)
        self._graph(story_id)
        try:
            return self.load_story(raw_text, story_id=story_id)
        except StoryBuildError as e:
            log.warning("story_reload_failed", story_id=story_id, error=str(e))
            raise

    def unload_story(self, handle: StoryHandle | str) -> None:
        """Remove a story and all of its sessions.

        Raises:
            UnknownStoryError: If the story is not loaded.
        """
        story_id = self._story_id(handle)
        with self._registry.lock:
            if story_id not in self._registry.graphs:
                raise UnknownStoryError(story_id, sorted(self._registry.graphs))
            del self._registry.graphs[story_id]
        self.sessions.invalidate_story(story_id)
        log.info("story_unloaded", story_id=story_id)

    def list_stories(self) -> list[StoryHandle]:
        """Handles of all loaded stories, sorted by id."""
        with self._registry.lock:
            items = sorted(self._registry.graphs.items())
        return [StoryHandle(story_id=story_id, title=graph.title) for story_id, graph in items]

    def get_story(self, story_id: str) -> StoryGraph:
        """Return the active graph of a story.

        Raises:
            UnknownStoryError: If the story is not loaded.
        """
        return self._graph(story_id)

    def load_library(self, library: StoryLibrary) -> list[StoryHandle]:
        """Load every story stored in *library* under its library id.

        Stories that fail to load are logged and skipped.
        """
        handles: list[StoryHandle] = []
        for stored in library.list_stories():
            try:
                content = library.load_content(stored.id)
                result = self.load_story(content, story_id=str(stored.id))
            except (StoryBuildError, StoryLibraryError) as e:
                log.warning(
                    "library_story_skipped",
                    story_id=stored.id,
                    name=stored.name,
                    error=str(e),
                )
                continue
            handles.append(result.handle)
        log.info("library_loaded", stories=len(handles))
        return handles

    # -- Navigation ------------------------------------------------------------

    def render_current(self, handle: StoryHandle | str, user_id: str) -> RenderedView:
        """Render the user's current passage.

        Creates a session at the start passage when the user has none.

        Raises:
            UnknownStoryError: If the story is not loaded.
        """
        self._maybe_sweep()
        story_id = self._story_id(handle)
        graph = self._graph(story_id)
        session = self.sessions.get_or_create(story_id, user_id, graph)
        return self._render(story_id, graph, graph.passage(session.current_passage))

    def choose(self, handle: StoryHandle | str, user_id: str, choice_index: int) -> RenderedView:
        """Follow choice *choice_index* and render the passage it leads to.

        A failed choice leaves the session where it was.

        Raises:
            UnknownStoryError: If the story is not loaded.
            InvalidChoiceIndex: If the index is out of range.
            DanglingTarget: If the choice leads to a missing passage.
            SessionBusy: If another request holds the session and the busy
                policy is ``reject``.
        """
        self._maybe_sweep()
        story_id = self._story_id(handle)
        graph = self._graph(story_id)
        session = self.sessions.advance(
            story_id,
            user_id,
            choice_index,
            graph,
            end_at_ending=self.config.end_sessions_at_endings,
        )
        return self._render(story_id, graph, graph.passage(session.current_passage))

    def reset_session(self, handle: StoryHandle | str, user_id: str) -> bool:
        """Discard the user's session so the next request starts over.

        Returns:
            True if a session existed.

        Raises:
            UnknownStoryError: If the story is not loaded.
        """
        story_id = self._story_id(handle)
        self._graph(story_id)
        return self.sessions.reset(story_id, user_id)

    def evict_idle(self, max_idle: float | None = None) -> int:
        """Remove sessions idle for longer than *max_idle* seconds.

        Args:
            max_idle: Idle limit. Defaults to the configured ``idle_timeout``.

        Returns:
            Number of sessions removed.

        Raises:
            ValueError: If no limit is given and none is configured.
        """
        if max_idle is None:
            max_idle = self.config.idle_timeout
        if max_idle is None:
            raise ValueError("max_idle is required when idle_timeout is not configured")
        return self.sessions.evict_idle(max_idle)

    # -- Internals -------------------------------------------------------------

    @staticmethod
    def _story_id(handle: StoryHandle | str) -> str:
        return handle.story_id if isinstance(handle, StoryHandle) else handle

    def _graph(self, story_id: str) -> StoryGraph:
        with self._registry.lock:
            graph = self._registry.graphs.get(story_id)
            if graph is None:
                raise UnknownStoryError(story_id, sorted(self._registry.graphs))
            return graph

    def _render(self, story_id: str, graph: StoryGraph, passage: Passage) -> RenderedView:
        return render_passage(
            passage,
            story_id=story_id,
            story_title=graph.title,
            dangling_choices=self.config.dangling_choices,
            link_template=self.config.link_template,
        )

    def _maybe_sweep(self) -> None:
        """Evict idle sessions at most once per sweep interval."""
        if self.config.idle_timeout is None:
            return
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            now = self._clock()
            if now - self._last_sweep < self.config.sweep_interval:
                return
            self._last_sweep = now
        finally:
            self._sweep_lock.release()
        self.sessions.evict_idle(self.config.idle_timeout)

    @staticmethod
    def _log_report(story_id: str, report: BuildReport) -> None:
        for warning in report.warnings:
            log.warning(
                "story_warning",
                story_id=story_id,
                code=warning.code,
                passage=warning.passage,
                detail=format_warning(warning),
            )
