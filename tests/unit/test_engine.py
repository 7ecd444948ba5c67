"""Tests for the story engine request -> render contract."""

from __future__ import annotations

import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

import pytest

from tweeplay.config import EngineConfig
from tweeplay.library import StoryLibrary
from tweeplay.play.engine import StoryEngine, StoryHandle
from tweeplay.story.errors import (
    DanglingTarget,
    DuplicatePassage,
    InvalidChoiceIndex,
    NoStartPassage,
    SessionBusy,
    UnknownStoryError,
)

if TYPE_CHECKING:
    from pathlib import Path

    from tweeplay.story.graph import StoryGraph


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


# --- Walkthrough ---


def test_cave_walkthrough(engine: StoryEngine, cave_story: str) -> None:
    """Load, render, choose, and hit the dangling choice."""
    loaded = engine.load_story(cave_story)
    assert len(loaded.warnings) == 1

    view = engine.render_current(loaded.handle, "alice")
    assert view.title == "Start"
    assert [(c.label, c.status) for c in view.choices] == [
        ("North", "valid"),
        ("South", "dangling"),
    ]

    view = engine.choose(loaded.handle, "alice", 0)
    assert view.title == "Cave"
    assert view.is_ending

    engine.reset_session(loaded.handle, "alice")
    before = engine.render_current(loaded.handle, "alice")
    with pytest.raises(DanglingTarget):
        engine.choose(loaded.handle, "alice", 1)
    assert engine.render_current(loaded.handle, "alice") == before


def test_invalid_index_is_a_no_op(engine: StoryEngine, lighthouse_story: str) -> None:
    handle = engine.load_story(lighthouse_story).handle
    before = engine.render_current(handle, "alice")

    with pytest.raises(InvalidChoiceIndex):
        engine.choose(handle, "alice", 2)

    assert engine.render_current(handle, "alice") == before


def test_handles_and_ids_are_interchangeable(engine: StoryEngine, lighthouse_story: str) -> None:
    loaded = engine.load_story(lighthouse_story, story_id="lighthouse")

    assert loaded.handle == StoryHandle(story_id="lighthouse", title="The Lighthouse")
    assert engine.choose("lighthouse", "alice", 0).title == "Cliff"
    assert engine.render_current(loaded.handle, "alice").title == "Cliff"


def test_users_are_independent(engine: StoryEngine, lighthouse_story: str) -> None:
    handle = engine.load_story(lighthouse_story).handle

    engine.choose(handle, "alice", 0)

    assert engine.render_current(handle, "bob").title == "Shore"
    assert engine.render_current(handle, "alice").title == "Cliff"


# --- Endings ---


def test_ending_ends_session(engine: StoryEngine, lighthouse_story: str) -> None:
    """After an ending the next request starts over."""
    handle = engine.load_story(lighthouse_story).handle

    view = engine.choose(handle, "alice", 1)

    assert view.title == "Tide"
    assert view.is_ending
    assert engine.render_current(handle, "alice").title == "Shore"


def test_ending_can_keep_session(lighthouse_story: str) -> None:
    engine = StoryEngine(EngineConfig(end_sessions_at_endings=False))
    handle = engine.load_story(lighthouse_story).handle

    engine.choose(handle, "alice", 1)

    assert engine.render_current(handle, "alice").title == "Tide"
    with pytest.raises(InvalidChoiceIndex):
        engine.choose(handle, "alice", 0)


def test_choice_after_ending_is_rejected(engine: StoryEngine, lighthouse_story: str) -> None:
    """A closed session never restarts and moves on a choice."""
    handle = engine.load_story(lighthouse_story).handle
    assert engine.choose(handle, "alice", 1).choices == []

    with pytest.raises(InvalidChoiceIndex) as exc_info:
        engine.choose(handle, "alice", 0)

    assert exc_info.value.choice_count == 0
    assert exc_info.value.passage == "Tide"
    assert engine.sessions.get(handle.story_id, "alice") is None
    assert engine.render_current(handle, "alice").title == "Shore"
    assert engine.choose(handle, "alice", 0).title == "Cliff"


def test_reset_after_ending_allows_choices(engine: StoryEngine, lighthouse_story: str) -> None:
    handle = engine.load_story(lighthouse_story).handle
    engine.choose(handle, "alice", 1)

    engine.reset_session(handle, "alice")

    assert engine.choose(handle, "alice", 0).title == "Cliff"


@pytest.mark.parametrize("index", [2, 99])
def test_failed_first_choice_creates_no_session(
    engine: StoryEngine, lighthouse_story: str, index: int
) -> None:
    handle = engine.load_story(lighthouse_story).handle

    with pytest.raises(InvalidChoiceIndex):
        engine.choose(handle, "bob", index)

    assert engine.sessions.get(handle.story_id, "bob") is None
    assert len(engine.sessions) == 0


def test_dangling_first_choice_creates_no_session(engine: StoryEngine, cave_story: str) -> None:
    handle = engine.load_story(cave_story).handle

    with pytest.raises(DanglingTarget):
        engine.choose(handle, "bob", 1)

    assert engine.sessions.get(handle.story_id, "bob") is None


# --- Configuration ---


def test_hide_dangling_choices(cave_story: str) -> None:
    engine = StoryEngine(EngineConfig(dangling_choices="hide"))
    handle = engine.load_story(cave_story).handle

    view = engine.render_current(handle, "alice")

    assert [c.label for c in view.choices] == ["North"]
    with pytest.raises(DanglingTarget):
        engine.choose(handle, "alice", 1)


def test_link_template(cave_story: str) -> None:
    engine = StoryEngine(EngineConfig(link_template="`{label}`"))
    handle = engine.load_story(cave_story).handle

    assert engine.render_current(handle, "alice").text == "Go `North` or `South`"


def test_reject_policy(lighthouse_story: str) -> None:
    engine = StoryEngine(EngineConfig(busy_policy="reject"))
    handle = engine.load_story(lighthouse_story, story_id="lh").handle
    engine.render_current(handle, "alice")

    with engine.sessions._locked(("lh", "alice")), pytest.raises(SessionBusy):
        engine.choose(handle, "alice", 0)


# --- Story registry ---


def test_build_errors_register_nothing(engine: StoryEngine) -> None:
    with pytest.raises(NoStartPassage):
        engine.load_story(":: Intro\nx", story_id="broken")

    assert engine.list_stories() == []
    with pytest.raises(UnknownStoryError):
        engine.render_current("broken", "alice")


def test_unknown_story(engine: StoryEngine, cave_story: str) -> None:
    engine.load_story(cave_story, story_id="cave")

    with pytest.raises(UnknownStoryError) as exc_info:
        engine.choose("caves", "alice", 0)

    assert exc_info.value.available == ["cave"]


def test_list_and_unload(engine: StoryEngine, cave_story: str, lighthouse_story: str) -> None:
    engine.load_story(lighthouse_story, story_id="b")
    engine.load_story(cave_story, story_id="a")
    engine.render_current("b", "alice")

    assert [(h.story_id, h.title) for h in engine.list_stories()] == [
        ("a", None),
        ("b", "The Lighthouse"),
    ]

    engine.unload_story("b")

    assert [h.story_id for h in engine.list_stories()] == ["a"]
    assert engine.sessions.sessions("b") == []
    with pytest.raises(UnknownStoryError):
        engine.unload_story("b")


def test_generated_ids_are_unique(engine: StoryEngine, cave_story: str) -> None:
    first = engine.load_story(cave_story).handle
    second = engine.load_story(cave_story).handle

    assert first.story_id != second.story_id
    assert len(engine.list_stories()) == 2


def test_reload_swaps_graph_and_invalidates_sessions(cave_story: str) -> None:
    engine = StoryEngine(EngineConfig(end_sessions_at_endings=False))
    handle = engine.load_story(cave_story, story_id="cave").handle
    engine.choose(handle, "alice", 0)
    fixed = cave_story + "\n:: South\nA warm beach.\n"

    result = engine.reload_story(handle, fixed)

    assert result.replaced
    assert result.warnings == []
    view = engine.render_current(handle, "alice")
    assert view.title == "Start"
    assert [c.status for c in view.choices] == ["valid", "valid"]
    assert engine.choose(handle, "alice", 1).title == "South"


def test_failed_reload_keeps_old_graph(engine: StoryEngine, lighthouse_story: str) -> None:
    handle = engine.load_story(lighthouse_story, story_id="lh").handle
    engine.choose(handle, "bob", 0)
    old_graph = engine.get_story("lh")

    with pytest.raises(DuplicatePassage):
        engine.reload_story(handle, lighthouse_story + "\n:: Cliff\nAgain.\n")

    assert engine.get_story("lh") is old_graph
    assert engine.render_current(handle, "bob").title == "Cliff"


def test_reload_unknown_story(engine: StoryEngine, cave_story: str) -> None:
    with pytest.raises(UnknownStoryError):
        engine.reload_story("missing", cave_story)


# --- Idle eviction ---


def test_evict_idle(lighthouse_story: str) -> None:
    clock = FakeClock()
    engine = StoryEngine(clock=clock)
    handle = engine.load_story(lighthouse_story).handle
    engine.choose(handle, "alice", 0)
    clock.now += 500

    assert engine.evict_idle(300) == 1
    assert engine.render_current(handle, "alice").title == "Shore"


def test_evict_idle_requires_a_limit(engine: StoryEngine) -> None:
    with pytest.raises(ValueError, match="max_idle"):
        engine.evict_idle()


def test_lazy_sweep(lighthouse_story: str) -> None:
    """Requests sweep idle sessions at most once per interval."""
    clock = FakeClock()
    engine = StoryEngine(EngineConfig(idle_timeout=60, sweep_interval=30), clock=clock)
    handle = engine.load_story(lighthouse_story).handle
    engine.choose(handle, "alice", 0)

    clock.now += 61
    engine.render_current(handle, "bob")  # sweeps, alice is idle

    assert engine.sessions.get(handle.story_id, "alice") is None
    assert engine.sessions.get(handle.story_id, "bob") is not None


# --- Library ---


def test_load_library_skips_broken_stories(
    tmp_path: Path, engine: StoryEngine, lighthouse_story: str
) -> None:
    with StoryLibrary(tmp_path) as library:
        stored = library.add_story(lighthouse_story)
        broken = library.add_story(lighthouse_story.replace("Lighthouse", "Second"))
        (library.stories_dir / broken.filename).write_text(":: Nothing\n", encoding="utf-8")

        handles = engine.load_library(library)

    assert handles == [StoryHandle(story_id=str(stored.id), title="The Lighthouse")]


# --- Concurrency ---


def test_concurrent_choices_on_one_session_are_serialized(engine: StoryEngine) -> None:
    """Every advance applies to the state left by the previous one."""
    document = ":: Start\n[[Next->Step]]\n\n:: Step\n[[Next->Start]]"
    handle = engine.load_story(document).handle
    rounds = 200

    with ThreadPoolExecutor(max_workers=8) as pool:
        views = list(pool.map(lambda _: engine.choose(handle, "alice", 0), range(rounds)))

    # The session alternates strictly; an even number of moves returns to Start
    assert [v.title for v in views].count("Step") == rounds // 2
    assert engine.render_current(handle, "alice").title == "Start"


def test_two_concurrent_choices_follow_one_order(
    engine: StoryEngine, lighthouse_story: str
) -> None:
    """Choices A and B submitted together equal one total order, never a hybrid."""
    handle = engine.load_story(lighthouse_story).handle
    barrier = threading.Barrier(2)
    outcomes: list[str] = []
    errors: list[Exception] = []

    def submit(index: int) -> None:
        barrier.wait()
        try:
            outcomes.append(engine.choose(handle, "alice", index).title)
        except InvalidChoiceIndex as e:
            errors.append(e)

    threads = [threading.Thread(target=submit, args=(i,)) for i in (0, 1)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    final = engine.render_current(handle, "alice").title
    # 0 then 1: Shore -> Cliff -> Shore.  1 then 0: Shore -> Tide, then 0 fails at the ending.
    assert (sorted(outcomes), len(errors), final) in [
        (["Cliff", "Shore"], 0, "Shore"),
        (["Tide"], 1, "Shore"),
    ]


def test_different_users_run_in_parallel(engine: StoryEngine, lighthouse_story: str) -> None:
    handle = engine.load_story(lighthouse_story).handle
    users = [f"user-{n}" for n in range(50)]

    with ThreadPoolExecutor(max_workers=10) as pool:
        views = list(pool.map(lambda user: engine.choose(handle, user, 0), users))

    assert {v.title for v in views} == {"Cliff"}
    assert len(engine.sessions.sessions(handle.story_id)) == 50


def test_reload_during_requests_does_not_crash(engine: StoryEngine, lighthouse_story: str) -> None:
    """In-flight requests finish against the graph they started with."""
    handle = engine.load_story(lighthouse_story, story_id="lh").handle
    stop = threading.Event()
    failures: list[BaseException] = []

    def play(user: str) -> None:
        while not stop.is_set():
            try:
                engine.render_current(handle, user)
                engine.choose(handle, user, 0)
            except InvalidChoiceIndex:
                pass  # Lamp Room has no choices
            except BaseException as e:  # noqa: BLE001 - collected for the assertion
                failures.append(e)
                return

    players = [threading.Thread(target=play, args=(f"u{n}",)) for n in range(4)]
    for player in players:
        player.start()
    for _ in range(20):
        engine.reload_story(handle, lighthouse_story)
    stop.set()
    for player in players:
        player.join(timeout=5)

    assert failures == []


def test_queued_choice_renders_graph_it_started_with(
    engine: StoryEngine, lighthouse_story: str, monkeypatch: pytest.MonkeyPatch
) -> None:
    """A reload landing while a choice waits on its session keeps the old graph."""
    handle = engine.load_story(lighthouse_story, story_id="lh").handle
    engine.render_current(handle, "alice")
    old_graph = engine.get_story("lh")
    renamed = lighthouse_story.replace("Cliff", "Bluff")

    captured = threading.Event()
    lookup = engine._graph

    def spy_graph(story_id: str) -> StoryGraph:
        graph = lookup(story_id)
        if threading.current_thread().name == "chooser":
            captured.set()
        return graph

    monkeypatch.setattr(engine, "_graph", spy_graph)
    entered = threading.Event()
    release = threading.Event()
    views: list[str] = []

    def hold() -> None:
        with engine.sessions._locked(("lh", "alice")):
            entered.set()
            release.wait(timeout=5)

    holder = threading.Thread(target=hold)
    holder.start()
    assert entered.wait(timeout=5)
    chooser = threading.Thread(
        target=lambda: views.append(engine.choose(handle, "alice", 0).title), name="chooser"
    )
    chooser.start()
    assert captured.wait(timeout=5)

    # The swap happens at once; invalidating sessions waits for the held key
    reloader = threading.Thread(target=engine.reload_story, args=(handle, renamed))
    reloader.start()
    for _ in range(500):
        if engine.get_story("lh") is not old_graph:
            break
        time.sleep(0.01)
    assert engine.get_story("lh").get("Bluff") is not None

    release.set()
    for thread in (holder, chooser, reloader):
        thread.join(timeout=5)

    assert views == ["Cliff"]
    assert engine.render_current(handle, "alice").title == "Shore"


@pytest.mark.asyncio
async def test_cancelled_request_releases_session_lock(
    engine: StoryEngine, lighthouse_story: str
) -> None:
    """Abandoning a request from an event loop never leaves the key locked."""
    handle = engine.load_story(lighthouse_story, story_id="lh").handle
    engine.render_current(handle, "alice")
    slot = engine.sessions._slots[("lh", "alice")]
    entered = threading.Event()
    release = threading.Event()

    def slow_hold() -> None:
        with engine.sessions._locked(("lh", "alice")):
            entered.set()
            release.wait(timeout=5)

    holder = asyncio.create_task(asyncio.to_thread(slow_hold))
    await asyncio.to_thread(entered.wait, 5)
    request = asyncio.create_task(asyncio.to_thread(engine.choose, handle, "alice", 0))
    await asyncio.sleep(0.05)
    request.cancel()
    release.set()

    with pytest.raises(asyncio.CancelledError):
        await request
    await holder

    # The worker thread still finishes its advance, then releases the key
    for _ in range(200):
        session = engine.sessions.sessions("lh")[0]
        if session.current_passage == "Cliff" and not slot.lock.locked():
            break
        await asyncio.sleep(0.01)

    assert session.current_passage == "Cliff"
    assert not slot.lock.locked()
    view = await asyncio.to_thread(engine.render_current, handle, "alice")
    assert view.title == "Cliff"
