"""Per-user navigation state.

The SessionManager is the only mutable structure shared between request
handlers. It is partitioned per (story_id, user_id) key: every key owns a
slot with its own lock, and a registry lock only guards the key -> slot
table. Requests for different keys never wait on each other.

Lock order is always slot lock, then registry lock. The registry lock is
never held while waiting for a slot lock.

Sessions handed to callers are snapshots. Mutating one has no effect on
the registry.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from tweeplay.observability.logging import get_logger
from tweeplay.story.errors import DanglingTarget, InvalidChoiceIndex, SessionBusy

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from tweeplay.config import BusyPolicy
    from tweeplay.story.graph import Passage, StoryGraph

log = get_logger(__name__)

SessionKey = tuple[str, str]


@dataclass
class Session:
    """A user's position in one story.

    Attributes:
        story_id: Story the session belongs to.
        user_id: Player identity, opaque to the engine.
        current_passage: Name of the passage the player is on.
        created_at: Clock reading when the session was created.
        last_activity: Clock reading of the creation or the last successful
            move. Rendering does not count as activity.
    """

    story_id: str
    user_id: str
    current_passage: str
    created_at: float
    last_activity: float

    @property
    def key(self) -> SessionKey:
        return (self.story_id, self.user_id)


class _Slot:
    """Lock and state for one session key.

    ``evicted`` is set, under the slot lock, when the slot is removed from
    the registry. A request that was waiting on the lock of an evicted slot
    looks the key up again.

    ``ended_passage`` names the ending a session finished on when it was
    closed there. Until the next session starts, choices are resolved
    against that ending, which has none.
    """

    __slots__ = ("ended_at", "ended_passage", "evicted", "lock", "session")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.session: Session | None = None
        self.evicted = False
        self.ended_passage: str | None = None
        self.ended_at = 0.0

    @property
    def empty(self) -> bool:
        return self.session is None and self.ended_passage is None


class SessionManager:
    """Process-wide registry of sessions keyed by (story_id, user_id).

    Args:
        busy_policy: ``queue`` waits for a concurrent request on the same key;
            ``reject`` raises SessionBusy instead.
        clock: Monotonic time source, in seconds.
    """

    def __init__(
        self,
        busy_policy: BusyPolicy = "queue",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._busy_policy = busy_policy
        self._clock = clock
        self._slots: dict[SessionKey, _Slot] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return sum(1 for slot in self._slots.values() if slot.session is not None)

    @property
    def busy_policy(self) -> BusyPolicy:
        return self._busy_policy

    # -- Locking ---------------------------------------------------------------

    @contextmanager
    def _locked(
        self,
        key: SessionKey,
        *,
        create: bool = True,
        wait: bool | None = None,
    ) -> Iterator[_Slot | None]:
        """Hold the slot lock for *key*.

        Args:
            key: Session key.
            create: Create an empty slot when the key is unknown. When False,
                yields None for unknown keys.
            wait: Block on a busy slot. Defaults to the busy policy.

        Raises:
            SessionBusy: If the slot is busy and waiting is not allowed.
        """
        if wait is None:
            wait = self._busy_policy == "queue"

        while True:
            with self._registry_lock:
                slot = self._slots.get(key)
                if slot is None and create:
                    slot = _Slot()
                    self._slots[key] = slot
            if slot is None:
                yield None
                return

            if not slot.lock.acquire(blocking=wait):
                log.debug("session_busy", story_id=key[0], user_id=key[1])
                raise SessionBusy(story_id=key[0], user_id=key[1])

            try:
                if slot.evicted:
                    continue
                yield slot
                return
            finally:
                slot.lock.release()

    def _evict(self, key: SessionKey, slot: _Slot) -> None:
        """Remove *slot* from the registry. Caller holds the slot lock."""
        slot.evicted = True
        slot.session = None
        with self._registry_lock:
            if self._slots.get(key) is slot:
                del self._slots[key]

    def _ensure_session(self, slot: _Slot, key: SessionKey, graph: StoryGraph) -> Session:
        if slot.session is None:
            now = self._clock()
            slot.session = Session(
                story_id=key[0],
                user_id=key[1],
                current_passage=graph.start.name,
                created_at=now,
                last_activity=now,
            )
            slot.ended_passage = None
            log.debug("session_created", story_id=key[0], user_id=key[1])
        return slot.session

    @staticmethod
    def _current(session: Session, graph: StoryGraph) -> Passage:
        passage = graph.get(session.current_passage)
        if passage is None:
            # The story was replaced under a live session
            log.warning(
                "session_passage_missing",
                story_id=session.story_id,
                user_id=session.user_id,
                passage=session.current_passage,
            )
            passage = graph.start
            session.current_passage = passage.name
        return passage

    # -- Operations ------------------------------------------------------------

    def get(self, story_id: str, user_id: str) -> Session | None:
        """Return a snapshot of the session, or None if there is none."""
        with self._locked((story_id, user_id), create=False, wait=True) as slot:
            if slot is None or slot.session is None:
                return None
            return replace(slot.session)

    def get_or_create(self, story_id: str, user_id: str, graph: StoryGraph) -> Session:
        """Return the session for the key, creating it at the start passage.

        Waits for an in-flight request on the same key regardless of the busy
        policy, so a read never fails with SessionBusy.
        """
        key = (story_id, user_id)
        with self._locked(key, wait=True) as slot:
            assert slot is not None
            session = self._ensure_session(slot, key, graph)
            self._current(session, graph)
            return replace(session)

    def advance(
        self,
        story_id: str,
        user_id: str,
        choice_index: int,
        graph: StoryGraph,
        *,
        end_at_ending: bool = False,
    ) -> Session:
        """Follow a choice on the session's current passage.

        A failed advance leaves the session unchanged. A key without a
        session resolves the choice against the start passage and only gets
        a session once the move succeeds. A key whose session was closed at
        an ending resolves against that ending, so every index is invalid
        until the session is started again with ``get_or_create``.

        Args:
            story_id: Story identifier.
            user_id: Player identifier.
            choice_index: Index of the choice among the passage's choices.
            graph: Graph the request resolves against.
            end_at_ending: Close the session when the new passage has no
                choices. The returned snapshot still points at that passage.

        Returns:
            Snapshot of the session after the move.

        Raises:
            InvalidChoiceIndex: If the index is outside ``[0, choice_count)``.
            DanglingTarget: If the choice leads to a missing passage.
            SessionBusy: If the key is busy and the busy policy is ``reject``.
        """
        key = (story_id, user_id)
        with self._locked(key) as slot:
            assert slot is not None
            try:
                return self._advance_slot(slot, key, choice_index, graph, end_at_ending)
            finally:
                if slot.empty:
                    # Nothing was stored for a first request that failed
                    self._evict(key, slot)

    def _advance_slot(
        self,
        slot: _Slot,
        key: SessionKey,
        choice_index: int,
        graph: StoryGraph,
        end_at_ending: bool,
    ) -> Session:
        """Body of advance. Caller holds the slot lock."""
        story_id, user_id = key
        session = slot.session
        if session is None and slot.ended_passage is not None:
            raise InvalidChoiceIndex(
                index=choice_index, choice_count=0, passage=slot.ended_passage
            )
        passage = graph.start if session is None else self._current(session, graph)

        if not 0 <= choice_index < len(passage.choices):
            raise InvalidChoiceIndex(
                index=choice_index,
                choice_count=len(passage.choices),
                passage=passage.name,
            )
        choice = passage.choices[choice_index]
        if choice.target_index is None:
            raise DanglingTarget(
                passage=passage.name,
                index=choice_index,
                target=choice.target,
                available=graph.names,
            )

        target = graph.passages[choice.target_index]
        now = self._clock()
        if session is None:
            session = Session(
                story_id=story_id,
                user_id=user_id,
                current_passage=target.name,
                created_at=now,
                last_activity=now,
            )
            log.debug("session_created", story_id=story_id, user_id=user_id)
        else:
            session.current_passage = target.name
            session.last_activity = now
        snapshot = replace(session)

        log.debug(
            "session_advanced",
            story_id=story_id,
            user_id=user_id,
            source=passage.name,
            target=target.name,
        )
        if end_at_ending and target.is_ending:
            slot.session = None
            slot.ended_passage = target.name
            slot.ended_at = now
            log.info("session_ended", story_id=story_id, user_id=user_id, passage=target.name)
        else:
            slot.session = session
        return snapshot

    def reset(self, story_id: str, user_id: str) -> bool:
        """Discard the session for the key.

        Returns:
            True if a session existed.

        Raises:
            SessionBusy: If the key is busy and the busy policy is ``reject``.
        """
        key = (story_id, user_id)
        with self._locked(key, create=False) as slot:
            if slot is None:
                return False
            existed = slot.session is not None
            self._evict(key, slot)
        if existed:
            log.debug("session_reset", story_id=story_id, user_id=user_id)
        return existed

    def evict_idle(self, max_idle: float) -> int:
        """Remove sessions idle for longer than *max_idle* seconds.

        Slots with a request in flight are skipped; they are active by
        definition. Markers of sessions closed at an ending age from the
        moment the ending was reached.

        Returns:
            Number of live sessions removed.
        """
        now = self._clock()
        with self._registry_lock:
            candidates = list(self._slots.items())

        evicted = 0
        for key, slot in candidates:
            if not slot.lock.acquire(blocking=False):
                continue
            try:
                if slot.evicted:
                    continue
                session = slot.session
                last_activity = slot.ended_at if session is None else session.last_activity
                if slot.empty or now - last_activity > max_idle:
                    self._evict(key, slot)
                    evicted += session is not None
            finally:
                slot.lock.release()

        if evicted:
            log.info("sessions_evicted", count=evicted, max_idle=max_idle)
        return evicted

    def invalidate_story(self, story_id: str) -> int:
        """Remove every session of *story_id*, waiting for in-flight requests.

        Returns:
            Number of sessions removed.
        """
        with self._registry_lock:
            candidates = [(key, slot) for key, slot in self._slots.items() if key[0] == story_id]

        removed = 0
        for key, slot in candidates:
            with slot.lock:
                if slot.evicted:
                    continue
                removed += slot.session is not None
                self._evict(key, slot)

        if removed:
            log.info("sessions_invalidated", story_id=story_id, count=removed)
        return removed

    def sessions(self, story_id: str | None = None) -> list[Session]:
        """Snapshots of all live sessions, optionally for one story."""
        with self._registry_lock:
            slots = [
                slot
                for key, slot in self._slots.items()
                if story_id is None or key[0] == story_id
            ]
        snapshots: list[Session] = []
        for slot in slots:
            session = slot.session
            if session is not None:
                snapshots.append(replace(session))
        return snapshots
