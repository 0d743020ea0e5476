"""
Observable in-memory stores.

A store holds an immutable tuple snapshot. Writers replace the snapshot
through ``set`` or ``update``; subscribers (e.g. the persistence layer) are
notified with the new snapshot after every mutation.
"""
import logging
import threading
from typing import Callable, Iterable, List, Optional, Tuple

from schemas import EnrolledIdentity

logger = logging.getLogger("faceguard.store")

Listener = Callable[[tuple], None]


class Store:
    """Thread-safe holder for an ordered collection with change listeners."""

    def __init__(self, initial: Iterable = ()):
        self._value: tuple = tuple(initial)
        self._listeners: List[Listener] = []
        self.lock = threading.RLock()

    def get(self) -> tuple:
        return self._value

    def set(self, value: Iterable) -> tuple:
        with self.lock:
            self._value = tuple(value)
            snapshot = self._value
            listeners = list(self._listeners)
        self._notify(listeners, snapshot)
        return snapshot

    def update(self, fn: Callable[[tuple], Iterable]) -> tuple:
        """Replace the snapshot with ``fn(current)`` atomically."""
        with self.lock:
            self._value = tuple(fn(self._value))
            snapshot = self._value
            listeners = list(self._listeners)
        self._notify(listeners, snapshot)
        return snapshot

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        with self.lock:
            self._listeners.append(listener)

        def unsubscribe():
            with self.lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def __len__(self) -> int:
        return len(self._value)

    @staticmethod
    def _notify(listeners: List[Listener], snapshot: tuple):
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                # State is already committed in memory; a broken listener
                # must not undo it.
                logger.exception("Store listener %r failed", listener)


class EnrollmentStore(Store):
    """Enrolled identities, in enrollment order."""

    def list_identities(self) -> Tuple[EnrolledIdentity, ...]:
        return self.get()

    def add(self, name: str, reference_image: str) -> EnrolledIdentity:
        name = (name or "").strip()
        if not name:
            raise ValueError("Name must not be blank")
        identity = EnrolledIdentity(name=name, reference_image=reference_image)
        self.update(lambda current: current + (identity,))
        logger.info("Enrolled %s (%s)", identity.name, identity.id)
        return identity

    def get_identity(self, identity_id: str) -> Optional[EnrolledIdentity]:
        for identity in self.get():
            if identity.id == identity_id:
                return identity
        return None

    def remove(self, identity_id: str) -> bool:
        with self.lock:
            if self.get_identity(identity_id) is None:
                return False
            self.update(lambda current: [i for i in current if i.id != identity_id])
        logger.info("Removed enrollment %s", identity_id)
        return True
