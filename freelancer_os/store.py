"""
Path-addressed document store with live subscriptions.

Values form a JSON tree addressed by ``/``-separated paths such as
``users/{uid}/clients/{record_id}``. Both backends keep the tree flattened to
one entry per leaf value (string, number or boolean), keyed by its full path,
and rebuild subtrees on read. Lists are kept as index-keyed children and read
back as lists when their keys are ``0..n-1``.

Every committed write is published on a change feed; each subscription whose
path overlaps the written path re-reads its full snapshot and delivers it.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol

from sqlalchemy import JSON, Column, String, create_engine, delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from freelancer_os.changes import ChangeFeed, InProcessChangeFeed
from freelancer_os.errors import StoreError

logger = logging.getLogger(__name__)

SnapshotCallback = Callable[[Any], None]
ErrorCallback = Callable[[Exception], None]

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"
INVALID_KEY_CHARS = set(".#$[]")


class DocumentStore(Protocol):
    """Interface for the realtime document store."""

    def get(self, path: str) -> Any:
        ...

    def set(self, path: str, value: Any) -> None:
        ...

    def update(self, path: str, values: dict) -> None:
        ...

    def remove(self, path: str) -> None:
        ...

    def push_id(self) -> str:
        ...

    def subscribe(
        self,
        path: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> "Subscription":
        ...


def normalize_path(path: str) -> str:
    parts = [part for part in path.strip("/").split("/") if part]
    for part in parts:
        if INVALID_KEY_CHARS.intersection(part):
            raise ValueError(f"Invalid key {part!r} in path {path!r}")
    return "/".join(parts)


def is_valid_key(key: str) -> bool:
    """True when ``key`` can name a single child node."""
    return bool(key) and "/" not in key and not INVALID_KEY_CHARS.intersection(key)


def join_path(*parts: str) -> str:
    return normalize_path("/".join(part for part in parts if part))


def is_within(path: str, base: str) -> bool:
    """True when ``path`` is ``base`` itself or one of its descendants."""
    if not base:
        return True
    return path == base or path.startswith(base + "/")


def paths_overlap(a: str, b: str) -> bool:
    return is_within(a, b) or is_within(b, a)


def ancestors(path: str) -> list[str]:
    parts = path.split("/") if path else []
    return ["/".join(parts[:i]) for i in range(1, len(parts))]


def flatten(value: Any, base: str) -> Dict[str, Any]:
    """Flatten a JSON value into ``{leaf_path: scalar}`` entries under ``base``."""
    leaves: Dict[str, Any] = {}
    if value is None:
        return leaves
    if isinstance(value, dict):
        for key, child in value.items():
            leaves.update(flatten(child, join_path(base, normalize_path(str(key)))))
        return leaves
    if isinstance(value, (list, tuple)):
        for index, child in enumerate(value):
            leaves.update(flatten(child, join_path(base, str(index))))
        return leaves
    if isinstance(value, (str, int, float, bool)):
        if not base:
            raise ValueError("Cannot store a scalar at the root")
        leaves[base] = value
        return leaves
    raise TypeError(f"Unsupported value type {type(value).__name__} at {base!r}")


def _restore_lists(node: Any) -> Any:
    if not isinstance(node, dict):
        return node
    children = {key: _restore_lists(child) for key, child in node.items()}
    keys = set(children)
    if keys and keys == {str(i) for i in range(len(keys))}:
        return [children[str(i)] for i in range(len(keys))]
    return {key: children[key] for key in sorted(children)}


def unflatten(leaves: Dict[str, Any], base: str) -> Any:
    """Rebuild the subtree at ``base`` from leaf entries (all within ``base``)."""
    if base in leaves:
        return leaves[base]
    offset = len(base) + 1 if base else 0
    tree: dict = {}
    for path, value in leaves.items():
        parts = path[offset:].split("/")
        node = tree
        for part in parts[:-1]:
            node = node.setdefault(part, {})
        node[parts[-1]] = value
    if not tree:
        return None
    return _restore_lists(tree)


class PushIdGenerator:
    """
    Generates 20-character keys that sort in creation order.

    The first 8 characters encode the millisecond timestamp, the remaining 12
    are random; ids generated within the same millisecond increment the random
    part so ordering still holds.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._last_time = 0
        self._last_random = [0] * 12

    def __call__(self) -> str:
        now = int(time.time() * 1000)
        with self._lock:
            if now == self._last_time:
                index = 11
                while index >= 0 and self._last_random[index] == 63:
                    self._last_random[index] = 0
                    index -= 1
                if index >= 0:
                    self._last_random[index] += 1
            else:
                self._last_random = [secrets.randbelow(64) for _ in range(12)]
            self._last_time = now
            random_part = list(self._last_random)

        time_chars = []
        for _ in range(8):
            time_chars.append(PUSH_CHARS[now % 64])
            now //= 64
        return "".join(reversed(time_chars)) + "".join(
            PUSH_CHARS[value] for value in random_part
        )


generate_push_id = PushIdGenerator()


class Subscription:
    """A live listener on one store path. Close it to stop deliveries."""

    def __init__(
        self,
        store: "_SubscribableStore",
        path: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ):
        self.path = path
        self._store = store
        self._on_snapshot = on_snapshot
        self._on_error = on_error
        self._lock = threading.RLock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self) -> None:
        """Read the current snapshot and hand it to the callback."""
        with self._lock:
            if self._closed:
                return
            try:
                snapshot = self._store.get(self.path)
            except StoreError as exc:
                if self._on_error is None:
                    logger.error("Subscription read failed for %s: %s", self.path, exc)
                else:
                    self._on_error(exc)
                return
            self._on_snapshot(snapshot)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._store._detach(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class _SubscribableStore:
    """Subscription bookkeeping shared by the store backends."""

    def __init__(self, feed: Optional[ChangeFeed] = None):
        self._lock = threading.RLock()
        self._subscriptions: list[Subscription] = []
        self._push_id = generate_push_id
        self.feed = feed or InProcessChangeFeed()
        self.feed.connect(self._dispatch)

    def get(self, path: str) -> Any:
        raise NotImplementedError

    def push_id(self) -> str:
        return self._push_id()

    def subscribe(
        self,
        path: str,
        on_snapshot: SnapshotCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> Subscription:
        subscription = Subscription(self, normalize_path(path), on_snapshot, on_error)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.debug("Subscribed to %s", subscription.path)
        subscription.deliver()
        return subscription

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def _detach(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        logger.debug("Unsubscribed from %s", subscription.path)

    def _notify(self, path: str) -> None:
        self.feed.publish(path)

    def _dispatch(self, path: str) -> None:
        with self._lock:
            targets = [
                sub for sub in self._subscriptions if paths_overlap(sub.path, path)
            ]
        for subscription in targets:
            try:
                subscription.deliver()
            except Exception:
                # One failing listener must not stop delivery to the others.
                logger.exception("Snapshot listener for %s failed", subscription.path)


class InMemoryDocumentStore(_SubscribableStore):
    """Simple in-memory document store for development and tests."""

    def __init__(self, feed: Optional[ChangeFeed] = None):
        super().__init__(feed)
        self.leaves: Dict[str, Any] = {}

    def get(self, path: str) -> Any:
        base = normalize_path(path)
        with self._lock:
            selected = {p: v for p, v in self.leaves.items() if is_within(p, base)}
        return unflatten(selected, base)

    def set(self, path: str, value: Any) -> None:
        base = normalize_path(path)
        new_leaves = flatten(value, base)
        with self._lock:
            self._clear(base)
            self.leaves.update(new_leaves)
        self._notify(base)

    def update(self, path: str, values: dict) -> None:
        base = normalize_path(path)
        staged = {
            join_path(base, normalize_path(str(key))): flatten(
                child, join_path(base, normalize_path(str(key)))
            )
            for key, child in values.items()
        }
        with self._lock:
            for child_path, child_leaves in staged.items():
                self._clear(child_path)
                self.leaves.update(child_leaves)
        self._notify(base)

    def remove(self, path: str) -> None:
        self.set(path, None)

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.leaves.clear()
        self._notify("")

    def _clear(self, base: str) -> None:
        for path in [p for p in self.leaves if is_within(p, base)]:
            del self.leaves[path]
        for ancestor in ancestors(base):
            self.leaves.pop(ancestor, None)


class SqlDocumentStore(_SubscribableStore):
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str, feed: Optional[ChangeFeed] = None):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlDocumentStore")
        super().__init__(feed)
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def get(self, path: str) -> Any:
        base = normalize_path(path)
        stmt = select(NodeRow.path, NodeRow.value)
        if base:
            stmt = stmt.where(
                or_(
                    NodeRow.path == base,
                    NodeRow.path.startswith(base + "/", autoescape=True),
                )
            )
        try:
            with self.Session() as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to read {base!r}: {exc}") from exc
        return unflatten({row.path: row.value for row in rows}, base)

    def set(self, path: str, value: Any) -> None:
        base = normalize_path(path)
        new_leaves = flatten(value, base)
        self._write({base: new_leaves})
        self._notify(base)

    def update(self, path: str, values: dict) -> None:
        base = normalize_path(path)
        staged = {}
        for key, child in values.items():
            child_path = join_path(base, normalize_path(str(key)))
            staged[child_path] = flatten(child, child_path)
        self._write(staged)
        self._notify(base)

    def remove(self, path: str) -> None:
        self.set(path, None)

    def _write(self, staged: Dict[str, Dict[str, Any]]) -> None:
        try:
            with self.Session.begin() as session:
                for base, leaves in staged.items():
                    self._clear(session, base)
                    session.add_all(
                        NodeRow(path=leaf_path, value=value)
                        for leaf_path, value in leaves.items()
                    )
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to write {list(staged)!r}: {exc}") from exc

    @staticmethod
    def _clear(session: Session, base: str) -> None:
        if base:
            session.execute(
                delete(NodeRow).where(
                    or_(
                        NodeRow.path == base,
                        NodeRow.path.startswith(base + "/", autoescape=True),
                    )
                )
            )
        else:
            session.execute(delete(NodeRow))
        parents = ancestors(base)
        if parents:
            session.execute(delete(NodeRow).where(NodeRow.path.in_(parents)))


Base = declarative_base()


class NodeRow(Base):
    __tablename__ = "document_nodes"

    path = Column(String, primary_key=True)
    value = Column(JSON, nullable=False)
