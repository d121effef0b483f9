"""
Live, identity-scoped collections.

A ``CollectionSync`` subscribes to ``users/{uid}/{collection}`` and keeps a
``CollectionState`` that is fully replaced by every snapshot the store
delivers; there is no incremental patching, so the local list can never drift
from the stored one. Mutations go straight to the store and only show up in
``state`` once the subscription observes them.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Generic, Optional, Type, TypeVar

from pydantic import ValidationError

from freelancer_os.errors import (
    InvalidRecord,
    NotAuthenticated,
    NotFound,
    StoreError,
    WriteError,
)
from freelancer_os.identity import Identity
from freelancer_os.schemas import (
    Client,
    Finance,
    Goal,
    Invoice,
    Project,
    RecordModel,
    Resource,
    Task,
)
from freelancer_os.store import DocumentStore, Subscription, is_valid_key, join_path

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=RecordModel)

COLLECTIONS: dict[str, Type[RecordModel]] = {
    "clients": Client,
    "projects": Project,
    "tasks": Task,
    "finances": Finance,
    "goals": Goal,
    "resources": Resource,
    "invoices": Invoice,
}

READ_ONLY_FIELDS = {"id", "createdAt", "updatedAt"}


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def user_path(uid: str, *parts: str) -> str:
    return join_path("users", uid, *parts)


@dataclass(frozen=True)
class CollectionState(Generic[RecordT]):
    items: tuple = field(default_factory=tuple)
    is_loading: bool = False
    error: Optional[str] = None


class CollectionSync(Generic[RecordT]):
    """
    Subscription plus add/update/delete over one collection of one identity.

    Pass ``identity=None`` for a signed-out caller: the collection then stays
    empty and not loading, and every mutation raises ``NotAuthenticated``.
    """

    def __init__(
        self,
        store: DocumentStore,
        identity: Optional[Identity],
        name: str,
        model: Type[RecordT],
        *,
        clock: Callable[[], str] = utc_now_iso,
    ):
        self.store = store
        self.identity = identity
        self.name = name
        self.model = model
        self._clock = clock
        self._lock = threading.RLock()
        self._state: CollectionState = CollectionState()
        self._subscription: Optional[Subscription] = None
        self._listeners: list[Callable[[CollectionState], None]] = []
        self._closed = False

    @property
    def path(self) -> str:
        if self.identity is None:
            raise NotAuthenticated()
        return user_path(self.identity.uid, self.name)

    @property
    def state(self) -> CollectionState:
        return self._state

    @property
    def items(self) -> tuple:
        return self._state.items

    @property
    def is_open(self) -> bool:
        return self._subscription is not None

    def on_change(
        self, listener: Callable[[CollectionState], None]
    ) -> Callable[[], None]:
        """Register a state listener; returns a callable that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def _remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _remove

    def open(self) -> "CollectionSync[RecordT]":
        with self._lock:
            if self._subscription is not None:
                return self
            self._closed = False
            if self.identity is None:
                self._publish(CollectionState())
                return self
            self._publish(replace(self._state, is_loading=True, error=None))
            path = self.path
        logger.debug("Opening %s", path)
        subscription = self.store.subscribe(path, self._on_snapshot, self._on_error)
        with self._lock:
            if self._closed:
                subscription.close()
            else:
                self._subscription = subscription
        return self

    def close(self) -> None:
        with self._lock:
            self._closed = True
            subscription, self._subscription = self._subscription, None
            self._listeners.clear()
        if subscription is not None:
            subscription.close()
            logger.debug("Closed %s", subscription.path)

    def __enter__(self) -> "CollectionSync[RecordT]":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def get(self, record_id: str) -> Optional[RecordT]:
        """Look up a record in the current snapshot."""
        for item in self._state.items:
            if item.id == record_id:
                return item
        return None

    def add(self, record: RecordT | dict) -> str:
        base = self.path
        if isinstance(record, RecordModel):
            record = record.to_document()
        try:
            validated = self.model.model_validate(record)
        except ValidationError as exc:
            raise InvalidRecord(str(exc)) from exc
        now = self._clock()
        document = validated.to_document()
        document["createdAt"] = now
        document["updatedAt"] = now
        record_id = self.store.push_id()
        try:
            self.store.set(join_path(base, record_id), document)
        except StoreError as exc:
            logger.warning("Failed to add to %s: %s", base, exc)
            raise WriteError(f"Failed to add item: {exc}") from exc
        return record_id

    def update_item(self, record_id: str, /, **changes: Any) -> None:
        base = self.path
        if not is_valid_key(record_id):
            raise NotFound(f"No {self.name} record with id {record_id!r}")
        item_path = join_path(base, record_id)
        aliases = self.model.field_aliases()
        aliased = {}
        for key, value in changes.items():
            alias = aliases.get(key)
            if alias is None:
                raise InvalidRecord(f"Unknown field {key!r} for {self.name}")
            if alias in READ_ONLY_FIELDS:
                raise InvalidRecord(f"Field {key!r} cannot be updated")
            aliased[alias] = value

        try:
            existing = self.store.get(item_path)
        except StoreError as exc:
            raise WriteError(f"Failed to update item: {exc}") from exc
        if not isinstance(existing, dict):
            raise NotFound(f"No {self.name} record with id {record_id!r}")

        try:
            merged = self.model.from_document(record_id, {**existing, **aliased})
        except ValidationError as exc:
            raise InvalidRecord(str(exc)) from exc
        document = merged.to_document()
        payload = {key: document.get(key) for key in aliased}
        payload.update(
            {key: value for key, value in document.items() if existing.get(key) != value}
        )
        payload["updatedAt"] = self._clock()
        try:
            self.store.update(item_path, payload)
        except StoreError as exc:
            logger.warning("Failed to update %s: %s", item_path, exc)
            raise WriteError(f"Failed to update item: {exc}") from exc

    def delete_item(self, record_id: str) -> None:
        base = self.path
        if not is_valid_key(record_id):
            return
        item_path = join_path(base, record_id)
        try:
            self.store.remove(item_path)
        except StoreError as exc:
            logger.warning("Failed to delete %s: %s", item_path, exc)
            raise WriteError(f"Failed to delete item: {exc}") from exc

    def _on_snapshot(self, snapshot: Any) -> None:
        if self._closed:
            return
        if snapshot is None:
            self._publish(CollectionState())
            return
        if not isinstance(snapshot, dict):
            self._publish(
                replace(
                    self._state,
                    is_loading=False,
                    error=f"Unexpected snapshot for {self.name}",
                )
            )
            return
        try:
            items = tuple(
                self.model.from_document(record_id, document)
                for record_id, document in snapshot.items()
            )
        except (ValidationError, ValueError) as exc:
            logger.warning("Invalid snapshot for %s: %s", self.name, exc)
            self._publish(replace(self._state, is_loading=False, error=str(exc)))
            return
        self._publish(CollectionState(items=items))

    def _on_error(self, exc: Exception) -> None:
        if self._closed:
            return
        logger.warning("Subscription error for %s: %s", self.name, exc)
        self._publish(replace(self._state, is_loading=False, error=str(exc)))

    def _publish(self, state: CollectionState) -> None:
        with self._lock:
            self._state = state
            listeners = list(self._listeners)
        for listener in listeners:
            listener(state)


def clients(store: DocumentStore, identity: Optional[Identity]) -> CollectionSync[Client]:
    return CollectionSync(store, identity, "clients", Client)


def projects(store: DocumentStore, identity: Optional[Identity]) -> CollectionSync[Project]:
    return CollectionSync(store, identity, "projects", Project)


def tasks(store: DocumentStore, identity: Optional[Identity]) -> CollectionSync[Task]:
    return CollectionSync(store, identity, "tasks", Task)


def finances(store: DocumentStore, identity: Optional[Identity]) -> CollectionSync[Finance]:
    return CollectionSync(store, identity, "finances", Finance)


def goals(store: DocumentStore, identity: Optional[Identity]) -> CollectionSync[Goal]:
    return CollectionSync(store, identity, "goals", Goal)


def resources(store: DocumentStore, identity: Optional[Identity]) -> CollectionSync[Resource]:
    return CollectionSync(store, identity, "resources", Resource)


def invoices(store: DocumentStore, identity: Optional[Identity]) -> CollectionSync[Invoice]:
    return CollectionSync(store, identity, "invoices", Invoice)


def open_collection(
    store: DocumentStore, identity: Optional[Identity], name: str
) -> CollectionSync:
    """Build and open the collection registered under ``name``."""
    model = COLLECTIONS.get(name)
    if model is None:
        raise NotFound(f"Unknown collection {name!r}")
    return CollectionSync(store, identity, name, model).open()
