import asyncio
import logging
import time
import uuid
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Callable

import pydantic
from cachetools import TTLCache

from tasklist.core.config import Settings, get_settings
from tasklist.core.errors import ValidationError
from tasklist.models import (
    UPDATABLE_FIELDS,
    ChangeEvent,
    ChangeKind,
    TaskQuery,
    TaskResponse,
    TaskUpdate,
    require_title,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TaskCounts:
    total: int
    complete: int
    incomplete: int


@dataclass
class PendingMutation:
    """An optimistic change in flight, with what it replaced in each view."""

    kind: str
    task_id: uuid.UUID
    # (view, index in view, entry before the change)
    pre_image: list[tuple[TaskQuery, int, TaskResponse]] = field(default_factory=list)


class TaskCache:
    """
    Client-side task views, one per query descriptor.

    Views live in a TTLCache: a view idle for longer than
    ``view_idle_seconds`` is silently evicted and refetched on the next load.

    Features:
    - Optimistic update/delete with exact rollback on failure
    - Per-task locks so two mutations of one task never interleave
    - Stampede protection on list fetches, stale responses dropped
    - Realtime change merging with owner filtering and duplicate suppression
    """

    def __init__(
        self,
        api,
        settings: Settings | None = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        settings = settings or get_settings()
        self._api = api
        self._views: TTLCache = TTLCache(
            maxsize=settings.view_cache_maxsize,
            ttl=settings.view_idle_seconds,
            timer=timer,
        )
        # bounded like the views
        self._summaries: TTLCache = TTLCache(
            maxsize=settings.view_cache_maxsize,
            ttl=settings.view_idle_seconds,
            timer=timer,
        )
        self._pending: dict[uuid.UUID, PendingMutation] = {}

        # Lock tables. setdefault() hands every concurrent caller the same
        # lock; entries expire well after any single request completes.
        self._task_locks = TTLCache(
            maxsize=settings.lock_cache_maxsize, ttl=settings.lock_ttl_seconds
        )
        self._fetch_locks = TTLCache(
            maxsize=settings.lock_cache_maxsize, ttl=settings.lock_ttl_seconds
        )

        self._user_id: str | None = None
        self._active: TaskQuery | None = None

        self.stats = {
            "hits": 0,
            "misses": 0,
            "stale_discards": 0,
            "dropped_events": 0,
            "rollbacks": 0,
        }

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def active_query(self) -> TaskQuery | None:
        return self._active

    def set_user(self, user_id: str | None) -> None:
        """Switch identity. Everything cached for the previous user is dropped."""
        if user_id == self._user_id:
            return
        logger.info(f"Cache identity changed, dropping {len(self._views)} views")
        self._user_id = user_id
        self._active = None
        self._views.clear()
        self._summaries.clear()
        self._pending.clear()

    # Reads

    def _touch(self, query: TaskQuery) -> list[TaskResponse] | None:
        view = self._views.get(query)
        if view is not None:
            # re-setting restarts the idle timer
            self._views[query] = view
        return view

    def tasks(self, query: TaskQuery) -> list[TaskResponse] | None:
        view = self._touch(query)
        return None if view is None else list(view)

    async def load(self, query: TaskQuery, force: bool = False) -> list[TaskResponse] | None:
        """
        Make ``query`` the active view and return its tasks.

        Returns None when the active view changed (or the user switched)
        while the list request was in flight; that response is discarded.
        """
        self._active = query

        if not force:
            view = self._touch(query)
            if view is not None:
                self.stats["hits"] += 1
                logger.debug(f"View hit: {query}")
                return list(view)

        lock = self._fetch_locks.setdefault(query, asyncio.Lock())
        async with lock:
            if not force:
                view = self._touch(query)
                if view is not None:
                    return list(view)

            self.stats["misses"] += 1
            logger.debug(f"Loading view from API: {query}")
            user_id = self._user_id
            fetched = await self._api.list_tasks(query)

        if self._active != query or self._user_id != user_id:
            self.stats["stale_discards"] += 1
            logger.debug(f"Discarding stale list response for {query}")
            return None

        view = []
        seen = set()
        for task in fetched:
            if task.id not in seen:
                seen.add(task.id)
                view.append(task)
        self._store(query, view)
        return list(view)

    async def find(self, task_id) -> TaskResponse | None:
        task_id = _as_task_id(task_id)
        for view in list(self._views.values()):
            for task in view:
                if task.id == task_id:
                    return task
        for task in await self._api.list_tasks(TaskQuery()):
            if task.id == task_id:
                return task
        return None

    def summary(self, query: TaskQuery) -> TaskCounts | None:
        """Counts for a cached view, recomputed lazily after it changes."""
        view = self._views.get(query)
        if view is None:
            return None
        counts = self._summaries.get(query)
        if counts is None:
            complete = sum(1 for task in view if task.is_complete)
            counts = TaskCounts(
                total=len(view), complete=complete, incomplete=len(view) - complete
            )
            self._summaries[query] = counts
        return counts

    def invalidate(self, query: TaskQuery | None = None) -> None:
        if query is None:
            self._views.clear()
            self._summaries.clear()
        else:
            self._views.pop(query, None)
            self._summaries.pop(query, None)

    # Mutations

    async def create(self, title: str, description: str | None = None) -> TaskResponse:
        """
        Insert a task. Nothing is added speculatively: the task only enters
        the views once the store has assigned its id.
        """
        require_title(title)
        task = await self._api.create_task(title, description)
        self._insert(task)
        return task

    async def update(self, task_id, **fields) -> None:
        task_id = _as_task_id(task_id)
        changes = _validate_update(fields)
        values = changes.model_dump(exclude_unset=True)

        async with self._lock_for(task_id):
            pending = PendingMutation("update", task_id)
            for query, view in list(self._views.items()):
                for index, task in enumerate(view):
                    if task.id == task_id:
                        pending.pre_image.append((query, index, task))
                        updated = view[:index] + [task.model_copy(update=values)] + view[index + 1 :]
                        self._store(query, updated)
                        break
            self._pending[task_id] = pending

            try:
                await self._api.update_task(task_id, changes)
            except Exception as e:
                self._rollback(pending, e)
                raise
            finally:
                self._pending.pop(task_id, None)

    async def delete(self, task_id) -> None:
        task_id = _as_task_id(task_id)

        async with self._lock_for(task_id):
            pending = PendingMutation("delete", task_id)
            for query, view in list(self._views.items()):
                for index, task in enumerate(view):
                    if task.id == task_id:
                        pending.pre_image.append((query, index, task))
                        self._store(query, view[:index] + view[index + 1 :])
                        break
            self._pending[task_id] = pending

            try:
                await self._api.delete_task(task_id)
            except Exception as e:
                self._rollback(pending, e)
                raise
            finally:
                self._pending.pop(task_id, None)

    def _rollback(self, pending: PendingMutation, error: Exception) -> None:
        self.stats["rollbacks"] += 1
        logger.warning(f"Rolling back {pending.kind} of task {pending.task_id}: {error}")

        for query, index, before in pending.pre_image:
            view = self._views.get(query)
            if view is None:
                continue
            current = _index_of(view, pending.task_id)
            if pending.kind == "update":
                if current is not None:
                    self._store(query, view[:current] + [before] + view[current + 1 :])
            elif current is None:
                index = min(index, len(view))
                self._store(query, view[:index] + [before] + view[index:])

    # Realtime

    def merge_remote_event(self, event: ChangeEvent) -> bool:
        """
        Fold a change notification into the cached views.

        Returns True if any view changed. Events for another owner, and events
        for a task with a local mutation in flight, are dropped.
        """
        if self._user_id is None or event.owner != self._user_id:
            self.stats["dropped_events"] += 1
            logger.debug(f"Dropping {event.kind.value} for foreign owner {event.owner}")
            return False
        if event.task_id in self._pending:
            self.stats["dropped_events"] += 1
            logger.debug(f"Dropping {event.kind.value} for {event.task_id}: local mutation pending")
            return False

        if event.kind is ChangeKind.insert:
            return self._insert(event.task)

        changed = False
        for query, view in list(self._views.items()):
            index = _index_of(view, event.task_id)
            if index is None:
                continue
            if event.kind is ChangeKind.update:
                merged = view[index].model_copy(
                    update={
                        "title": event.task.title,
                        "description": event.task.description,
                        "is_complete": event.task.is_complete,
                    }
                )
                self._store(query, view[:index] + [merged] + view[index + 1 :])
            else:
                self._store(query, view[:index] + view[index + 1 :])
            changed = True
        return changed

    # Internals

    def _store(self, query: TaskQuery, view: list[TaskResponse]) -> None:
        self._views[query] = view
        self._summaries.pop(query, None)

    def _insert(self, task: TaskResponse) -> bool:
        """Place ``task`` in every view whose filters it satisfies, once."""
        changed = False
        for query, view in list(self._views.items()):
            if not query.matches(task) or _index_of(view, task.id) is not None:
                continue
            keys = [query.sort_key(entry) for entry in view]
            if all(a <= b for a, b in zip(keys, keys[1:])):
                # ahead of any run of equal keys
                index = bisect_left(keys, query.sort_key(task))
            else:
                # the store collates titles differently; no position to trust
                index = 0
            self._store(query, view[:index] + [task] + view[index:])
            changed = True
        return changed

    def _lock_for(self, task_id: uuid.UUID) -> asyncio.Lock:
        return self._task_locks.setdefault(task_id, asyncio.Lock())

    def get_stats(self) -> dict:
        return {
            **self.stats,
            "views": len(self._views),
            "pending": len(self._pending),
        }


def _index_of(view: list[TaskResponse], task_id: uuid.UUID) -> int | None:
    for index, task in enumerate(view):
        if task.id == task_id:
            return index
    return None


def _as_task_id(task_id) -> uuid.UUID:
    if isinstance(task_id, uuid.UUID):
        return task_id
    try:
        return uuid.UUID(str(task_id))
    except ValueError as e:
        raise ValidationError(f"Invalid task ID: {task_id!r}") from e


def _validate_update(fields: dict) -> TaskUpdate:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
    if not fields:
        raise ValidationError("No fields to update")
    if "title" in fields:
        require_title(fields["title"])
    try:
        return TaskUpdate(**fields)
    except pydantic.ValidationError as e:
        raise ValidationError(str(e)) from e
