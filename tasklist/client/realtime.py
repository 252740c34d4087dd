import asyncio
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Optional, Protocol

import pydantic

from tasklist.cache.layer import TaskCache
from tasklist.core.config import Settings, get_settings
from tasklist.models import ChangeEvent, ChangeKind, TaskResponse

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[dict], None]


class SubscriptionState(str, Enum):
    CLOSED = "closed"
    OPENING = "opening"
    ACTIVE = "active"


class RealtimeTransport(Protocol):
    """
    Opens change feeds on the tasks table.

    ``open`` returns once the server acknowledged the subscription; the
    returned handle is passed back to ``close``.
    """

    async def open(self, topic: str, owner: str, on_change: ChangeHandler) -> Any: ...

    async def close(self, handle: Any) -> None: ...


def parse_change(payload: dict) -> ChangeEvent | None:
    """
    Normalize a raw change payload into a ChangeEvent.

    Accepts ``{"eventType", "new", "old"}`` as well as the realtime-py shape
    ``{"data": {"type", "record", "old_record"}}``. Returns None for anything
    that does not describe a task row.
    """
    if isinstance(payload.get("data"), dict):
        data = payload["data"]
        kind, new, old = data.get("type"), data.get("record"), data.get("old_record")
    else:
        kind, new, old = payload.get("eventType"), payload.get("new"), payload.get("old")

    try:
        kind = ChangeKind(str(kind).upper())
    except ValueError:
        return None

    row = (old if kind is ChangeKind.delete else new) or {}
    if "id" not in row:
        return None

    try:
        task_id = uuid.UUID(str(row["id"]))
        task = None if kind is ChangeKind.delete else TaskResponse.model_validate(row)
    except (ValueError, pydantic.ValidationError):
        return None

    owner = row.get("user_id")
    return ChangeEvent(kind=kind, task_id=task_id, owner=owner, task=task)


class ChangeSubscription:
    """
    One filtered change feed per signed-in user, delivered into a TaskCache.

    CLOSED -> OPENING -> ACTIVE -> CLOSED. The previous feed is always
    closed before a new one is opened. A dropped connection is not detected;
    it just goes quiet.
    """

    def __init__(self, transport: RealtimeTransport, cache: TaskCache):
        self._transport = transport
        self._cache = cache
        self._lock = asyncio.Lock()
        self._handle = None
        self._user_id: str | None = None
        self.state = SubscriptionState.CLOSED

    @property
    def user_id(self) -> str | None:
        return self._user_id

    async def set_user(self, user_id: str | None) -> None:
        async with self._lock:
            if user_id == self._user_id and self.state is SubscriptionState.ACTIVE:
                return

            await self._close()
            self._cache.set_user(user_id)
            self._user_id = user_id
            if user_id is None:
                return

            self.state = SubscriptionState.OPENING
            logger.info(f"Opening change feed for user {user_id}")
            try:
                self._handle = await self._transport.open(
                    f"tasks-realtime-{user_id}", user_id, self._dispatch
                )
            except Exception as e:
                self.state = SubscriptionState.CLOSED
                logger.error(f"Change feed for user {user_id} failed to open: {e}")
                raise
            self.state = SubscriptionState.ACTIVE
            logger.info(f"Change feed active for user {user_id}")

    async def close(self) -> None:
        async with self._lock:
            await self._close()

    async def _close(self) -> None:
        if self._handle is not None:
            handle, self._handle = self._handle, None
            await self._transport.close(handle)
            logger.info(f"Change feed closed for user {self._user_id}")
        self.state = SubscriptionState.CLOSED

    def _dispatch(self, payload: dict) -> None:
        if self.state is not SubscriptionState.ACTIVE:
            return
        event = parse_change(payload)
        if event is None:
            logger.warning(f"Ignoring unrecognized change payload: {payload!r}")
            return
        self._cache.merge_remote_event(event)


class SupabaseRealtimeTransport:
    """RealtimeTransport over Supabase Realtime (``pip install tasklist[realtime]``)."""

    def __init__(
        self,
        access_token_provider: Callable[[], Optional[str]],
        settings: Settings | None = None,
        table: str = "tasks",
        schema: str = "public",
    ):
        settings = settings or get_settings()
        self.url = settings.realtime_url
        self.api_key = settings.supabase_key
        self.access_token_provider = access_token_provider
        self.table = table
        self.schema = schema

    async def open(self, topic: str, owner: str, on_change: ChangeHandler):
        from realtime import AsyncRealtimeClient, RealtimeSubscribeStates  # type: ignore

        client = AsyncRealtimeClient(self.url, self.api_key)
        await client.connect()
        token = self.access_token_provider()
        if token:
            await client.set_auth(token)

        channel = client.channel(topic)
        for event in (ChangeKind.insert, ChangeKind.update):
            channel.on_postgres_changes(
                event.value,
                schema=self.schema,
                table=self.table,
                filter=f"user_id=eq.{owner}",
                callback=on_change,
            )
        # Realtime cannot filter deletes; the cache drops foreign owners.
        channel.on_postgres_changes(
            ChangeKind.delete.value,
            schema=self.schema,
            table=self.table,
            callback=on_change,
        )

        acked: asyncio.Future = asyncio.get_running_loop().create_future()

        def on_status(status, err=None):
            if acked.done():
                return
            if status == RealtimeSubscribeStates.SUBSCRIBED:
                acked.set_result(None)
            elif err is not None or status in (
                RealtimeSubscribeStates.CHANNEL_ERROR,
                RealtimeSubscribeStates.TIMED_OUT,
                RealtimeSubscribeStates.CLOSED,
            ):
                acked.set_exception(ConnectionError(f"Subscription {topic} failed: {status} {err}"))

        await channel.subscribe(on_status)
        try:
            await acked
        except ConnectionError:
            await client.close()
            raise
        return client, channel

    async def close(self, handle) -> None:
        client, channel = handle
        await client.remove_channel(channel)
        await client.close()
