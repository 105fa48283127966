"""Owned connection to the remote mail store: retries, health checks, bounded calls."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from mail_monitor.connection.lifecycle import LifecycleManager
from mail_monitor.connection.retry import RetryPolicy
from mail_monitor.models.remote import ItemChange, RemoteFolder
from mail_monitor.models.types import ChangeKind, ConnectionState
from mail_monitor.remote.base import (
    PermanentEnvironmentError,
    RemoteMailStore,
    RemoteStoreError,
    Subscription,
    SubscriptionUnavailableError,
    TransientRemoteError,
)
from mail_monitor.sync.channel import ChangeChannel
from mail_monitor.sync.scheduler import IntervalDriver

logger = logging.getLogger(__name__)

ConnectedListener = Callable[[], Awaitable[None]]

T = TypeVar("T")


@dataclass(frozen=True)
class ConnectionInfo:
    """Snapshot of the connection for status reporting."""

    state: ConnectionState
    attempts: int
    last_error: str | None
    last_connected_at: datetime | None
    capabilities: dict[str, Any] = field(default_factory=dict)
    push_available: bool | None = None
    subscribed_folders: list[str] = field(default_factory=list)


class ConnectionManager:
    """Owns the link to a RemoteMailStore.

    `connect()` retries with the injected RetryPolicy; `health_check()` probes
    the link and reconnects when allowed. Remote queries go through `call()`
    so each one is bounded by `query_timeout_s`. A PermanentEnvironmentError
    moves the manager to `unavailable`, after which it never retries.
    """

    def __init__(
        self,
        *,
        store: RemoteMailStore,
        retry_policy: RetryPolicy | None = None,
        query_timeout_s: float = 15.0,
        health_check_interval_s: float = 60.0,
        auto_reconnect: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the manager.

        Args:
            store: Remote mail store adapter.
            retry_policy: Backoff schedule for `connect()`.
            query_timeout_s: Timeout applied to every remote call.
            health_check_interval_s: Seconds between health probes.
            auto_reconnect: Reconnect from disconnected/failed on health ticks.
            sleep: Awaitable used for backoff waits (injectable for tests).
        """
        self._store = store
        self._policy = retry_policy or RetryPolicy()
        self._query_timeout_s = query_timeout_s
        self._auto_reconnect = auto_reconnect
        self._sleep = sleep

        self._lifecycle = LifecycleManager()
        self._connect_lock = asyncio.Lock()
        self._attempts = 0
        self._last_error: str | None = None
        self._last_connected_at: datetime | None = None
        self._capabilities: dict[str, Any] = {}
        self._folders_cache: list[RemoteFolder] | None = None
        self._subscriptions: dict[str, Subscription] = {}
        self._push_available: bool | None = None
        self._listeners: list[ConnectedListener] = []
        self._listeners_pending = False
        self._health = IntervalDriver(
            name="health_check",
            interval_s=health_check_interval_s,
            fn=self.health_check,
        )

    @property
    def store(self) -> RemoteMailStore:
        return self._store

    @property
    def state(self) -> ConnectionState:
        return self._lifecycle.state

    @property
    def lifecycle(self) -> LifecycleManager:
        return self._lifecycle

    def is_connected(self) -> bool:
        return self._lifecycle.state == ConnectionState.connected

    def get_connection_info(self) -> ConnectionInfo:
        return ConnectionInfo(
            state=self._lifecycle.state,
            attempts=self._attempts,
            last_error=self._last_error,
            last_connected_at=self._last_connected_at,
            capabilities=dict(self._capabilities),
            push_available=self._push_available,
            subscribed_folders=sorted(self._subscriptions),
        )

    def add_connected_listener(self, listener: ConnectedListener) -> None:
        """Register a coroutine run after every successful reconnect.

        Also run on the first successful connect after `init()` failed to
        connect, since the caller never got to set up its session then.
        """
        self._listeners.append(listener)

    async def init(self) -> bool:
        """Connect and start the health-check loop.

        Returns:
            True if the first connection succeeded.
        """
        connected = await self.connect()
        if self.state != ConnectionState.unavailable:
            self._listeners_pending = not connected
            self._health.start()
        return connected

    async def dispose(self) -> None:
        """Stop health checks, drop subscriptions and close the link."""
        await self._health.stop()
        await self._close_subscriptions()
        if self.state in (ConnectionState.connected, ConnectionState.connecting, ConnectionState.failed):
            if self.state == ConnectionState.connected:
                await self._close_quietly()
            self._lifecycle.transition(ConnectionState.disconnected, reason="disposed")
        self._folders_cache = None

    async def connect(self) -> bool:
        """Establish the link, retrying with linear backoff.

        Returns:
            True once connected; False when attempts are exhausted (`failed`)
            or the environment is permanently unusable (`unavailable`).
        """
        async with self._connect_lock:
            if self.state == ConnectionState.connected:
                return True
            if self.state == ConnectionState.unavailable:
                return False

            reconnect = self._last_connected_at is not None or self._listeners_pending
            self._lifecycle.transition(ConnectionState.connecting)
            try:
                await asyncio.wait_for(self._store.check_environment(), timeout=self._query_timeout_s)
            except PermanentEnvironmentError as exc:
                self._mark_unavailable(exc)
                return False
            except (RemoteStoreError, TimeoutError, OSError) as exc:
                logger.warning(
                    "Environment check inconclusive: %r",
                    exc,
                    extra={"operation": "check_environment", "folder": None, "item_id": None},
                )

            for attempt in range(1, self._policy.max_retries + 1):
                self._attempts = attempt
                try:
                    capabilities = await asyncio.wait_for(self._store.open(), timeout=self._query_timeout_s)
                except PermanentEnvironmentError as exc:
                    self._mark_unavailable(exc)
                    return False
                except (RemoteStoreError, TimeoutError, OSError) as exc:
                    self._last_error = repr(exc)
                    logger.warning(
                        "Connection attempt %d/%d failed: %r",
                        attempt,
                        self._policy.max_retries,
                        exc,
                        extra={"operation": "open", "folder": None, "item_id": None},
                    )
                    if self._policy.should_retry(attempt):
                        await self._sleep(self._policy.delay_for(attempt))
                    continue

                self._attempts = 0
                self._last_error = None
                self._last_connected_at = datetime.now(tz=UTC)
                self._capabilities = dict(capabilities or {})
                self._listeners_pending = False
                self._lifecycle.transition(ConnectionState.connected)
                break
            else:
                self._lifecycle.transition(
                    ConnectionState.failed,
                    reason=f"{self._policy.max_retries} attempts exhausted",
                )
                logger.error(
                    "Giving up connecting after %d attempts",
                    self._policy.max_retries,
                    extra={"operation": "open", "folder": None, "item_id": None},
                )
                return False

        if not reconnect:
            return True
        for listener in list(self._listeners):
            try:
                await listener()
            except Exception:
                logger.exception("Connected listener failed", extra={"operation": "connect"})
        return True

    async def health_check(self) -> ConnectionState:
        """Probe the link, then reconnect if it is down and auto-reconnect is on.

        Returns:
            State after the check.
        """
        if self.state == ConnectionState.unavailable:
            return self.state

        if self.state == ConnectionState.connected:
            try:
                await asyncio.wait_for(self._store.probe(), timeout=self._query_timeout_s)
            except (RemoteStoreError, TimeoutError, OSError) as exc:
                self._last_error = repr(exc)
                logger.warning(
                    "Health probe failed: %r",
                    exc,
                    extra={"operation": "probe", "folder": None, "item_id": None},
                )
                self._lifecycle.transition(ConnectionState.disconnected, reason="probe failed")
                self._folders_cache = None
                await self._close_subscriptions()
                await self._close_quietly()
            else:
                return self.state

        if self._auto_reconnect and self.state in (ConnectionState.disconnected, ConnectionState.failed):
            await self.connect()
        return self.state

    async def call(
        self,
        operation: str,
        fn: Callable[[], Awaitable[T]],
        *,
        folder: str | None = None,
        item_id: str | None = None,
    ) -> T:
        """Run one remote query bounded by the query timeout.

        Raises:
            TransientRemoteError: If not connected, on timeout or on transport errors.
            RemoteStoreError: Other store errors, with missing context filled in.
        """
        if not self.is_connected():
            raise TransientRemoteError(
                f"Not connected (state={self.state.value})",
                operation=operation,
                folder=folder,
                item_id=item_id,
            )
        try:
            return await asyncio.wait_for(fn(), timeout=self._query_timeout_s)
        except TimeoutError as exc:
            raise TransientRemoteError(
                f"{operation} timed out after {self._query_timeout_s}s",
                operation=operation,
                folder=folder,
                item_id=item_id,
            ) from exc
        except RemoteStoreError as exc:
            exc.operation = exc.operation or operation
            exc.folder = exc.folder or folder
            exc.item_id = exc.item_id or item_id
            raise
        except OSError as exc:
            raise TransientRemoteError(
                f"{operation} failed: {exc!r}",
                operation=operation,
                folder=folder,
                item_id=item_id,
            ) from exc

    async def list_folders(self, *, refresh: bool = False) -> list[RemoteFolder]:
        """Return remote folders, cached until the link drops."""
        if self._folders_cache is None or refresh:
            self._folders_cache = await self.call("list_folders", self._store.list_folders)
        return list(self._folders_cache)

    async def subscribe(self, folders: Iterable[str], channel: ChangeChannel) -> list[str]:
        """Subscribe each folder to push notifications feeding `channel`.

        Returns:
            Folders newly subscribed. Empty when the store is poll-only.
        """
        if self._push_available is False:
            return []
        subscribed: list[str] = []
        for folder in folders:
            if folder in self._subscriptions:
                continue

            def _on_change(item_id: str, kind: ChangeKind, _folder: str = folder) -> None:
                channel.publish(ItemChange(item_id=item_id, kind=kind, folder_path=_folder))

            try:
                subscription = await self.call(
                    "subscribe",
                    lambda _folder=folder, _cb=_on_change: self._store.subscribe(_folder, _cb),
                    folder=folder,
                )
            except SubscriptionUnavailableError:
                self._push_available = False
                logger.info(
                    "Push notifications unavailable, running poll-only",
                    extra={"operation": "subscribe", "folder": folder, "item_id": None},
                )
                return subscribed
            except TransientRemoteError as exc:
                logger.warning(
                    "Subscription failed: %s",
                    exc,
                    extra=exc.log_context(),
                )
                continue
            self._push_available = True
            self._subscriptions[folder] = subscription
            subscribed.append(folder)
        return subscribed

    async def unsubscribe(self, folder: str) -> None:
        subscription = self._subscriptions.pop(folder, None)
        if subscription is not None:
            await self._close_subscription(folder, subscription)

    async def _close_subscriptions(self) -> None:
        subscriptions, self._subscriptions = self._subscriptions, {}
        for folder, subscription in subscriptions.items():
            await self._close_subscription(folder, subscription)

    async def _close_subscription(self, folder: str, subscription: Subscription) -> None:
        try:
            await asyncio.wait_for(subscription.close(), timeout=self._query_timeout_s)
        except (RemoteStoreError, TimeoutError, OSError) as exc:
            logger.debug("Closing subscription of %s failed: %r", folder, exc)

    async def _close_quietly(self) -> None:
        try:
            await asyncio.wait_for(self._store.close(), timeout=self._query_timeout_s)
        except (RemoteStoreError, TimeoutError, OSError) as exc:
            logger.debug("Closing remote store failed: %r", exc)

    def _mark_unavailable(self, exc: PermanentEnvironmentError) -> None:
        self._last_error = str(exc)
        self._lifecycle.transition(ConnectionState.unavailable, reason=str(exc))
        logger.error(
            "Remote store unavailable, synchronization disabled: %s",
            exc,
            extra=exc.log_context(),
        )
