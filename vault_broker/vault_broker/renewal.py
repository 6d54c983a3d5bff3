"""Lease renewal scheduler.

Every renewable token the broker keeps alive gets exactly one ``asyncio``
task, keyed by an opaque string (the binding ID for bindings).  A task sleeps
until its deadline, renews the token with ``renew-self``, and loops with a new
immutable :class:`Lease` snapshot:

* renewal succeeds -- the next deadline is half the fresh lease duration;
* renewal fails before the lease's absolute expiry -- retry after a fixed
  backoff;
* renewal fails at or after expiry -- the key is dropped and ``on_dropped``
  is called.  The token is *not* revoked; it simply dies upstream.

Deadlines that are already in the past when a lease is scheduled (typical
after a restart) are replaced by a small random delay so a broker restarting
with many bindings does not renew them all in the same instant.

Tasks are independent: a slow renewal for one key never delays another.
"""

from __future__ import annotations

import asyncio
import logging
import random
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime, timedelta

from vault_broker.vault import VaultClient

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
RenewedCallback = Callable[["Lease"], Awaitable[None]]
DroppedCallback = Callable[[str], Awaitable[None]]


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Lease:
    """Immutable snapshot of one token's current lease."""

    token: str = field(repr=False)
    accessor: str
    lease_duration_seconds: int
    issued_at: datetime

    @property
    def expires_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.lease_duration_seconds)

    @property
    def renewal_due_at(self) -> datetime:
        return self.issued_at + timedelta(seconds=self.lease_duration_seconds / 2)

    def renewed(self, lease_duration_seconds: int, at: datetime) -> Lease:
        return replace(self, lease_duration_seconds=lease_duration_seconds, issued_at=at)


class _Entry:
    """Bookkeeping for one scheduled key; only its own task moves ``deadline``."""

    __slots__ = ("key", "accessor", "deadline", "task")

    def __init__(self, key: str, accessor: str, deadline: datetime) -> None:
        self.key = key
        self.accessor = accessor
        self.deadline = deadline
        self.task: asyncio.Task[None] | None = None


class RenewalScheduler:
    """One cancellable renewal task per key.

    Parameters
    ----------
    vault:
        Client used for ``renew-self`` calls.
    retry_seconds:
        Fixed delay before retrying a failed renewal.
    max_jitter_seconds:
        Upper bound of the random delay used for overdue deadlines.
    clock:
        Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        vault: VaultClient,
        *,
        retry_seconds: float = 30.0,
        max_jitter_seconds: float = 5.0,
        clock: Clock = utcnow,
    ) -> None:
        self._vault = vault
        self._retry_seconds = retry_seconds
        self._max_jitter_seconds = max_jitter_seconds
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = threading.Lock()

    # -- Introspection -------------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._entries)

    def is_scheduled(self, key: str) -> bool:
        return key in self

    def next_renewal_at(self, key: str) -> datetime | None:
        """Return when *key* will next be renewed, or ``None`` if not scheduled."""
        with self._lock:
            entry = self._entries.get(key)
            return entry.deadline if entry is not None else None

    # -- Scheduling ----------------------------------------------------------

    def schedule(
        self,
        key: str,
        lease: Lease,
        *,
        on_renewed: RenewedCallback | None = None,
        on_dropped: DroppedCallback | None = None,
    ) -> datetime:
        """Start renewing *lease* under *key* and return the first deadline.

        Must be called from inside a running event loop.  Scheduling a key that
        already has a task cancels that task first, so a key never has two.
        """
        deadline = self._first_deadline(lease)
        entry = _Entry(key, lease.accessor, deadline)
        entry.task = asyncio.create_task(
            self._run(entry, lease, on_renewed, on_dropped),
            name=f"renew-{key}",
        )
        with self._lock:
            previous = self._entries.get(key)
            self._entries[key] = entry
        if previous is not None and previous.task is not None:
            logger.warning("renew-token (%s): replacing existing renewal for %s", previous.accessor, key)
            previous.task.cancel()
        logger.debug("renew-token (%s): next renewal for %s at %s", lease.accessor, key, deadline.isoformat())
        return deadline

    async def cancel(self, key: str) -> bool:
        """Stop renewing *key*; returns once its task has fully finished.

        Returns ``True`` if a task was cancelled, ``False`` if none existed.
        """
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None or entry.task is None:
            return False
        entry.task.cancel()
        try:
            await entry.task
        except asyncio.CancelledError:
            pass
        logger.info("renew-token (%s): stopped renewer for %s", entry.accessor, key)
        return True

    async def shutdown(self, grace_seconds: float = 5.0) -> None:
        """Cancel every task, waiting at most *grace_seconds* for them to unwind."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        tasks = [entry.task for entry in entries if entry.task is not None]
        for task in tasks:
            task.cancel()
        if not tasks:
            return
        _done, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        if pending:
            logger.warning("%d renewal task(s) still unwinding after %.1fs", len(pending), grace_seconds)

    # -- Internal ------------------------------------------------------------

    def _first_deadline(self, lease: Lease) -> datetime:
        now = self._clock()
        due = lease.renewal_due_at
        if due > now:
            return due
        jitter = random.uniform(0, self._max_jitter_seconds)  # noqa: S311
        return now + timedelta(seconds=jitter)

    def _discard(self, entry: _Entry) -> None:
        with self._lock:
            if self._entries.get(entry.key) is entry:
                del self._entries[entry.key]

    async def _run(
        self,
        entry: _Entry,
        lease: Lease,
        on_renewed: RenewedCallback | None,
        on_dropped: DroppedCallback | None,
    ) -> None:
        while True:
            delay = (entry.deadline - self._clock()).total_seconds()
            if delay > 0:
                await asyncio.sleep(delay)

            try:
                auth = await self._vault.renew_self(lease.token)
            except Exception as exc:
                now = self._clock()
                if now >= lease.expires_at:
                    logger.warning(
                        "renew-token (%s): renewer stopped, token probably expired at %s: %s",
                        lease.accessor,
                        lease.expires_at.isoformat(),
                        exc,
                    )
                    await self._drop(entry, on_dropped)
                    return
                logger.error(
                    "renew-token (%s): renewal failed, retrying in %.0fs: %s",
                    lease.accessor,
                    self._retry_seconds,
                    exc,
                )
                entry.deadline = now + timedelta(seconds=self._retry_seconds)
                continue

            now = self._clock()
            if auth.lease_duration <= 0:
                logger.info("renew-token (%s): token has no lease duration, nothing left to renew", lease.accessor)
                await self._drop(entry, on_dropped)
                return

            lease = lease.renewed(auth.lease_duration, now)
            logger.info(
                "renew-token (%s): successfully renewed token (%s)",
                lease.accessor,
                timedelta(seconds=auth.lease_duration),
            )
            entry.deadline = lease.renewal_due_at

            if on_renewed is not None:
                try:
                    await on_renewed(lease)
                except Exception as exc:
                    logger.warning("renew-token (%s): post-renewal hook failed: %s", lease.accessor, exc)

    async def _drop(self, entry: _Entry, on_dropped: DroppedCallback | None) -> None:
        self._discard(entry)
        if on_dropped is None:
            return
        try:
            await on_dropped(entry.key)
        except Exception as exc:
            logger.warning("renew-token (%s): drop hook failed: %s", entry.accessor, exc)
