# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Redis Backend for LibroSync

Distributed storage for titles, members and reservations. Every guarded
read-modify-write (counter moves, hold placement and withdrawal, status
compare-and-set with its counters, versioned counter overwrites and
abandonment cooldowns) is a server-side Lua script, so concurrent engine
processes sharing one Redis linearize on it.

Key layout (``ns`` is the namespace):

    ns:title:<id>                   hash   Title.to_mapping()
    ns:member:<id>                  hash   Member.to_mapping()
    ns:reservation:<id>             hash   Reservation.to_mapping()
    ns:titles / ns:members          set    ids
    ns:reservations                 set    ids
    ns:title:<id>:reservations      set    reservation ids per title
    ns:member:<id>:reservations     set    reservation ids per member
    ns:holds                        zset   open hold ids scored by expires_at
"""

import asyncio
import contextlib
import logging
import os
from collections.abc import Iterator, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, ClassVar

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    NoScriptError,
    RedisError,
    TimeoutError as RedisTimeoutError,
)

from ..exceptions import (
    BackendConnectionError,
    BackendOperationError,
    ConcurrentUpdateError,
    MemberNotFoundError,
    ReservationNotFoundError,
    TitleNotFoundError,
)
from ..observability.constants import (
    BACKEND_CONNECTION_ERRORS_TOTAL,
    BACKEND_LUA_EXECUTIONS_TOTAL,
)
from ..observability.protocols import MetricsCollectorProtocol
from ..types import (
    CounterField,
    Member,
    Reservation,
    ReservationStatus,
    Title,
)
from ..types._codec import decode_datetime, decode_int, decode_str, encode_datetime
from .base import (
    TRANSITION_FIELDS,
    BaseBackend,
    HealthCheckResult,
    HoldOutcome,
    HoldResult,
    MoveResult,
    StatusChange,
    TransitionResult,
)

logger = logging.getLogger(__name__)


def _pairs_to_dict(values: Any) -> dict[Any, Any]:
    """Convert a flat HGETALL-style reply from a Lua script into a dict."""
    if isinstance(values, dict):
        return values
    items = list(values or [])
    return dict(zip(items[::2], items[1::2]))


class RedisBackend(BaseBackend):
    """
    A distributed Redis backend for the reservation engine.

    This backend uses:
    - One hash per record, plus index sets for listing
    - A sorted set of open holds for expiry scans
    - Atomic Lua scripts for all guarded mutations

    Deployment Requirements:
    - Redis 2.6+ (EVALSHA)
    - Single-node or replicated Redis; the scripts touch more than one key
      and are not hash-tagged for Redis Cluster
    """

    # Class-level Lua scripts loaded from files
    _lua_scripts: ClassVar[dict[str, str]] = {}

    SCRIPT_NAMES: ClassVar[tuple[str, ...]] = (
        "move_copy",
        "transition_reservation",
        "place_hold",
        "withdraw_hold",
        "record_abandonment",
        "overwrite_title_counters",
        "overwrite_member_counter",
    )

    @classmethod
    def _load_lua_scripts(cls) -> None:
        """Load Lua scripts from files at class level."""
        if cls._lua_scripts:
            return  # Already loaded

        lua_dir = Path(__file__).parent / "lua"

        for script_name in cls.SCRIPT_NAMES:
            script_path = lua_dir / f"{script_name}.lua"
            if script_path.exists():
                cls._lua_scripts[script_name] = script_path.read_text(encoding="utf-8")
            else:
                logger.warning(f"Lua script not found: {script_path}")

    def __init__(
        self,
        redis_url: str | None = None,
        redis_client: Any | None = None,
        namespace: str = "librosync",
        max_connections: int = 10,
        metrics: MetricsCollectorProtocol | None = None,
    ) -> None:
        """
        Initialize the Redis backend.

        Args:
            redis_url: Redis connection URL. If not provided, falls back to REDIS_URL
                environment variable, then to "redis://localhost:6379".
            redis_client: Optional pre-configured Redis client (not closed by us)
            namespace: Namespace prefix for keys
            max_connections: Maximum connections in the pool
            metrics: Optional metrics collector for script and error counters

        Environment Variables:
            REDIS_URL: Default Redis connection URL when redis_url parameter is not provided.
        """
        super().__init__(namespace)

        self.redis_url = (
            redis_url or os.environ.get("REDIS_URL") or "redis://localhost:6379"
        )
        self.max_connections = max_connections
        self._metrics = metrics

        self._redis: Any | None = redis_client
        self._owned_redis = redis_client is None
        self._connection_lock = asyncio.Lock()

        # Lua script SHAs
        self._script_shas: dict[str, str] = {}

    # ==========================================================================
    # Keys
    # ==========================================================================

    def _title_key(self, title_id: str) -> str:
        return f"{self.namespace}:title:{title_id}"

    def _member_key(self, member_id: str) -> str:
        return f"{self.namespace}:member:{member_id}"

    def _reservation_key(self, reservation_id: str) -> str:
        return f"{self.namespace}:reservation:{reservation_id}"

    def _title_reservations_key(self, title_id: str) -> str:
        return f"{self.namespace}:title:{title_id}:reservations"

    def _member_reservations_key(self, member_id: str) -> str:
        return f"{self.namespace}:member:{member_id}:reservations"

    @property
    def _titles_key(self) -> str:
        return f"{self.namespace}:titles"

    @property
    def _members_key(self) -> str:
        return f"{self.namespace}:members"

    @property
    def _reservations_key(self) -> str:
        return f"{self.namespace}:reservations"

    @property
    def _holds_key(self) -> str:
        return f"{self.namespace}:holds"

    # ==========================================================================
    # Connection and scripts
    # ==========================================================================

    async def _ensure_connected(self) -> Any:
        """Return the Redis client, creating the pool on first use."""
        if self._redis is not None:
            return self._redis

        async with self._connection_lock:
            if self._redis is None:
                pool = ConnectionPool.from_url(
                    self.redis_url,
                    max_connections=self.max_connections,
                    decode_responses=True,
                    socket_connect_timeout=5,
                    socket_timeout=5,
                    retry_on_timeout=True,
                    health_check_interval=30,
                )
                self._redis = Redis(connection_pool=pool)
                logger.info(f"Connected Redis backend to {self.redis_url}")
        return self._redis

    async def _load_scripts(self) -> None:
        """Load Lua scripts into Redis."""
        redis_client = await self._ensure_connected()

        self.__class__._load_lua_scripts()

        for script_name, script_source in self._lua_scripts.items():
            self._script_shas[script_name] = await redis_client.script_load(
                script_source
            )

    async def _evalsha_with_reload(
        self,
        script_name: str,
        num_keys: int,
        *args: Any,
    ) -> Any:
        """
        Execute EVALSHA with automatic script reload on NoScriptError.

        When Redis restarts or fails over, all Lua scripts are lost. This
        method detects the NoScriptError and transparently reloads the
        scripts, then retries the operation once.
        """
        redis_client = await self._ensure_connected()
        script_sha = self._script_shas.get(script_name)
        if not script_sha:
            await self._load_scripts()
            script_sha = self._script_shas[script_name]

        if self._metrics is not None:
            self._metrics.inc_counter(
                BACKEND_LUA_EXECUTIONS_TOTAL, labels={"script_name": script_name}
            )

        try:
            return await redis_client.evalsha(script_sha, num_keys, *args)
        except NoScriptError:
            logger.warning(
                f"Script '{script_name}' not found in Redis (SHA: {script_sha}). "
                f"Reloading all Lua scripts..."
            )
            self._script_shas.clear()
            await self._load_scripts()

            # Retry with new SHA (only once to prevent infinite loop)
            new_sha = self._script_shas[script_name]
            logger.info(f"Scripts reloaded. Retrying with new SHA: {new_sha}")
            return await redis_client.evalsha(new_sha, num_keys, *args)

    @contextlib.contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        """Map redis-py exceptions onto the library's backend errors."""
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as e:
            logger.error(f"Redis connection error during {operation}: {e}")
            if self._metrics is not None:
                self._metrics.inc_counter(
                    BACKEND_CONNECTION_ERRORS_TOTAL,
                    labels={"error_type": type(e).__name__},
                )
            raise BackendConnectionError(f"{operation}: {e}") from e
        except RedisError as e:
            logger.error(f"Redis error during {operation}: {e}")
            raise BackendOperationError(f"{operation}: {e}") from e

    async def _load_reservations(self, ids: list[Any]) -> list[Reservation]:
        if not ids:
            return []
        redis_client = await self._ensure_connected()
        async with redis_client.pipeline(transaction=False) as pipe:
            for reservation_id in ids:
                pipe.hgetall(self._reservation_key(decode_str(reservation_id)))
            rows = await pipe.execute()
        # Index entries can briefly outlive a deleted record
        return [Reservation.from_mapping(row) for row in rows if row]

    # ==========================================================================
    # Titles
    # ==========================================================================

    async def upsert_title(self, title: Title) -> None:
        with self._translate_errors("upsert_title"):
            redis_client = await self._ensure_connected()
            async with redis_client.pipeline(transaction=True) as pipe:
                pipe.hset(self._title_key(title.id), mapping=title.to_mapping())
                pipe.sadd(self._titles_key, title.id)
                await pipe.execute()

    async def get_title(self, title_id: str) -> Title | None:
        with self._translate_errors("get_title"):
            redis_client = await self._ensure_connected()
            data = await redis_client.hgetall(self._title_key(title_id))
        return Title.from_mapping(data) if data else None

    async def list_title_ids(self) -> list[str]:
        with self._translate_errors("list_title_ids"):
            redis_client = await self._ensure_connected()
            ids = await redis_client.smembers(self._titles_key)
        return sorted(decode_str(i) for i in ids)

    async def move_copy(
        self, title_id: str, source: CounterField, target: CounterField
    ) -> MoveResult:
        with self._translate_errors("move_copy"):
            applied, fields = await self._evalsha_with_reload(
                "move_copy",
                1,
                self._title_key(title_id),
                source.value,
                target.value,
            )
        applied = int(applied)
        if applied < 0:
            raise TitleNotFoundError(title_id)
        return MoveResult(
            applied=applied == 1, title=Title.from_mapping(_pairs_to_dict(fields))
        )

    async def overwrite_title_counters(
        self,
        title_id: str,
        available: int,
        reserved: int,
        borrowed: int,
        lost: int,
        expected_version: int | None = None,
    ) -> Title:
        with self._translate_errors("overwrite_title_counters"):
            status, fields = await self._evalsha_with_reload(
                "overwrite_title_counters",
                1,
                self._title_key(title_id),
                str(available),
                str(reserved),
                str(borrowed),
                str(lost),
                "" if expected_version is None else str(expected_version),
            )
        status = int(status)
        if status < 0:
            raise TitleNotFoundError(title_id)
        title = Title.from_mapping(_pairs_to_dict(fields))
        if status == 0:
            raise ConcurrentUpdateError(
                f"Title {title_id} is at version {title.version}, "
                f"expected {expected_version}"
            )
        return title

    # ==========================================================================
    # Members
    # ==========================================================================

    async def upsert_member(self, member: Member) -> None:
        with self._translate_errors("upsert_member"):
            redis_client = await self._ensure_connected()
            async with redis_client.pipeline(transaction=True) as pipe:
                pipe.hset(self._member_key(member.id), mapping=member.to_mapping())
                pipe.sadd(self._members_key, member.id)
                await pipe.execute()

    async def get_member(self, member_id: str) -> Member | None:
        with self._translate_errors("get_member"):
            redis_client = await self._ensure_connected()
            data = await redis_client.hgetall(self._member_key(member_id))
        return Member.from_mapping(data) if data else None

    async def list_member_ids(self) -> list[str]:
        with self._translate_errors("list_member_ids"):
            redis_client = await self._ensure_connected()
            ids = await redis_client.smembers(self._members_key)
        return sorted(decode_str(i) for i in ids)

    async def set_active_reservations(
        self, member_id: str, value: int, expected_version: int | None = None
    ) -> None:
        with self._translate_errors("set_active_reservations"):
            status, version = await self._evalsha_with_reload(
                "overwrite_member_counter",
                1,
                self._member_key(member_id),
                str(value),
                "" if expected_version is None else str(expected_version),
            )
        status = int(status)
        if status < 0:
            raise MemberNotFoundError(member_id)
        if status == 0:
            raise ConcurrentUpdateError(
                f"Member {member_id} is at version {int(version)}, "
                f"expected {expected_version}"
            )

    async def record_abandonment(
        self, member_id: str, schedule: Sequence[datetime]
    ) -> tuple[int, datetime]:
        with self._translate_errors("record_abandonment"):
            attempts, value = await self._evalsha_with_reload(
                "record_abandonment",
                1,
                self._member_key(member_id),
                *(encode_datetime(until) for until in schedule),
            )
        attempts = int(attempts)
        if attempts < 0:
            raise MemberNotFoundError(member_id)
        effective = decode_datetime(value)
        if effective is None:
            effective = schedule[min(attempts, len(schedule)) - 1]
        return attempts, effective

    # ==========================================================================
    # Reservations
    # ==========================================================================

    def _hold_keys(self, reservation: Reservation) -> list[str]:
        return [
            self._reservations_key,
            self._member_reservations_key(reservation.member_id),
            self._title_reservations_key(reservation.title_id),
            self._holds_key,
        ]

    async def place_hold(
        self, reservation: Reservation, member_limit: int | None = None
    ) -> HoldResult:
        mapping = reservation.to_mapping()
        if not reservation.reminder_sent:
            # Absent until set, so HSETNX gives first-writer-wins
            del mapping["reminder_sent"]
        args: list[str] = []
        for name, value in mapping.items():
            args.extend((name, value))

        with self._translate_errors("place_hold"):
            status, fields, active = await self._evalsha_with_reload(
                "place_hold",
                7,
                self._title_key(reservation.title_id),
                self._member_key(reservation.member_id),
                self._reservation_key(reservation.id),
                *self._hold_keys(reservation),
                reservation.id,
                "" if member_limit is None else str(member_limit),
                str(reservation.expires_at.timestamp()),
                *args,
            )
        status = int(status)
        if status == -1:
            raise TitleNotFoundError(reservation.title_id)
        if status == -2:
            raise MemberNotFoundError(reservation.member_id)

        outcome = {
            1: HoldOutcome.PLACED,
            0: HoldOutcome.NO_COPIES,
            2: HoldOutcome.LIMIT_REACHED,
        }[status]
        return HoldResult(
            outcome=outcome,
            title=Title.from_mapping(_pairs_to_dict(fields)),
            active_reservations=int(active),
        )

    async def withdraw_hold(self, reservation: Reservation) -> bool:
        with self._translate_errors("withdraw_hold"):
            result = await self._evalsha_with_reload(
                "withdraw_hold",
                7,
                self._reservation_key(reservation.id),
                self._title_key(reservation.title_id),
                self._member_key(reservation.member_id),
                *self._hold_keys(reservation),
                reservation.id,
            )
        return int(result) == 1

    async def get_reservation(self, reservation_id: str) -> Reservation | None:
        with self._translate_errors("get_reservation"):
            redis_client = await self._ensure_connected()
            data = await redis_client.hgetall(self._reservation_key(reservation_id))
        return Reservation.from_mapping(data) if data else None

    async def transition_reservation(
        self,
        change: StatusChange,
        move: tuple[CounterField, CounterField] | None = None,
    ) -> TransitionResult:
        updated = change.updated
        mapping = updated.to_mapping()
        args: list[str] = []
        for name in TRANSITION_FIELDS:
            args.extend((name, mapping[name]))
        source, target = move if move is not None else (None, None)

        with self._translate_errors("transition_reservation"):
            status, moved, adjusted, fields = await self._evalsha_with_reload(
                "transition_reservation",
                4,
                self._reservation_key(updated.id),
                self._holds_key,
                self._title_key(updated.title_id),
                self._member_key(updated.member_id),
                change.expected.value,
                updated.id,
                str(updated.expires_at.timestamp()),
                source.value if source is not None else "",
                target.value if target is not None else "",
                str(change.member_delta),
                *args,
            )
        status = int(status)
        if status == -1:
            raise ReservationNotFoundError(updated.id)
        if status == -2:
            raise TitleNotFoundError(updated.title_id)
        if status == -3:
            raise MemberNotFoundError(updated.member_id)

        title_fields = _pairs_to_dict(fields)
        return TransitionResult(
            written=status == 1,
            moved=int(moved) == 1,
            member_adjusted=int(adjusted) == 1,
            title=Title.from_mapping(title_fields) if title_fields else None,
        )

    async def list_reservations(
        self,
        member_id: str | None = None,
        title_id: str | None = None,
        status: ReservationStatus | None = None,
    ) -> list[Reservation]:
        if member_id is not None:
            index_key = self._member_reservations_key(member_id)
        elif title_id is not None:
            index_key = self._title_reservations_key(title_id)
        else:
            index_key = self._reservations_key

        with self._translate_errors("list_reservations"):
            redis_client = await self._ensure_connected()
            ids = await redis_client.smembers(index_key)
            reservations = await self._load_reservations(list(ids))

        return [
            r
            for r in reservations
            if (member_id is None or r.member_id == member_id)
            and (title_id is None or r.title_id == title_id)
            and (status is None or r.status is status)
        ]

    async def find_expired_holds(self, now: datetime) -> list[Reservation]:
        with self._translate_errors("find_expired_holds"):
            redis_client = await self._ensure_connected()
            ids = await redis_client.zrangebyscore(
                self._holds_key, "-inf", f"({now.timestamp()}"
            )
            reservations = await self._load_reservations(list(ids))
        return [
            r
            for r in reservations
            if r.status is ReservationStatus.RESERVED and r.expires_at < now
        ]

    async def find_holds_expiring_before(self, deadline: datetime) -> list[Reservation]:
        with self._translate_errors("find_holds_expiring_before"):
            redis_client = await self._ensure_connected()
            ids = await redis_client.zrangebyscore(
                self._holds_key, "-inf", deadline.timestamp()
            )
            reservations = await self._load_reservations(list(ids))
        return [r for r in reservations if r.status is ReservationStatus.RESERVED]

    async def mark_reminder_sent(self, reservation_id: str) -> bool:
        key = self._reservation_key(reservation_id)
        with self._translate_errors("mark_reminder_sent"):
            redis_client = await self._ensure_connected()
            if not await redis_client.exists(key):
                raise ReservationNotFoundError(reservation_id)
            return bool(await redis_client.hsetnx(key, "reminder_sent", "1"))

    async def count_reservations_by_status(
        self, title_id: str
    ) -> dict[ReservationStatus, int]:
        with self._translate_errors("count_reservations_by_status"):
            redis_client = await self._ensure_connected()
            ids = list(await redis_client.smembers(self._title_reservations_key(title_id)))
            async with redis_client.pipeline(transaction=False) as pipe:
                for reservation_id in ids:
                    pipe.hget(
                        self._reservation_key(decode_str(reservation_id)), "status"
                    )
                statuses = await pipe.execute() if ids else []

        counts = dict.fromkeys(ReservationStatus, 0)
        for raw in statuses:
            if raw:
                counts[ReservationStatus(decode_str(raw))] += 1
        return counts

    # ==========================================================================
    # Lifecycle
    # ==========================================================================

    async def health_check(self) -> HealthCheckResult:
        """Perform health check on the backend."""
        try:
            redis_client = await self._ensure_connected()
            await redis_client.ping()
            title_count = await redis_client.scard(self._titles_key)
            reservation_count = await redis_client.scard(self._reservations_key)
            open_holds = await redis_client.zcard(self._holds_key)
        except RedisError as e:
            return HealthCheckResult(
                healthy=False,
                backend_type="redis",
                namespace=self.namespace,
                error=str(e),
            )

        return HealthCheckResult(
            healthy=True,
            backend_type="redis",
            namespace=self.namespace,
            metadata={
                "redis_url": self.redis_url,
                "titles_count": decode_int(title_count),
                "reservations_count": decode_int(reservation_count),
                "open_holds": decode_int(open_holds),
                "scripts_loaded": sorted(self._script_shas),
            },
        )

    async def clear(self) -> None:
        """Clear every key in this namespace."""
        with self._translate_errors("clear"):
            redis_client = await self._ensure_connected()
            cursor = 0
            while True:
                cursor, keys = await redis_client.scan(
                    cursor, match=f"{self.namespace}:*", count=100
                )
                if keys:
                    await redis_client.delete(*keys)
                if cursor == 0:
                    break

    async def close(self) -> None:
        """Clean up backend resources."""
        if self._redis is not None and self._owned_redis:
            try:
                await asyncio.wait_for(self._redis.aclose(), timeout=2.5)
            except asyncio.TimeoutError:
                logger.warning("Redis connection close timed out")
            finally:
                self._redis = None

    async def __aenter__(self) -> "RedisBackend":
        """Async context manager entry."""
        await self._ensure_connected()
        return self

    async def __aexit__(self, exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
