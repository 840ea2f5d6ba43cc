"""
Connection Probe: counts the client sessions open against the local PostgreSQL
instance.
"""

import errno
import re
from typing import Any, Dict, Optional, Protocol

import asyncpg
from loguru import logger

from .errors import ProbeConnectionRefusedError, ProbeError, ProbeQueryError

MAX_POOL_SIZE = 50  # stay well below max_connections of small instances
COMMAND_TIMEOUT = 30

ACTIVE_SESSIONS_QUERY = (
    "SELECT COUNT(*) FROM pg_stat_activity "
    "WHERE state IN ('active', 'idle', 'idle in transaction') "
    "AND pg_backend_pid() != pg_stat_activity.pid "
    "AND usename != 'streaming_replica';"
)

# key=value, where value is bare or single quoted with backslash escapes
_CONNINFO_PARAM = re.compile(r"\s*(\w+)\s*=\s*(?:'((?:[^'\\]|\\.)*)'|((?:[^\s'\\]|\\.)*))(?=\s|$)")
_ESCAPED_CHAR = re.compile(r"\\(.)")

# Failures after which the pool is rebuilt with freshly read credentials.
_REFUSED_ERRORS = (
    ConnectionRefusedError,
    asyncpg.exceptions.InvalidPasswordError,
    asyncpg.exceptions.InvalidAuthorizationSpecificationError,
)


class ActivityProbe(Protocol):
    """Operations the hibernation controller needs from the database probe."""

    async def count_active_sessions(self) -> int: ...

    async def close(self) -> None: ...


def is_connection_refused(error: BaseException) -> bool:
    """Whether ``error`` means the database cannot be reached with the current pool."""
    if isinstance(error, (ProbeConnectionRefusedError, *_REFUSED_ERRORS)):
        return True
    return isinstance(error, OSError) and error.errno == errno.ECONNREFUSED


def parse_conninfo(conninfo: str) -> Dict[str, Any]:
    """Translate a ``key=value`` libpq connection string into asyncpg connect arguments."""
    params = {}
    conninfo = conninfo.strip()
    pos = 0
    while pos < len(conninfo):
        match = _CONNINFO_PARAM.match(conninfo, pos)
        if match is None:
            raise ValueError(f"Invalid connection string near position {pos}")
        key, quoted, bare = match.groups()
        params[key] = _ESCAPED_CHAR.sub(r"\1", quoted if quoted is not None else bare)
        pos = match.end()

    kwargs: Dict[str, Any] = {}
    if "host" in params:
        kwargs["host"] = params["host"]
    if "port" in params:
        kwargs["port"] = int(params["port"])
    if "user" in params:
        kwargs["user"] = params["user"]
    if "password" in params:
        kwargs["password"] = params["password"]
    if "dbname" in params:
        kwargs["database"] = params["dbname"]
    if "sslmode" in params:
        kwargs["ssl"] = params["sslmode"]
    return kwargs


class PostgresProbe:
    """
    ActivityProbe backed by an asyncpg pool.

    The pool is created on first use, so building a probe never touches the
    network. The probe holds no retry logic: on a refused connection the owner
    is expected to close it and build a new one with fresh credentials.
    """

    def __init__(self, conninfo: str, max_size: int = MAX_POOL_SIZE):
        try:
            self._connect_kwargs = parse_conninfo(conninfo)
        except ValueError as e:
            raise ProbeError(f"invalid connection string: {e}") from e
        self.max_size = max_size
        self.pool: Optional[asyncpg.Pool] = None

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            logger.debug(
                f"Creating PostgreSQL pool for {self._connect_kwargs.get('host')}:{self._connect_kwargs.get('port')} "
                f"(max_size={self.max_size})"
            )
            self.pool = await asyncpg.create_pool(
                min_size=0,
                max_size=self.max_size,
                command_timeout=COMMAND_TIMEOUT,
                **self._connect_kwargs,
            )
        return self.pool

    async def count_active_sessions(self) -> int:
        try:
            pool = await self._ensure_pool()
            count = await pool.fetchval(ACTIVE_SESSIONS_QUERY)
        except Exception as e:
            if is_connection_refused(e):
                raise ProbeConnectionRefusedError(f"failed to connect to PostgreSQL: {e}") from e
            raise ProbeQueryError(f"failed to query open connections: {e}") from e
        return int(count or 0)

    async def close(self) -> None:
        if self.pool is None:
            return
        pool, self.pool = self.pool, None
        await pool.close()
