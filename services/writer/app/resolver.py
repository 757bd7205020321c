import threading
from typing import Optional

import structlog
from shared.schemas import MetricIdentity

from app.connection import ConnectionManager
from app.core.exceptions import CardinalityError, NullIdentifierError
from app.core.prometheus import tracker
from app.identifier_cache import IdentifierCache

logger = structlog.get_logger()


class IdentifierResolver:
    """
    Maps a MetricIdentity to its identifier row id.

    Fast path: a cache lookup under the cache lock.
    Slow path: select-or-insert against the store. Two threads racing on an
    unseen identity could both miss the select and both insert, so the whole
    round trip runs under the cache lock and re-checks the cache first.

    Lock order is always connection lock → cache lock. The fast path takes
    only the cache lock and never waits on the connection while holding it.
    """

    def __init__(
        self,
        connection: ConnectionManager,
        cache: Optional[IdentifierCache] = None,
    ):
        self._connection = connection
        self._cache = cache if cache is not None else IdentifierCache()
        self._lock = threading.Lock()

    @property
    def cache(self) -> IdentifierCache:
        return self._cache

    def resolve(self, identity: MetricIdentity) -> int:
        """
        Raises StoreConnectionError when the connection is down, and
        BindError / ExecutionError / CardinalityError / NullIdentifierError
        when the store round trip fails.
        """
        key = identity.cache_key()
        target = self._connection.name

        with self._lock:
            identifier_id = self._cache.lookup(key)
        if identifier_id is not None:
            tracker.record_cache(target, hit=True)
            return identifier_id

        tracker.record_cache(target, hit=False)
        logger.debug("identifier_cache_miss", target=target, identifier=key)

        with self._connection.lock, self._lock:
            # Another writer may have resolved it while we waited.
            identifier_id = self._cache.lookup(key)
            if identifier_id is not None:
                return identifier_id

            identifier_id = self._select_or_insert(identity)
            self._cache.insert(key, identifier_id)

        return identifier_id

    def _select_or_insert(self, identity: MetricIdentity) -> int:
        statements = self._connection.statements
        rows = self._connection.fetch_all(
            statements.identifier_select, identity.lookup_params(), identity
        )
        logger.debug(
            "identifier_selected",
            target=self._connection.name,
            identifier=str(identity),
            rows=len(rows),
        )

        if not rows:
            return self._insert(identity)

        if len(rows) > 1:
            logger.error(
                "identifier_not_unique",
                target=self._connection.name,
                **identity.insert_params(),
                rows=len(rows),
            )
            raise CardinalityError(
                "identifier lookup returned more than one row",
                expected=1,
                actual=len(rows),
                identity=identity,
            )

        identifier_id = rows[0][0]
        if identifier_id is None:
            # If this ever happens it happens on every write of the series.
            logger.error(
                "identifier_id_null",
                target=self._connection.name,
                **identity.insert_params(),
            )
            raise NullIdentifierError("identifier lookup returned a NULL id", identity)
        return int(identifier_id)

    def _insert(self, identity: MetricIdentity) -> int:
        statements = self._connection.statements
        result = self._connection.execute(
            statements.identifier_insert, identity.insert_params(), identity
        )

        if result.rowcount != 1:
            logger.error(
                "identifier_insert_rowcount",
                target=self._connection.name,
                **identity.insert_params(),
                rows=result.rowcount,
            )
            raise CardinalityError(
                "identifier insert affected an unexpected number of rows",
                expected=1,
                actual=result.rowcount,
                identity=identity,
            )

        primary_key = result.inserted_primary_key
        identifier_id = primary_key[0] if primary_key else None
        if identifier_id is None:
            raise NullIdentifierError("store returned no id for new identifier", identity)

        tracker.record_identifier_created(self._connection.name)
        logger.info(
            "identifier_created",
            target=self._connection.name,
            identifier=str(identity),
            id=identifier_id,
        )
        return int(identifier_id)
