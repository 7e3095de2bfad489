"""
Permission cache

Two kinds of entries, both advisory and reconstructible from the registry
and the persistent store:
- permission:{user}:{permission}:{resource|global}[:owner]  check decisions (300s)
- user_permissions:{user}                                   resolved assignments (600s)

User and resource ids are percent-encoded so a ':' inside an id cannot
collide with another key.

Every entry is stamped with the registry fingerprint and the user's
generation token. invalidate_user rotates the token, so an entry computed
from assignments read before the rotation is a miss afterwards, even when
it is written after the keys were deleted.

Read/write failures degrade to a miss and are logged. Invalidation
failures are raised so the caller can report them.
"""
import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from rbac_core.core.exceptions import DependencyError
from rbac_core.core.redis_client import CacheStore, escape_glob
from rbac_core.core.types import Decision
from rbac_core.core.utils import bounded

logger = logging.getLogger(__name__)

CHECK_KEY_PREFIX = "permission:"
SET_KEY_PREFIX = "user_permissions:"
GENERATION_KEY_PREFIX = "permission_generation:"

DEFAULT_CHECK_TTL_SECONDS = 300
DEFAULT_SET_TTL_SECONDS = 600
# Outlives any entry stamped with the previous token
GENERATION_TTL_SECONDS = 86400
INITIAL_GENERATION = "0"


def _segment(value: str) -> str:
    return quote(value, safe="")


class PermissionCache:
    """Cache layer over a CacheStore with bounded round-trips."""

    def __init__(
        self,
        store: CacheStore,
        check_ttl: int = DEFAULT_CHECK_TTL_SECONDS,
        set_ttl: int = DEFAULT_SET_TTL_SECONDS,
        timeout: float = 0.5,
    ):
        self.store = store
        self.check_ttl = check_ttl
        self.set_ttl = set_ttl
        self.timeout = timeout

    # ----- Keys -----

    @staticmethod
    def check_key(user_id: str, permission: str, resource_id: Optional[str] = None, owner: bool = False) -> str:
        resource = _segment(resource_id) if resource_id else "global"
        key = f"{CHECK_KEY_PREFIX}{_segment(user_id)}:{permission}:{resource}"
        return f"{key}:owner" if owner else key

    @staticmethod
    def set_key(user_id: str) -> str:
        return f"{SET_KEY_PREFIX}{_segment(user_id)}"

    @staticmethod
    def generation_key(user_id: str) -> str:
        return f"{GENERATION_KEY_PREFIX}{_segment(user_id)}"

    async def _call(self, awaitable):
        return await bounded(awaitable, self.timeout, "cache")

    # ----- Stamps -----

    async def stamp(self, user_id: str, fingerprint: str) -> Optional[str]:
        """
        Stamp for entries computed from this point on.

        Read before the persistent store is consulted. Returns None when
        the generation cannot be read; nothing is cached or served then.
        """
        try:
            generation = await self._call(self.store.get(self.generation_key(user_id)))
        except DependencyError as e:
            logger.warning(f"Permission generation read failed for {user_id}: {e.message}")
            return None
        return f"{fingerprint}:{generation or INITIAL_GENERATION}"

    # ----- Check decisions -----

    async def get_decision(self, key: str, stamp: Optional[str]) -> Optional[Decision]:
        if stamp is None:
            return None
        try:
            data = await self._call(self.store.get(key))
        except DependencyError as e:
            logger.warning(f"Permission cache read failed, computing directly: {e.message}")
            return None
        if not data or data.get("stamp") != stamp:
            return None
        return Decision.from_dict(data["decision"], cached=True)

    async def set_decision(self, key: str, decision: Decision, stamp: Optional[str], ttl: Optional[int] = None) -> bool:
        ttl = self.check_ttl if ttl is None else min(ttl, self.check_ttl)
        if stamp is None or ttl <= 0:
            return False
        payload = {"stamp": stamp, "decision": decision.to_dict()}
        try:
            await self._call(self.store.set(key, payload, ttl))
            return True
        except DependencyError as e:
            logger.warning(f"Permission cache write failed for {key}: {e.message}")
            return False

    # ----- Resolved permission sets -----

    async def get_permission_set(self, user_id: str, stamp: Optional[str]) -> Optional[List[Dict[str, Any]]]:
        if stamp is None:
            return None
        try:
            data = await self._call(self.store.get(self.set_key(user_id)))
        except DependencyError as e:
            logger.warning(f"Permission set cache read failed for {user_id}: {e.message}")
            return None
        if not data or data.get("stamp") != stamp:
            return None
        return data["assignments"]

    async def set_permission_set(self, user_id: str, assignments: List[Dict[str, Any]], stamp: Optional[str]) -> bool:
        if stamp is None:
            return False
        payload = {"stamp": stamp, "assignments": assignments}
        try:
            await self._call(self.store.set(self.set_key(user_id), payload, self.set_ttl))
            return True
        except DependencyError as e:
            logger.warning(f"Permission set cache write failed for {user_id}: {e.message}")
            return False

    # ----- Invalidation -----

    async def invalidate_user(self, user_id: str) -> int:
        """
        Rotate the principal's generation, then drop the resolved set and
        every check decision.

        Raises:
            DependencyError: the cache store could not be reached
        """
        await self._call(
            self.store.set(self.generation_key(user_id), uuid.uuid4().hex, GENERATION_TTL_SECONDS)
        )
        pattern = f"{CHECK_KEY_PREFIX}{escape_glob(_segment(user_id))}:*"
        check_keys = await self._call(self.store.keys(pattern))
        removed = await self._call(self.store.delete(self.set_key(user_id), *check_keys))
        logger.debug(f"Invalidated {removed} permission cache entries for {user_id}")
        return removed

    async def invalidate_all(self) -> int:
        """Drop every permission cache entry (after a role definition changes)."""
        keys = await self._call(self.store.keys(f"{CHECK_KEY_PREFIX}*"))
        keys += await self._call(self.store.keys(f"{SET_KEY_PREFIX}*"))
        if not keys:
            return 0
        removed = await self._call(self.store.delete(*keys))
        logger.info(f"Invalidated {removed} permission cache entries")
        return removed

    async def close(self) -> None:
        try:
            await asyncio.wait_for(self.store.close(), self.timeout)
        except Exception as e:
            logger.warning(f"Cache store close failed: {e}")
