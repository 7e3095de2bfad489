"""Shared async helpers."""
import asyncio
import logging
from typing import Awaitable, TypeVar

from rbac_core.core.exceptions import DependencyError, RBACError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def bounded(awaitable: Awaitable[T], timeout: float, dependency: str) -> T:
    """
    Await a collaborator call with a timeout.

    Timeouts and unexpected driver errors are raised as DependencyError;
    RBAC errors raised by the collaborator pass through unchanged.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError as e:
        raise DependencyError(f"{dependency} timed out after {timeout}s", dependency=dependency) from e
    except RBACError:
        raise
    except asyncio.CancelledError:
        raise
    except Exception as e:
        raise DependencyError(f"{dependency} unavailable: {e}", dependency=dependency) from e
