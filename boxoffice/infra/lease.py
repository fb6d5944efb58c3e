from typing import Optional
import redis.asyncio as redis

from ..helpers import new_id


def k_lease(name: str) -> str:
    return f"lease:{name}"


async def acquire_lease(r: redis.Redis, name: str,
                        ttl_seconds: int) -> Optional[str]:
    """SET NX EX; returns our token, or None when someone else holds it."""
    token = new_id()
    ok = await r.set(k_lease(name), token, nx=True, ex=max(1, ttl_seconds))
    return token if ok else None


async def release_lease(r: redis.Redis, name: str, token: str) -> bool:
    # only drop the lease if it is still ours; expiry covers a crash
    # between the get and the delete
    if await r.get(k_lease(name)) != token:
        return False
    await r.delete(k_lease(name))
    return True
