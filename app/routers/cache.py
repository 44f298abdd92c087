from typing import Literal

from fastapi import APIRouter, Query

from app.cache.keys import CacheKeys
from app.dependencies import CacheDep, OwnerDep

router = APIRouter(prefix="/cache", tags=["cache"])


@router.get("")
async def cache_status(owner_id: OwnerDep, cache: CacheDep):
    """Cache health plus what is currently cached for the caller"""
    return {
        "health": await cache.health_check(),
        "keys": {
            "todos": await cache.exists(CacheKeys.user_todos(owner_id)),
            "stats": await cache.exists(CacheKeys.user_stats(owner_id)),
        },
        "active": await cache.is_user_active(owner_id),
        "stats": cache.get_stats(),
    }


@router.delete("")
async def clear_cache(
    owner_id: OwnerDep,
    cache: CacheDep,
    type: Literal["user", "search"] = Query(default="user"),
):
    if type == "search":
        cleared = await cache.delete_pattern(CacheKeys.search(owner_id))
    else:
        keys = [CacheKeys.user_todos(owner_id), CacheKeys.user_stats(owner_id)]
        cleared = 0
        for key in keys:
            if await cache.exists(key):
                cleared += 1
        await cache.delete(keys)
    return {"clearedKeys": cleared, "type": type}
