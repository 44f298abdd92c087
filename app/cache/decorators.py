from functools import wraps
from typing import Callable, Optional

from app.cache.keys import CacheKeys


def read_through(key_builder: Callable[..., str], ttl: Optional[int] = None):
    """
    Decorator for async service methods. key_builder receives the same
    args/kwargs minus ``self``; the instance must expose ``self.cache``.
    Example:
      @read_through(lambda todo_id: f"todo:{todo_id}", ttl=120)
      async def get_todo(self, todo_id): ...
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            key = key_builder(*args, **kwargs)

            # loader closure calls the original method
            async def loader():
                value = await fn(self, *args, **kwargs)
                if value is None:
                    return None
                if hasattr(value, "model_dump"):
                    return value.model_dump(mode="json")
                return value

            return await self.cache.get_or_load(key, loader, ttl)

        return wrapper

    return decorator


def invalidates_owner(publish: Optional[str] = None, serialize: Optional[Callable] = None):
    """
    Write-path side effects for service methods returning the written
    todo(s). Once the write went through, the owner's collection and stats
    keys and each todo's own key are dropped, then one ``publish`` event per
    todo goes out. A falsy result means nothing was written.
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            result = await fn(self, *args, **kwargs)
            if not result:
                return result

            todos = result if isinstance(result, list) else [result]
            await self.cache.invalidate_user_todos(self.owner_id)
            await self.cache.delete([CacheKeys.todo_item(todo.id) for todo in todos])

            if publish:
                for todo in todos:
                    data = serialize(todo) if serialize else todo.model_dump(mode="json")
                    await self.events.publish_todo_event(publish, data, self.owner_id)
            return result

        return wrapper

    return decorator
