"""Cache key namespaces shared by the backend and the sync engine.

Keys are composed as ``<namespace>:<scope>:<id>``. Every namespace has its
own leading segment so pattern deletes never cross namespaces.
"""

TODOS_TTL = 300
STATS_TTL = 300
TODO_ITEM_TTL = 120
SESSION_TTL = 86400
ACTIVITY_TTL = 1800


class CacheKeys:
    @staticmethod
    def user_todos(owner_id: str) -> str:
        return f"todos:user:{owner_id}"

    @staticmethod
    def user_stats(owner_id: str) -> str:
        return f"stats:user:{owner_id}"

    @staticmethod
    def todo_item(todo_id: str) -> str:
        return f"todo:{todo_id}"

    @staticmethod
    def session(session_id: str) -> str:
        return f"session:{session_id}"

    @staticmethod
    def user_activity(owner_id: str) -> str:
        return f"activity:user:{owner_id}"

    @staticmethod
    def rate_limit(identifier: str) -> str:
        return f"ratelimit:{identifier}"

    @staticmethod
    def search(owner_id: str) -> str:
        return f"search:{owner_id}:*"


# Namespaces the memory guard may shed. Sessions and rate-limit counters
# are never evicted.
EVICTABLE_PATTERNS = (
    "todos:user:*",
    "stats:user:*",
    "todo:*",
    "activity:user:*",
)


def namespace_of(key: str) -> str:
    return key.split(":", 1)[0]
