"""Session store exceptions.

Exception hierarchy:
- SessionStoreError (base)
  - StoreInitializationError (connection could not be established)
  - StoreNotInitializedError (operation issued before init() or after quit())

Command failures raised by the Redis client itself (``redis.exceptions``)
are not wrapped: they reach the caller unchanged.
"""


class SessionStoreError(Exception):
    """Base exception for session store errors."""

    pass


class StoreInitializationError(SessionStoreError):
    """Raised when the backing client cannot be created or connected."""

    pass


class StoreNotInitializedError(SessionStoreError):
    """Raised when the store is used without a connected client."""

    pass
