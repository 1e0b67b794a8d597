"""
    The interfaces used by the package. `AsyncDocumentStoreProtocol`
    and `AsyncFeedProtocol` must be implemented to bind the library to
    a different document store; `SqliteDocumentStore` is the default
    binding. Custom relations should implement `RelationProtocol` and
    return a property from `create_property`.
"""

from __future__ import annotations
from typing import Any, Callable, Optional, Protocol, Type, runtime_checkable


@runtime_checkable
class AsyncFeedProtocol(Protocol):
    """Interface showing how a live change subscription should behave."""
    async def next(self) -> dict:
        """Wait for and return the next change: a dict of {'old_val',
            'new_val'}, or a {'state'} control message.
        """
        ...

    def close(self) -> None:
        """Stop the subscription."""
        ...

    def __aiter__(self) -> AsyncFeedProtocol:
        ...

    async def __anext__(self) -> dict:
        ...


@runtime_checkable
class AsyncDocumentStoreProtocol(Protocol):
    """Interface showing how a document store should behave."""
    def __init__(self, connection_info: str = '') -> None:
        """Using the connection_info parameter is optional but should be
            supported, overriding a class attribute default only if it
            is not empty.
        """
        ...

    async def connect(self) -> None:
        """Open the underlying connection."""
        ...

    async def close(self) -> None:
        """Close the connection and all live subscriptions."""
        ...

    async def ensure_table(self, name: str) -> None:
        """Create the table if it does not exist and wait until it is
            ready.
        """
        ...

    async def ensure_index(self, table: str, name: Optional[str] = None,
                           properties: tuple[str, ...] = (), multi: bool = False,
                           geo: bool = False) -> None:
        """Create the index if it does not exist and wait until it is
            ready. A single top-level property names its own index when
            name is None; nested and compound indexes must be named.
        """
        ...

    async def table_list(self) -> list[str]:
        """Return the names of all tables."""
        ...

    async def drop_table(self, name: str) -> None:
        """Drop the table if it exists."""
        ...

    async def execute(self, term: Any) -> Any:
        """Execute an expression tree and return a document, a list of
            values, a feed, or a write acknowledgement.
        """
        ...


@runtime_checkable
class RelationProtocol(Protocol):
    """Interface for a resolved relation between two models."""
    kind: str
    property: str
    model: Type[Any]

    def create_property(self) -> property:
        """Produce a property to be set on the declaring model class."""
        ...

    def load(self, instance: Any, value: Any, cache: dict) -> None:
        """Set related record(s) hydrated from a database payload
            without tracking them as changes.
        """
        ...

    async def save(self, instance: Any, context: Any) -> None:
        """Persist the relation of instance within a save call."""
        ...

    def populate(self, row: Any, expand: Optional[Callable] = None) -> Any:
        """Build the sub-query merging related record(s) into row."""
        ...
