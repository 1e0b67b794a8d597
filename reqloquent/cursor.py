from __future__ import annotations
from .errors import tert
from .interfaces import AsyncFeedProtocol
from inspect import isawaitable
from typing import TYPE_CHECKING, Any, Callable, Optional, Type
import logging

if TYPE_CHECKING:
    from .classes import Model


logger = logging.getLogger(__name__)


class Change:
    """One change from a live subscription, hydrated into models."""
    model: Type[Model]
    raw: dict
    old_val: Optional[Model]
    new_val: Optional[Model]

    def __init__(self, model: Type[Model], raw: dict) -> None:
        tert(isinstance(raw, dict), 'raw change must be dict')
        self.model = model
        self.raw = raw
        old_val, new_val = raw.get('old_val'), raw.get('new_val')
        self.old_val = None if old_val is None else model.from_record(old_val)
        self.new_val = None if new_val is None else model.from_record(new_val)

    def __repr__(self) -> str:
        return f'Change(old_val={self.old_val!r}, new_val={self.new_val!r})'

    def diff(self) -> dict|Model:
        """The id and the schema properties whose values changed. If
            only one side is present, that model is returned.
        """
        if self.old_val is None and self.new_val is None:
            return {}
        if self.old_val is None:
            return self.new_val
        if self.new_val is None:
            return self.old_val

        diff = {'id': self.new_val.id}
        for name in self.model.namespace.schema:
            value = self.new_val.data.get(name)
            if value != self.old_val.data.get(name):
                diff[name] = value
        return diff


class ModelCursor:
    """Wraps a change feed to yield Change events for a model."""
    model: Type[Model]
    feed: AsyncFeedProtocol

    def __init__(self, model: Type[Model], feed: AsyncFeedProtocol) -> None:
        tert(isinstance(feed, AsyncFeedProtocol), 'feed must implement AsyncFeedProtocol')
        self.model = model
        self.feed = feed

    async def next(self) -> Change:
        """Wait for the next change. State messages are skipped."""
        while True:
            raw = await self.feed.next()
            if 'state' in raw:
                logger.debug('%s feed state: %s', self.model.__name__, raw['state'])
                continue
            return Change(self.model, raw)

    def __aiter__(self) -> ModelCursor:
        return self

    async def __anext__(self) -> Change:
        return await self.next()

    async def each(self, callback: Callable[[Change], Any]) -> None:
        """Call callback with each change, awaiting it if it returns an
            awaitable, until the feed is closed.
        """
        async for change in self:
            result = callback(change)
            if isawaitable(result):
                await result

    def close(self) -> None:
        self.feed.close()
