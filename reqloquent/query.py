from __future__ import annotations
from .cursor import ModelCursor
from .errors import TransitionError, tressa
from .populate import populate_query
from .shapes import (
    Op,
    Shape,
    FILTERABLE_SHAPES,
    INVALID_FILTER_OPS,
    RECORD_SHAPES,
    SEQUENCE_SHAPES,
    transition,
)
from .terms import Operations, Term, wrap
from inspect import isawaitable
from typing import TYPE_CHECKING, Any, Optional, Type
import logging

if TYPE_CHECKING:
    from .classes import Model
    from .database import Database


logger = logging.getLogger(__name__)


class Query(Operations):
    """Immutable, type-tracked chain of primitive operations. Every
        verb returns a new Query; the receiver is never changed. Each
        step is checked against the transition table, so an illegal
        chain raises TransitionError when it is built.
    """
    model: Optional[Type[Model]]
    database: Optional[Database]
    ops: tuple[tuple[Op, tuple, dict], ...]
    shapes: tuple[Shape, ...]
    notes: dict

    def __init__(self, model: Type[Model] = None, database: Database = None,
                 ops: tuple = (), shapes: tuple = (Shape.ROOT,),
                 notes: dict = None) -> None:
        self.model = model
        if database is None and model is not None:
            database = model.database
        self.database = database
        self.ops = tuple(ops)
        self.shapes = tuple(shapes)
        self.notes = dict(notes or {})

    def __repr__(self) -> str:
        model = self.model.__name__ if self.model is not None else None
        return f'{self.__class__.__name__}(model={model}, ' + \
            f'shape={self.shape.value}, term={self.to_term()!r})'

    @property
    def shape(self) -> Shape:
        """The shape the chain currently produces."""
        return self.shapes[-1]

    def _extend(self, ops: tuple, shapes: tuple, notes: dict = None) -> Query:
        return self.__class__(
            model=self.model,
            database=self.database,
            ops=ops,
            shapes=shapes,
            notes=self.notes if notes is None else notes,
        )

    def _apply(self, op: Op, args: tuple, optargs: dict) -> Query:
        following = transition(self.shape, op)
        return self._extend(
            ops=self.ops + ((op, args, optargs),),
            shapes=self.shapes + (following,),
        )

    @staticmethod
    def replay(ops: tuple) -> tuple[Shape, ...]:
        """Compute the shapes for a sequence of operations. Raises
            TransitionError if the sequence is illegal.
        """
        shapes = [Shape.ROOT]
        for op, _, _ in ops:
            shapes.append(transition(shapes[-1], op))
        return tuple(shapes)

    def with_notes(self, **notes) -> Query:
        """Return a new chain with the given notes added. Notes are a
            side channel for coordinating hooks.
        """
        return self._extend(self.ops, self.shapes, {**self.notes, **notes})

    def tap_filter_right(self, predicate: dict|Any) -> Query:
        """Splice a filter in after the last step whose shape can be
            filtered, scanning backward from the end of the chain and
            never past a `changes` subscription. Returns the receiver
            unchanged if the chain contains an operation that cannot
            be filtered (e.g. insert or index_create) or if no splice
            point yields a legal chain.
        """
        if any([op in INVALID_FILTER_OPS for op, _, _ in self.ops]):
            return self

        limit = len(self.ops)
        for position, (op, _, _) in enumerate(self.ops):
            if op is Op.CHANGES:
                limit = position
                break

        step = (Op.FILTER, (wrap(predicate),), {})
        for position in range(limit, -1, -1):
            if self.shapes[position] not in FILTERABLE_SHAPES:
                continue
            ops = self.ops[:position] + (step,) + self.ops[position:]
            try:
                shapes = self.replay(ops)
            except TransitionError:
                continue
            return self._extend(ops, shapes)

        logger.debug('no filter splice point in %r', self)
        return self

    def to_term(self) -> Term|None:
        """Compose the chain into a single expression tree."""
        term = None
        for op, args, optargs in self.ops:
            term = Term(op, term, args, optargs)
        return term

    def populate(self, selector: dict|bool|None = None) -> Query:
        """Merge related records into the results. See
            `reqloquent.populate.populate_query`.
        """
        return populate_query(self, selector)

    async def run(self) -> Any:
        """Apply before_run hooks, execute the chain, and interpret the
            response according to the final shape. Raises UsageError if
            the chain is not bound to a database. Execution errors
            propagate unchanged.
        """
        query = self
        if self.model is not None:
            for hook in self.model.namespace.hooks['before_run']:
                query = hook(query)
                if isawaitable(query):
                    query = await query

        tressa(query.database is not None, 'query must be bound to a Database to run')
        tressa(len(query.ops) > 0, 'cannot run an empty query')
        response = await query.database.execute(query.to_term())
        return query.process_response(response)

    def process_response(self, response: Any) -> Any:
        """Wrap documents in the bound model: a single document with an
            id becomes a Model, a changes feed becomes a ModelCursor,
            and documents with ids in a sequence become Models. Anything
            else passes through unmodified.
        """
        if response is None or self.model is None:
            return response

        if self.ops[-1][0] is Op.CHANGES:
            return ModelCursor(self.model, response)

        if isinstance(response, dict):
            if 'id' in response and self.shape in RECORD_SHAPES:
                return self.model.from_record(response)
            return response

        if isinstance(response, list) and self.shape in SEQUENCE_SHAPES:
            cache = {}
            return [
                self.model.from_record(item, cache)
                if isinstance(item, dict) and 'id' in item else item
                for item in response
            ]

        return response
