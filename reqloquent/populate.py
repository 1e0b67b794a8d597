"""
    Populate expander. Rewrites a query so that every result carries
    its related records inline, following the relation graph of the
    bound model.

    A selector chooses which relations to expand: None expands all of
    them, True or False expands nothing further, and a dict maps
    relation property names to nested selectors. Expansion is guarded
    by the set of model types already expanded along the current path;
    a relation pointing back into that set is merged as a plain lookup
    without expanding its own relations, so cyclic graphs terminate.
"""

from __future__ import annotations
from .errors import tressa, tert
from .shapes import Shape
from .terms import Term, r
from typing import TYPE_CHECKING, Type

if TYPE_CHECKING:
    from .classes import Model
    from .namespace import Namespace
    from .query import Query


def wants(selector: dict|bool|None, property: str) -> bool:
    """Whether the selector asks for the relation property."""
    if selector is None:
        return True
    if isinstance(selector, dict):
        return property in selector
    return False

def child_selector(selector: dict|bool|None, property: str) -> dict|bool|None:
    if selector is None:
        return None
    return selector[property]

def expand_relations(row: Term, namespace: Namespace, selector: dict|bool|None,
                     visited: frozenset[Type[Model]]) -> dict[str, Term]:
    """Build the fields to merge into row: one sub-query per selected
        relation, in the order belongs_to, has_one, has_many,
        many_to_many.
    """
    fields = {}
    for relation in namespace.relations():
        if not wants(selector, relation.property):
            continue

        nested = child_selector(selector, relation.property)
        expand = None
        if relation.model not in visited and type(nested) is not bool:
            target = relation.model.namespace
            path = visited | {relation.model}
            expand = lambda record, target=target, nested=nested, path=path: \
                expand_relations(record, target, nested, path)

        fields[relation.property] = relation.populate(row, expand)
    return fields

def populate_query(query: Query, selector: dict|bool|None = None) -> Query:
    """Return a new query merging related records into each result.
        A query yielding one record is merged with `do` behind a null
        guard; any other query is merged with `map`. Raises UsageError
        if the query is not bound to a model, or TypeError for an
        invalid selector.
    """
    tressa(query.model is not None, 'populate requires a query bound to a model')
    tert(selector is None or type(selector) in (bool, dict),
        'selector must be dict|bool|None')

    namespace = query.model.namespace
    visited = frozenset({query.model})

    def merge(row: Term) -> Term:
        return row.merge(expand_relations(row, namespace, selector, visited))

    if query.shape in (Shape.SINGLE_SELECTION, Shape.OBJECT):
        return query.do(lambda row: r.branch(row.eq(None), None, merge(row)))
    return query.map(merge)
