"""
    Reqloquent is an async ORM for document stores with a RethinkDB-style
    query language. Models declare a schema, relations, indexes, and
    traits; a Database resolves the relation graph and creates tables
    on connect. Queries are immutable, type-tracked chains that wrap
    their results in models, and `populate` merges related records
    inline. The default binding is a sqlite document store through
    aiosqlite.
"""

from reqloquent.classes import (
    Model,
    SaveContext,
)
from reqloquent.cursor import (
    Change,
    ModelCursor,
)
from reqloquent.database import Database
from reqloquent.errors import (
    TransitionError,
    UniquenessViolationError,
    QueryError,
    NonExistenceError,
)
from reqloquent.interfaces import (
    AsyncDocumentStoreProtocol,
    AsyncFeedProtocol,
    RelationProtocol,
)
from reqloquent.namespace import (
    Namespace,
    SchemaProperty,
    IndexSpec,
)
from reqloquent.point import Point
from reqloquent.query import Query
from reqloquent.relations import (
    RelatedCollection,
    HasOne,
    BelongsTo,
    HasMany,
    ManyToMany,
    has_one,
    belongs_to,
    has_many,
    has_and_belongs_to_many,
)
from reqloquent.shapes import Op, Shape
from reqloquent.store import SqliteDocumentStore
from reqloquent.terms import r
from reqloquent.traits import (
    Trait,
    Timestamp,
    SoftDelete,
    UniqueProperty,
    Private,
)
from reqloquent.version import version
