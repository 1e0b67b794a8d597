"""
    Query terms: the untracked expression tree handed to a document
    store for execution, and the `Operations` mixin holding the verb
    vocabulary shared by terms and typed query chains. Use `r` to start
    expressions inside functions and sub-queries, e.g.
    `r.table('Weapon').get_all(row['weapon_id']).nth(0).default(None)`.
"""

from __future__ import annotations
from .shapes import Op
from abc import abstractmethod
from inspect import signature
from itertools import count
from typing import Any, Callable


_var_ids = count(1)


class Operations:
    """Verb vocabulary. Subclasses decide what applying an operation
        means by implementing `_apply`.
    """

    @abstractmethod
    def _apply(self, op: Op, args: tuple, optargs: dict) -> Any:
        raise NotImplementedError()

    def _call(self, op: Op, *args, **optargs) -> Any:
        return self._apply(
            op,
            tuple(wrap(a) for a in args),
            {k: wrap(v) for k, v in optargs.items() if v is not None},
        )

    # root
    def db(self, name: str):
        return self._call(Op.DB, name)

    def table(self, name: str):
        return self._call(Op.TABLE, name)

    def table_create(self, name: str):
        return self._call(Op.TABLE_CREATE, name)

    def table_drop(self, name: str):
        return self._call(Op.TABLE_DROP, name)

    def table_list(self):
        return self._call(Op.TABLE_LIST)

    def expr(self, value: Any):
        return self._call(Op.EXPR, value)

    def branch(self, test: Any, true_value: Any, false_value: Any):
        """Evaluate true_value if test is neither False nor None, else
            false_value. Only the chosen branch is evaluated.
        """
        return self._call(Op.BRANCH, test, true_value, false_value)

    def uuid(self):
        return self._call(Op.UUID)

    def now(self):
        return self._call(Op.NOW)

    def point(self, longitude: Any, latitude: Any):
        return self._call(Op.POINT, longitude, latitude)

    def error(self, message: str):
        return self._call(Op.ERROR, message)

    def asc(self, key: str|Callable):
        return self._call(Op.ASC, key)

    def desc(self, key: str|Callable):
        return self._call(Op.DESC, key)

    def range(self, start: int, end: int = None):
        if end is None:
            return self._call(Op.RANGE, start)
        return self._call(Op.RANGE, start, end)

    def iso8601(self, value: str):
        return self._call(Op.ISO8601, value)

    def epoch_time(self, seconds: int|float):
        return self._call(Op.EPOCH_TIME, seconds)

    def object(self, *pairs):
        return self._call(Op.OBJECT, *pairs)

    # table administration
    def index_create(self, name: str, function: Callable = None, multi: bool = False,
                     geo: bool = False):
        """Create a secondary index. Without a function, the index
            covers the property with the same name as the index.
        """
        if function is None:
            return self._call(Op.INDEX_CREATE, name, multi=multi, geo=geo)
        return self._call(Op.INDEX_CREATE, name, function, multi=multi, geo=geo)

    def index_drop(self, name: str):
        return self._call(Op.INDEX_DROP, name)

    def index_list(self):
        return self._call(Op.INDEX_LIST)

    def index_rename(self, old_name: str, new_name: str):
        return self._call(Op.INDEX_RENAME, old_name, new_name)

    def index_status(self, *names: str):
        return self._call(Op.INDEX_STATUS, *names)

    def index_wait(self, *names: str):
        return self._call(Op.INDEX_WAIT, *names)

    def sync(self):
        return self._call(Op.SYNC)

    def wait(self):
        return self._call(Op.WAIT)

    # writes
    def insert(self, documents: dict|list[dict], conflict: str = 'error',
               return_changes: bool = False):
        """Insert one or more documents. conflict is one of 'error',
            'replace', or 'update'.
        """
        return self._call(
            Op.INSERT, documents, conflict=conflict, return_changes=return_changes
        )

    def update(self, changes: dict|Callable, return_changes: bool = False):
        return self._call(Op.UPDATE, changes, return_changes=return_changes)

    def replace(self, document: dict|Callable, return_changes: bool = False):
        return self._call(Op.REPLACE, document, return_changes=return_changes)

    def delete(self, return_changes: bool = False):
        return self._call(Op.DELETE, return_changes=return_changes)

    # selecting
    def get(self, key: Any):
        return self._call(Op.GET, key)

    def get_all(self, *keys: Any, index: str = 'id'):
        return self._call(Op.GET_ALL, *keys, index=index)

    def between(self, lower: Any, upper: Any, index: str = 'id',
                left_bound: str = 'closed', right_bound: str = 'open'):
        return self._call(
            Op.BETWEEN, lower, upper, index=index,
            left_bound=left_bound, right_bound=right_bound,
        )

    def get_nearest(self, point: Any, index: str, max_results: int = 100,
                    max_dist: int|float = 100000):
        """Documents nearest to point by the geo index, as a list of
            {'dist': meters, 'doc': document}.
        """
        return self._call(
            Op.GET_NEAREST, point, index=index,
            max_results=max_results, max_dist=max_dist,
        )

    # sequences
    def filter(self, predicate: dict|Callable|Any, default: bool = False):
        """Keep elements matching predicate: a dict of expected field
            values or a function returning a truthy value. Elements for
            which the predicate reads a missing field count as default.
        """
        return self._call(Op.FILTER, predicate, default=default)

    def map(self, function: Callable):
        return self._call(Op.MAP, function)

    def concat_map(self, function: Callable):
        return self._call(Op.CONCAT_MAP, function)

    def with_fields(self, *fields: str):
        return self._call(Op.WITH_FIELDS, *fields)

    def order_by(self, *keys: str|Callable|Any, index: str = None):
        return self._call(Op.ORDER_BY, *keys, index=index)

    def skip(self, n: int):
        return self._call(Op.SKIP, n)

    def limit(self, n: int):
        return self._call(Op.LIMIT, n)

    def slice(self, start: int, end: int = None):
        if end is None:
            return self._call(Op.SLICE, start)
        return self._call(Op.SLICE, start, end)

    def nth(self, index: int):
        return self._call(Op.NTH, index)

    def offsets_of(self, value: Any|Callable):
        return self._call(Op.OFFSETS_OF, value)

    def is_empty(self):
        return self._call(Op.IS_EMPTY)

    def union(self, *sequences: Any):
        return self._call(Op.UNION, *sequences)

    def sample(self, n: int):
        return self._call(Op.SAMPLE, n)

    def distinct(self):
        return self._call(Op.DISTINCT)

    def count(self, value: Any|Callable = None):
        if value is None:
            return self._call(Op.COUNT)
        return self._call(Op.COUNT, value)

    def sum(self, field: str|Callable = None):
        if field is None:
            return self._call(Op.SUM)
        return self._call(Op.SUM, field)

    def avg(self, field: str|Callable = None):
        if field is None:
            return self._call(Op.AVG)
        return self._call(Op.AVG, field)

    def min(self, field: str|Callable = None):
        if field is None:
            return self._call(Op.MIN)
        return self._call(Op.MIN, field)

    def max(self, field: str|Callable = None):
        if field is None:
            return self._call(Op.MAX)
        return self._call(Op.MAX, field)

    def reduce(self, function: Callable):
        return self._call(Op.REDUCE, function)

    def group(self, field: str|Callable):
        return self._call(Op.GROUP, field)

    def ungroup(self):
        return self._call(Op.UNGROUP)

    def contains(self, *values: Any|Callable):
        return self._call(Op.CONTAINS, *values)

    def inner_join(self, other: Any, predicate: Callable):
        return self._call(Op.INNER_JOIN, other, predicate)

    def outer_join(self, other: Any, predicate: Callable):
        return self._call(Op.OUTER_JOIN, other, predicate)

    def eq_join(self, field: str, table: Any, index: str = 'id'):
        return self._call(Op.EQ_JOIN, field, table, index=index)

    def zip(self):
        return self._call(Op.ZIP)

    def changes(self, include_states: bool = False):
        """Subscribe to live changes of the selected documents."""
        return self._call(Op.CHANGES, include_states=include_states)

    # control
    def coerce_to(self, type_name: str):
        return self._call(Op.COERCE_TO, type_name)

    def default(self, value: Any):
        return self._call(Op.DEFAULT, value)

    def do(self, function: Callable):
        return self._call(Op.DO, function)

    def type_of(self):
        return self._call(Op.TYPE_OF)

    # documents and arrays
    def pluck(self, *fields: str):
        return self._call(Op.PLUCK, *fields)

    def without(self, *fields: str):
        return self._call(Op.WITHOUT, *fields)

    def merge(self, *objects: dict|Callable):
        return self._call(Op.MERGE, *objects)

    def append(self, value: Any):
        return self._call(Op.APPEND, value)

    def prepend(self, value: Any):
        return self._call(Op.PREPEND, value)

    def difference(self, values: list):
        return self._call(Op.DIFFERENCE, values)

    def set_insert(self, value: Any):
        return self._call(Op.SET_INSERT, value)

    def set_union(self, values: list):
        return self._call(Op.SET_UNION, values)

    def set_intersection(self, values: list):
        return self._call(Op.SET_INTERSECTION, values)

    def set_difference(self, values: list):
        return self._call(Op.SET_DIFFERENCE, values)

    def get_field(self, name: str):
        return self._call(Op.GET_FIELD, name)

    def bracket(self, key: str|int):
        return self._call(Op.BRACKET, key)

    def has_fields(self, *fields: str):
        return self._call(Op.HAS_FIELDS, *fields)

    def insert_at(self, index: int, value: Any):
        return self._call(Op.INSERT_AT, index, value)

    def delete_at(self, index: int, end: int = None):
        if end is None:
            return self._call(Op.DELETE_AT, index)
        return self._call(Op.DELETE_AT, index, end)

    def change_at(self, index: int, value: Any):
        return self._call(Op.CHANGE_AT, index, value)

    def keys(self):
        return self._call(Op.KEYS)

    def values(self):
        return self._call(Op.VALUES)

    # strings
    def match(self, pattern: str):
        return self._call(Op.MATCH, pattern)

    def split(self, separator: str = None, max_splits: int = None):
        return self._call(Op.SPLIT, separator, max_splits)

    def upcase(self):
        return self._call(Op.UPCASE)

    def downcase(self):
        return self._call(Op.DOWNCASE)

    def to_json_string(self):
        return self._call(Op.TO_JSON_STRING)

    # math and logic
    def add(self, *values: Any):
        return self._call(Op.ADD, *values)

    def sub(self, *values: Any):
        return self._call(Op.SUB, *values)

    def mul(self, *values: Any):
        return self._call(Op.MUL, *values)

    def div(self, *values: Any):
        return self._call(Op.DIV, *values)

    def mod(self, value: Any):
        return self._call(Op.MOD, value)

    def and_(self, *values: Any):
        return self._call(Op.AND, *values)

    def or_(self, *values: Any):
        return self._call(Op.OR, *values)

    def not_(self):
        return self._call(Op.NOT)

    def eq(self, *values: Any):
        return self._call(Op.EQ, *values)

    def ne(self, *values: Any):
        return self._call(Op.NE, *values)

    def gt(self, *values: Any):
        return self._call(Op.GT, *values)

    def ge(self, *values: Any):
        return self._call(Op.GE, *values)

    def lt(self, *values: Any):
        return self._call(Op.LT, *values)

    def le(self, *values: Any):
        return self._call(Op.LE, *values)

    def round(self):
        return self._call(Op.ROUND)

    def ceil(self):
        return self._call(Op.CEIL)

    def floor(self):
        return self._call(Op.FLOOR)

    # time
    def during(self, start: Any, end: Any, left_bound: str = 'closed',
               right_bound: str = 'open'):
        return self._call(
            Op.DURING, start, end, left_bound=left_bound, right_bound=right_bound
        )

    def date(self):
        return self._call(Op.DATE)

    def year(self):
        return self._call(Op.YEAR)

    def month(self):
        return self._call(Op.MONTH)

    def day(self):
        return self._call(Op.DAY)

    def day_of_week(self):
        return self._call(Op.DAY_OF_WEEK)

    def day_of_year(self):
        return self._call(Op.DAY_OF_YEAR)

    def hours(self):
        return self._call(Op.HOURS)

    def minutes(self):
        return self._call(Op.MINUTES)

    def seconds(self):
        return self._call(Op.SECONDS)

    def to_iso8601(self):
        return self._call(Op.TO_ISO8601)

    def to_epoch_time(self):
        return self._call(Op.TO_EPOCH_TIME)

    # geometry
    def distance(self, other: Any):
        return self._call(Op.DISTANCE, other)

    def to_geojson(self):
        return self._call(Op.TO_GEOJSON)


class Term(Operations):
    """One node of an expression tree: an operation, the term it was
        chained onto (None for root operations), and its arguments.
    """
    op: Op|None
    receiver: Term|None
    args: tuple
    optargs: dict

    def __init__(self, op: Op|None, receiver: Term|None = None,
                 args: tuple = (), optargs: dict = None) -> None:
        self.op = op
        self.receiver = receiver
        self.args = args
        self.optargs = optargs or {}

    def _apply(self, op: Op, args: tuple, optargs: dict) -> Term:
        return Term(op, self, args, optargs)

    def __getitem__(self, key: str|int) -> Term:
        return self.bracket(key)

    def __eq__(self, other) -> Term:
        return self.eq(other)

    def __ne__(self, other) -> Term:
        return self.ne(other)

    def __lt__(self, other) -> Term:
        return self.lt(other)

    def __le__(self, other) -> Term:
        return self.le(other)

    def __gt__(self, other) -> Term:
        return self.gt(other)

    def __ge__(self, other) -> Term:
        return self.ge(other)

    def __add__(self, other) -> Term:
        return self.add(other)

    def __sub__(self, other) -> Term:
        return self.sub(other)

    def __mul__(self, other) -> Term:
        return self.mul(other)

    def __truediv__(self, other) -> Term:
        return self.div(other)

    def __mod__(self, other) -> Term:
        return self.mod(other)

    def __and__(self, other) -> Term:
        return self.and_(other)

    def __or__(self, other) -> Term:
        return self.or_(other)

    def __invert__(self) -> Term:
        return self.not_()

    def __bool__(self) -> bool:
        raise TypeError(
            'a term has no truth value until executed; use &, |, ~ '
            'or and_, or_, not_ instead of and, or, not'
        )

    __hash__ = object.__hash__

    def __repr__(self) -> str:
        args = [repr(a) for a in self.args]
        args.extend(f'{k}={v!r}' for k, v in self.optargs.items())
        prefix = 'r' if self.receiver is None else repr(self.receiver)
        return f'{prefix}.{self.op.value}({", ".join(args)})'


class Var(Term):
    """A function parameter inside an expression tree."""
    var_id: int

    def __init__(self) -> None:
        super().__init__(None)
        self.var_id = next(_var_ids)

    def __repr__(self) -> str:
        return f'var_{self.var_id}'


class Func:
    """A function converted into an expression tree by calling it once
        with a Var per parameter.
    """
    params: tuple[int, ...]
    body: Any

    def __init__(self, params: tuple[int, ...], body: Any) -> None:
        self.params = params
        self.body = body

    @classmethod
    def from_callable(cls, function: Callable) -> Func:
        arity = len([
            p for p in signature(function).parameters.values()
            if p.default is p.empty and p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)
        ])
        params = [Var() for _ in range(arity)]
        return cls(tuple(v.var_id for v in params), wrap(function(*params)))

    def __repr__(self) -> str:
        params = ', '.join(f'var_{p}' for p in self.params)
        return f'lambda {params}: {self.body!r}'


class _Root(Operations):
    """Starting point for root operations."""

    def _apply(self, op: Op, args: tuple, optargs: dict) -> Term:
        return Term(op, None, args, optargs)

    def __repr__(self) -> str:
        return 'r'


r = _Root()


def wrap(value: Any) -> Any:
    """Convert query chains into terms and plain callables into Funcs.
        Other values are left for the executor to evaluate.
    """
    if isinstance(value, (Term, Func)):
        return value
    if hasattr(value, 'to_term'):
        return value.to_term()
    if callable(value) and not isinstance(value, type):
        return Func.from_callable(value)
    return value
