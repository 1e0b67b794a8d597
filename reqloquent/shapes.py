"""
    Result shapes and primitive operations of the query language, and
    the transition table describing which operation may follow which
    shape and what it yields. Query chains consult the table on every
    step, so an illegal chain fails when it is built rather than when
    it runs.
"""

from __future__ import annotations
from .errors import TransitionError
from enum import Enum


class Shape(Enum):
    """What a chain would produce if it were executed now."""
    ROOT = 'root'
    DB = 'db'
    TABLE = 'table'
    STREAM = 'stream'
    SEQUENCE = 'sequence'
    ARRAY = 'array'
    OBJECT = 'object'
    VALUE = 'value'
    SELECTION = 'selection'
    SINGLE_SELECTION = 'single_selection'
    BOOLEAN = 'boolean'
    NUMBER = 'number'
    STRING = 'string'
    TIME = 'time'
    GEOMETRY = 'geometry'
    GROUPED_STREAM = 'grouped_stream'
    GROUPED_DATA = 'grouped_data'
    BINARY = 'binary'
    ERROR = 'error'


class Op(Enum):
    """Primitive operations. Values are the method names that apply
        them; `and`, `or`, and `not` are spelled with a trailing
        underscore as methods.
    """
    # root
    DB = 'db'
    TABLE = 'table'
    TABLE_CREATE = 'table_create'
    TABLE_DROP = 'table_drop'
    TABLE_LIST = 'table_list'
    EXPR = 'expr'
    BRANCH = 'branch'
    UUID = 'uuid'
    NOW = 'now'
    POINT = 'point'
    ERROR = 'error'
    ASC = 'asc'
    DESC = 'desc'
    RANGE = 'range'
    ISO8601 = 'iso8601'
    EPOCH_TIME = 'epoch_time'
    OBJECT = 'object'

    # table administration
    INDEX_CREATE = 'index_create'
    INDEX_DROP = 'index_drop'
    INDEX_LIST = 'index_list'
    INDEX_RENAME = 'index_rename'
    INDEX_STATUS = 'index_status'
    INDEX_WAIT = 'index_wait'
    SYNC = 'sync'
    WAIT = 'wait'

    # writes
    INSERT = 'insert'
    UPDATE = 'update'
    REPLACE = 'replace'
    DELETE = 'delete'

    # selecting
    GET = 'get'
    GET_ALL = 'get_all'
    BETWEEN = 'between'
    GET_NEAREST = 'get_nearest'

    # sequences
    FILTER = 'filter'
    MAP = 'map'
    CONCAT_MAP = 'concat_map'
    WITH_FIELDS = 'with_fields'
    ORDER_BY = 'order_by'
    SKIP = 'skip'
    LIMIT = 'limit'
    SLICE = 'slice'
    NTH = 'nth'
    OFFSETS_OF = 'offsets_of'
    IS_EMPTY = 'is_empty'
    UNION = 'union'
    SAMPLE = 'sample'
    DISTINCT = 'distinct'
    COUNT = 'count'
    SUM = 'sum'
    AVG = 'avg'
    MIN = 'min'
    MAX = 'max'
    REDUCE = 'reduce'
    GROUP = 'group'
    UNGROUP = 'ungroup'
    CONTAINS = 'contains'
    INNER_JOIN = 'inner_join'
    OUTER_JOIN = 'outer_join'
    EQ_JOIN = 'eq_join'
    ZIP = 'zip'
    CHANGES = 'changes'

    # control
    COERCE_TO = 'coerce_to'
    DEFAULT = 'default'
    DO = 'do'
    TYPE_OF = 'type_of'

    # documents and arrays
    PLUCK = 'pluck'
    WITHOUT = 'without'
    MERGE = 'merge'
    APPEND = 'append'
    PREPEND = 'prepend'
    DIFFERENCE = 'difference'
    SET_INSERT = 'set_insert'
    SET_UNION = 'set_union'
    SET_INTERSECTION = 'set_intersection'
    SET_DIFFERENCE = 'set_difference'
    GET_FIELD = 'get_field'
    BRACKET = 'bracket'
    HAS_FIELDS = 'has_fields'
    INSERT_AT = 'insert_at'
    DELETE_AT = 'delete_at'
    CHANGE_AT = 'change_at'
    KEYS = 'keys'
    VALUES = 'values'

    # strings
    MATCH = 'match'
    SPLIT = 'split'
    UPCASE = 'upcase'
    DOWNCASE = 'downcase'
    TO_JSON_STRING = 'to_json_string'

    # math and logic
    ADD = 'add'
    SUB = 'sub'
    MUL = 'mul'
    DIV = 'div'
    MOD = 'mod'
    AND = 'and'
    OR = 'or'
    NOT = 'not'
    EQ = 'eq'
    NE = 'ne'
    GT = 'gt'
    GE = 'ge'
    LT = 'lt'
    LE = 'le'
    ROUND = 'round'
    CEIL = 'ceil'
    FLOOR = 'floor'

    # time
    DURING = 'during'
    DATE = 'date'
    YEAR = 'year'
    MONTH = 'month'
    DAY = 'day'
    DAY_OF_WEEK = 'day_of_week'
    DAY_OF_YEAR = 'day_of_year'
    HOURS = 'hours'
    MINUTES = 'minutes'
    SECONDS = 'seconds'
    TO_ISO8601 = 'to_iso8601'
    TO_EPOCH_TIME = 'to_epoch_time'

    # geometry
    DISTANCE = 'distance'
    TO_GEOJSON = 'to_geojson'

    @classmethod
    def from_method(cls, name: str) -> Op|None:
        """Return the operation applied by the method with the given
            name, or None if there is no such operation.
        """
        try:
            return cls(name.rstrip('_'))
        except ValueError:
            return None


ROOT_OPS = frozenset({
    Op.DB, Op.TABLE, Op.TABLE_CREATE, Op.TABLE_DROP, Op.TABLE_LIST,
    Op.EXPR, Op.BRANCH, Op.UUID, Op.NOW, Op.POINT, Op.ERROR, Op.ASC,
    Op.DESC, Op.RANGE, Op.ISO8601, Op.EPOCH_TIME, Op.OBJECT,
})

TABLE_ONLY_OPS = frozenset({
    Op.INDEX_CREATE, Op.INDEX_DROP, Op.INDEX_LIST, Op.INDEX_RENAME,
    Op.INDEX_STATUS, Op.INDEX_WAIT, Op.SYNC, Op.WAIT, Op.INSERT,
    Op.GET, Op.GET_ALL, Op.BETWEEN, Op.GET_NEAREST,
})

# shapes a filter may be spliced after by tap_filter_right
FILTERABLE_SHAPES = frozenset({
    Shape.TABLE, Shape.STREAM, Shape.ARRAY, Shape.SELECTION,
})

# a chain containing any of these cannot take a retroactive filter
INVALID_FILTER_OPS = frozenset({
    Op.INDEX_CREATE, Op.INDEX_DROP, Op.INDEX_LIST, Op.INDEX_RENAME,
    Op.INDEX_WAIT, Op.INSERT, Op.TABLE_CREATE, Op.TABLE_DROP,
    Op.TABLE_LIST, Op.WAIT, Op.SYNC,
})

# shapes whose response is a single document
RECORD_SHAPES = frozenset({
    Shape.SINGLE_SELECTION, Shape.OBJECT, Shape.VALUE,
})

# shapes whose response is a sequence of documents
SEQUENCE_SHAPES = frozenset({
    Shape.TABLE, Shape.SELECTION, Shape.STREAM, Shape.SEQUENCE, Shape.ARRAY,
})


_ANY = {
    Op.EQ: Shape.BOOLEAN,
    Op.NE: Shape.BOOLEAN,
    Op.DO: Shape.VALUE,
    Op.DEFAULT: Shape.VALUE,
    Op.COERCE_TO: Shape.VALUE,
    Op.TYPE_OF: Shape.STRING,
    Op.TO_JSON_STRING: Shape.STRING,
}

_ORDERED = {
    Op.GT: Shape.BOOLEAN,
    Op.GE: Shape.BOOLEAN,
    Op.LT: Shape.BOOLEAN,
    Op.LE: Shape.BOOLEAN,
}

_SEQUENCE = {
    **_ANY,
    Op.FILTER: Shape.SEQUENCE,
    Op.MAP: Shape.SEQUENCE,
    Op.CONCAT_MAP: Shape.SEQUENCE,
    Op.PLUCK: Shape.SEQUENCE,
    Op.WITHOUT: Shape.SEQUENCE,
    Op.MERGE: Shape.SEQUENCE,
    Op.WITH_FIELDS: Shape.SEQUENCE,
    Op.HAS_FIELDS: Shape.SEQUENCE,
    Op.GET_FIELD: Shape.SEQUENCE,
    Op.BRACKET: Shape.SEQUENCE,
    Op.ORDER_BY: Shape.ARRAY,
    Op.SKIP: Shape.SEQUENCE,
    Op.LIMIT: Shape.SEQUENCE,
    Op.SLICE: Shape.SEQUENCE,
    Op.NTH: Shape.VALUE,
    Op.OFFSETS_OF: Shape.ARRAY,
    Op.IS_EMPTY: Shape.BOOLEAN,
    Op.UNION: Shape.SEQUENCE,
    Op.SAMPLE: Shape.ARRAY,
    Op.DISTINCT: Shape.ARRAY,
    Op.COUNT: Shape.NUMBER,
    Op.SUM: Shape.NUMBER,
    Op.AVG: Shape.NUMBER,
    Op.MIN: Shape.VALUE,
    Op.MAX: Shape.VALUE,
    Op.REDUCE: Shape.VALUE,
    Op.GROUP: Shape.GROUPED_STREAM,
    Op.CONTAINS: Shape.BOOLEAN,
    Op.INNER_JOIN: Shape.SEQUENCE,
    Op.OUTER_JOIN: Shape.SEQUENCE,
    Op.EQ_JOIN: Shape.SEQUENCE,
    Op.ZIP: Shape.SEQUENCE,
}

_SELECTION = {
    **_SEQUENCE,
    Op.UPDATE: Shape.OBJECT,
    Op.REPLACE: Shape.OBJECT,
    Op.DELETE: Shape.OBJECT,
    Op.FILTER: Shape.SELECTION,
    Op.ORDER_BY: Shape.SELECTION,
    Op.SKIP: Shape.SELECTION,
    Op.LIMIT: Shape.SELECTION,
    Op.SLICE: Shape.SELECTION,
    Op.NTH: Shape.SINGLE_SELECTION,
    Op.DISTINCT: Shape.STREAM,
    Op.CHANGES: Shape.STREAM,
}

_OBJECT = {
    **_ANY,
    Op.PLUCK: Shape.OBJECT,
    Op.WITHOUT: Shape.OBJECT,
    Op.MERGE: Shape.OBJECT,
    Op.GET_FIELD: Shape.VALUE,
    Op.BRACKET: Shape.VALUE,
    Op.HAS_FIELDS: Shape.BOOLEAN,
    Op.KEYS: Shape.ARRAY,
    Op.VALUES: Shape.ARRAY,
    Op.COUNT: Shape.NUMBER,
}

_ARRAY = {
    **_SEQUENCE,
    **_ORDERED,
    Op.FILTER: Shape.ARRAY,
    Op.MAP: Shape.ARRAY,
    Op.CONCAT_MAP: Shape.ARRAY,
    Op.PLUCK: Shape.ARRAY,
    Op.WITHOUT: Shape.ARRAY,
    Op.MERGE: Shape.ARRAY,
    Op.WITH_FIELDS: Shape.ARRAY,
    Op.HAS_FIELDS: Shape.ARRAY,
    Op.GET_FIELD: Shape.ARRAY,
    Op.BRACKET: Shape.ARRAY,
    Op.SKIP: Shape.ARRAY,
    Op.LIMIT: Shape.ARRAY,
    Op.SLICE: Shape.ARRAY,
    Op.UNION: Shape.ARRAY,
    Op.INNER_JOIN: Shape.ARRAY,
    Op.OUTER_JOIN: Shape.ARRAY,
    Op.ZIP: Shape.ARRAY,
    Op.APPEND: Shape.ARRAY,
    Op.PREPEND: Shape.ARRAY,
    Op.DIFFERENCE: Shape.ARRAY,
    Op.SET_INSERT: Shape.ARRAY,
    Op.SET_UNION: Shape.ARRAY,
    Op.SET_INTERSECTION: Shape.ARRAY,
    Op.SET_DIFFERENCE: Shape.ARRAY,
    Op.INSERT_AT: Shape.ARRAY,
    Op.DELETE_AT: Shape.ARRAY,
    Op.CHANGE_AT: Shape.ARRAY,
    Op.ADD: Shape.ARRAY,
    Op.MUL: Shape.ARRAY,
}

_NUMBER = {
    **_ANY,
    **_ORDERED,
    Op.ADD: Shape.NUMBER,
    Op.SUB: Shape.NUMBER,
    Op.MUL: Shape.NUMBER,
    Op.DIV: Shape.NUMBER,
    Op.MOD: Shape.NUMBER,
    Op.ROUND: Shape.NUMBER,
    Op.CEIL: Shape.NUMBER,
    Op.FLOOR: Shape.NUMBER,
}

_STRING = {
    **_ANY,
    **_ORDERED,
    Op.ADD: Shape.STRING,
    Op.MATCH: Shape.VALUE,
    Op.SPLIT: Shape.ARRAY,
    Op.UPCASE: Shape.STRING,
    Op.DOWNCASE: Shape.STRING,
    Op.COUNT: Shape.NUMBER,
}

_BOOLEAN = {
    **_ANY,
    Op.AND: Shape.BOOLEAN,
    Op.OR: Shape.BOOLEAN,
    Op.NOT: Shape.BOOLEAN,
}

_TIME = {
    **_ANY,
    **_ORDERED,
    Op.ADD: Shape.TIME,
    Op.SUB: Shape.VALUE,
    Op.DURING: Shape.BOOLEAN,
    Op.DATE: Shape.TIME,
    Op.YEAR: Shape.NUMBER,
    Op.MONTH: Shape.NUMBER,
    Op.DAY: Shape.NUMBER,
    Op.DAY_OF_WEEK: Shape.NUMBER,
    Op.DAY_OF_YEAR: Shape.NUMBER,
    Op.HOURS: Shape.NUMBER,
    Op.MINUTES: Shape.NUMBER,
    Op.SECONDS: Shape.NUMBER,
    Op.TO_ISO8601: Shape.STRING,
    Op.TO_EPOCH_TIME: Shape.NUMBER,
}

# a value of unknown type accepts any operation that does not need a
# table or the root, and the result is again of unknown type
_VALUE = {
    **{
        op: Shape.VALUE for op in Op
        if op not in ROOT_OPS and op not in TABLE_ONLY_OPS
        and op not in (Op.UPDATE, Op.REPLACE, Op.DELETE, Op.CHANGES)
    },
    **_ANY,
    **_ORDERED,
    Op.AND: Shape.BOOLEAN,
    Op.OR: Shape.BOOLEAN,
    Op.NOT: Shape.BOOLEAN,
    Op.COUNT: Shape.NUMBER,
    Op.IS_EMPTY: Shape.BOOLEAN,
    Op.CONTAINS: Shape.BOOLEAN,
    Op.HAS_FIELDS: Shape.VALUE,
    Op.GROUP: Shape.GROUPED_STREAM,
}

_DB = {
    Op.TABLE: Shape.TABLE,
    Op.TABLE_CREATE: Shape.OBJECT,
    Op.TABLE_DROP: Shape.OBJECT,
    Op.TABLE_LIST: Shape.ARRAY,
    Op.WAIT: Shape.OBJECT,
}

TRANSITIONS: dict[Shape, dict[Op, Shape]] = {
    Shape.ROOT: {
        **_DB,
        Op.DB: Shape.DB,
        Op.EXPR: Shape.VALUE,
        Op.BRANCH: Shape.VALUE,
        Op.UUID: Shape.STRING,
        Op.NOW: Shape.TIME,
        Op.POINT: Shape.GEOMETRY,
        Op.ERROR: Shape.ERROR,
        Op.ASC: Shape.VALUE,
        Op.DESC: Shape.VALUE,
        Op.RANGE: Shape.STREAM,
        Op.ISO8601: Shape.TIME,
        Op.EPOCH_TIME: Shape.TIME,
        Op.OBJECT: Shape.OBJECT,
    },
    Shape.DB: _DB,
    Shape.TABLE: {
        **_SELECTION,
        Op.INDEX_CREATE: Shape.OBJECT,
        Op.INDEX_DROP: Shape.OBJECT,
        Op.INDEX_LIST: Shape.ARRAY,
        Op.INDEX_RENAME: Shape.OBJECT,
        Op.INDEX_STATUS: Shape.ARRAY,
        Op.INDEX_WAIT: Shape.ARRAY,
        Op.SYNC: Shape.OBJECT,
        Op.WAIT: Shape.OBJECT,
        Op.INSERT: Shape.OBJECT,
        Op.GET: Shape.SINGLE_SELECTION,
        Op.GET_ALL: Shape.SELECTION,
        Op.BETWEEN: Shape.SELECTION,
        Op.GET_NEAREST: Shape.ARRAY,
        Op.SAMPLE: Shape.ARRAY,
    },
    Shape.SELECTION: _SELECTION,
    Shape.SINGLE_SELECTION: {
        **_OBJECT,
        Op.UPDATE: Shape.OBJECT,
        Op.REPLACE: Shape.OBJECT,
        Op.DELETE: Shape.OBJECT,
        Op.CHANGES: Shape.STREAM,
        Op.DO: Shape.OBJECT,
    },
    Shape.STREAM: {
        **_SEQUENCE,
        Op.FILTER: Shape.STREAM,
        Op.SKIP: Shape.STREAM,
        Op.LIMIT: Shape.STREAM,
        Op.SLICE: Shape.STREAM,
        Op.DISTINCT: Shape.STREAM,
        Op.UNION: Shape.STREAM,
        Op.NTH: Shape.OBJECT,
    },
    Shape.SEQUENCE: _SEQUENCE,
    Shape.ARRAY: _ARRAY,
    Shape.OBJECT: _OBJECT,
    Shape.VALUE: _VALUE,
    Shape.NUMBER: _NUMBER,
    Shape.STRING: _STRING,
    Shape.BOOLEAN: _BOOLEAN,
    Shape.TIME: _TIME,
    Shape.GEOMETRY: {
        **_ANY,
        Op.DISTANCE: Shape.NUMBER,
        Op.TO_GEOJSON: Shape.OBJECT,
    },
    Shape.GROUPED_STREAM: {
        Op.UNGROUP: Shape.ARRAY,
        Op.COUNT: Shape.GROUPED_DATA,
        Op.SUM: Shape.GROUPED_DATA,
        Op.AVG: Shape.GROUPED_DATA,
        Op.MIN: Shape.GROUPED_DATA,
        Op.MAX: Shape.GROUPED_DATA,
        Op.REDUCE: Shape.GROUPED_DATA,
    },
    Shape.GROUPED_DATA: {
        Op.UNGROUP: Shape.ARRAY,
        Op.COERCE_TO: Shape.VALUE,
    },
    Shape.BINARY: {
        **_ANY,
        Op.COUNT: Shape.NUMBER,
        Op.SLICE: Shape.BINARY,
    },
    Shape.ERROR: {},
}


def transition(shape: Shape, op: Op) -> Shape:
    """Return the shape produced by applying op to a chain currently
        producing shape. Raises TransitionError if op cannot follow
        shape.
    """
    following = TRANSITIONS[shape].get(op)
    if following is None:
        raise TransitionError(f'{op.value} cannot follow {shape.value}')
    return following
