from packify import UsageError


def tert(condition: bool, error_message: str = '') -> None:
    """If condition is false, raises a TypeError with the given message."""
    if not condition:
        raise TypeError(error_message)

def vert(condition: bool, error_message: str = '') -> None:
    """If condition is false, raises a ValueError with the given message."""
    if not condition:
        raise ValueError(error_message)

def tressa(condition: bool, error_message: str = '') -> None:
    """If condition is false, raises a UsageError with the given
        message. Used for precondition checks on instance state.
    """
    if not condition:
        raise UsageError(error_message)


class TransitionError(TypeError):
    """Raised when an operation cannot follow the current result shape
        of a query chain.
    """
    ...


class UniquenessViolationError(ValueError):
    """Raised when saving a record would duplicate the value of a
        property declared unique.
    """
    model_name: str
    property_name: str

    def __init__(self, model_name: str, property_name: str) -> None:
        self.model_name = model_name
        self.property_name = property_name
        super().__init__(f"'{model_name}.{property_name}' must be unique")


class QueryError(Exception):
    """Raised by a document store when a query cannot be executed."""
    ...


class NonExistenceError(QueryError):
    """Raised when a query reads a missing field, an out of bounds
        index, or reduces an empty sequence. Caught by `default()`.
    """
    ...
