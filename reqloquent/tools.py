from .errors import tert, vert
import re


def _pascalcase_to_snake_case(name: str) -> str:
    """Simple function to turn PascalCase to snake_case.
        Borrowed from https://stackoverflow.com/a/1176023
    """
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()

def _get_path(document: dict, path: str):
    """Follow a dotted path into nested dicts. Raises KeyError if any
        segment is missing.
    """
    value = document
    for segment in path.split('.'):
        if not isinstance(value, dict) or segment not in value:
            raise KeyError(path)
        value = value[segment]
    return value

def get_index_name(properties: list[str]|tuple[str], name: str|None = None) -> str:
    """Determine the name of an index over the given properties. A
        single top-level property names its own index; nested and
        compound indexes must be given a name. Raises TypeError for
        invalid arguments or ValueError for a missing name.
    """
    tert(type(properties) in (list, tuple), 'properties must be list[str]')
    tert(all([type(p) is str for p in properties]), 'properties must be list[str]')
    vert(len(properties) > 0, 'index must cover at least one property')
    if name is not None:
        tert(type(name) is str, 'index name must be str')
        return name

    vert(len(properties) == 1 and '.' not in properties[0],
        f'Index name missing for nested property {", ".join(properties)}. ' +
        'Please add a name to this index definition.')
    return properties[0]
