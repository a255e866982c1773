from inspect import get_annotations
from types import CellType, CodeType, FunctionType
from typing import Any

## types whose no-argument construction gives an immutable 'zero' ##
ZERO_TYPES = (bool, int, float, complex, str, bytes, tuple, frozenset)


def getcode(obj: Any) -> CodeType:
    """Gets the code object from an object via commonly used attrs"""
    for attr in ["__code__", "gi_code", "ag_code", "cr_code"]:
        if hasattr(obj, attr):
            return getattr(obj, attr)
    raise AttributeError("code object not found")


def closure_cells(FUNC: FunctionType) -> dict[str, CellType]:
    """
    Gets the closure cells of a function by their free variable name

    The cells themselves are returned (not their contents) so that
    anything sharing them sees rebinding done afterwards i.e. a
    nested function that refers to itself by name
    """
    cells = getattr(FUNC, "__closure__", None)
    if not cells:
        return {}
    return dict(zip(getcode(FUNC).co_freevars, cells, strict=True))


def return_annotation(FUNC: FunctionType) -> Any:
    """Gets the evaluated return annotation of a function or None"""
    try:
        return get_annotations(FUNC, eval_str=True).get("return")
    ## postponed annotations naming something not (yet) defined ##
    except NameError:
        return None


def zero_value(annotation: Any) -> Any:
    """
    The zero value of a return annotation e.g. int -> 0, str -> ""

    Only immutable builtins are constructed since the same value is
    handed out on every call made after a generator is exhausted;
    anything else has None as its zero value
    """
    ## type(...) is type leaves out aliases like tuple[int, ...] and enums ##
    if type(annotation) is type and issubclass(annotation, ZERO_TYPES):
        return annotation()
    return None
