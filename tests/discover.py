# NOTE: this file is adapted from the scikit-learn repository
# https://github.com/scikit-learn/scikit-learn

import inspect
import pkgutil
from importlib import import_module
from operator import itemgetter
from pathlib import Path

PACKAGE = "pysctransform"

_MODULE_TO_IGNORE = {"tests", "__version__"}


def _package_modules():
    root = str(Path(__file__).parent.parent / PACKAGE)

    for _, module_name, _ in pkgutil.walk_packages(path=[root]):
        module_parts = module_name.split(".")
        if (
            any(part in _MODULE_TO_IGNORE for part in module_parts)
            or "._" in module_name
        ):
            continue
        yield import_module(f"{PACKAGE}.{module_name}")


def _is_checked_function(item):
    if not inspect.isfunction(item):
        return False

    if item.__name__.startswith("_"):
        return False

    # functions imported from other packages are checked upstream
    return item.__module__.startswith(PACKAGE)


def all_functions():
    """Get a list of all functions from `pysctransform`.

    Returns
    -------
    functions : list of tuples
        List of (name, function), where ``name`` is the function name as
        string and ``function`` is the actual function.
    """
    all_functions = []
    for module in _package_modules():
        functions = inspect.getmembers(module, _is_checked_function)
        all_functions.extend((func.__name__, func) for _, func in functions)

    # drop duplicates, sort for reproducibility
    # itemgetter is used to ensure the sort does not extend to the 2nd item of
    # the tuple
    return sorted(set(all_functions), key=itemgetter(0))


def all_classes():
    """Get a list of the public classes defined in `pysctransform`.

    Returns
    -------
    classes : list of tuples
        List of (name, class), where ``name`` is the class name as string
        and ``class`` is the actual type of the class.
    """
    all_classes = []
    for module in _package_modules():
        classes = inspect.getmembers(module, inspect.isclass)
        all_classes.extend(
            (name, cls)
            for name, cls in classes
            if not name.startswith("_") and cls.__module__.startswith(PACKAGE)
        )

    return sorted(set(all_classes), key=itemgetter(0))


def defined_in_package(cls, name):
    """Whether the attribute ``name`` of ``cls`` is implemented in `pysctransform`.

    Methods inherited from the standard library (e.g. ``Mapping.get`` or
    ``tuple.count``) are not.
    """
    obj = inspect.getattr_static(cls, name)
    if isinstance(obj, (staticmethod, classmethod)):
        obj = obj.__func__
    elif isinstance(obj, property):
        obj = obj.fget
    return getattr(obj, "__module__", None) is not None and obj.__module__.startswith(
        PACKAGE
    )
