"""Scoped import space used to load test code inside the server process."""

import importlib
import sys
from collections.abc import Sequence
from types import TracebackType
from typing import Protocol

import structlog

log = structlog.get_logger("realharness.context")


class ModuleSpace(Protocol):
    """Anything exposing an ordered list of import path entries."""

    @property
    def search_path(self) -> list[str]: ...


def _parse_target(target: str) -> tuple[str, str]:
    """Parse ``module.path:Qual.name`` targets.

    :param target: Raw target string.
    :returns: Tuple of ``(module_name, qualname)``.
    :raises ValueError: If the target format is invalid.
    """
    parts: list[str] = target.split(":")
    if len(parts) != 2:
        raise ValueError("Target must use module.path:Qual.name format")

    module_name: str = parts[0].strip()
    qualname: str = parts[1].strip()
    if len(module_name) == 0:
        raise ValueError("Module path in target cannot be empty")
    if len(qualname) == 0:
        raise ValueError("Qualified name in target cannot be empty")
    return module_name, qualname


def _resolve_qualname(root: object, qualname: str) -> object:
    """Resolve a dotted qualname against a root object.

    :param root: Root object.
    :param qualname: Dotted qualname, such as ``Outer.Inner``.
    :returns: Resolved object.
    """
    current: object = root
    for piece in qualname.split("."):
        current = getattr(current, piece)
    return current


class ExecutionContext:
    """Import scope layered on top of a parent module space.

    Entering the context appends the parent's entries and then its own to
    ``sys.path``, so modules already reachable from the running application
    win over test-path copies of the same name. Leaving removes exactly the
    entries that were added.
    """

    _own_entries: list[str]
    _parent: ModuleSpace | None
    _added_entries: list[str]
    _is_open: bool

    def __init__(self, search_path: Sequence[str], parent: ModuleSpace | None = None) -> None:
        """Initialize the context.

        :param search_path: Entries contributed by the test side, in order.
        :param parent: Optional module space consulted before ``search_path``.
        """
        self._own_entries = [entry for entry in search_path if len(entry) > 0]
        self._parent = parent
        self._added_entries = []
        self._is_open = False

    @property
    def search_path(self) -> list[str]:
        """Effective entries, parent first.

        :returns: Ordered, de-duplicated path entries.
        """
        entries: list[str] = []
        if self._parent is not None:
            entries.extend(self._parent.search_path)
        entries.extend(self._own_entries)
        return list(dict.fromkeys(entries))

    @property
    def is_open(self) -> bool:
        return self._is_open

    def open(self) -> None:
        """Make the effective entries importable."""
        if self._is_open is True:
            return
        for entry in self.search_path:
            if entry in sys.path:
                continue
            sys.path.append(entry)
            self._added_entries.append(entry)
        importlib.invalidate_caches()
        self._is_open = True
        log.debug("Execution context opened", added_entries=len(self._added_entries))

    def close(self) -> None:
        """Withdraw the entries added by :meth:`open`."""
        if self._is_open is False:
            return
        for entry in self._added_entries:
            while entry in sys.path:
                sys.path.remove(entry)
        self._added_entries.clear()
        self._is_open = False

    def resolve(self, module_name: str, qualname: str) -> object:
        """Import ``module_name`` and return the object at ``qualname``.

        :param module_name: Module path.
        :param qualname: Dotted attribute path inside the module.
        :returns: Resolved object.
        :raises ImportError: If the module cannot be imported.
        :raises AttributeError: If ``qualname`` does not exist in the module.
        """
        module: object = importlib.import_module(module_name)
        return _resolve_qualname(module, qualname)

    def locate(self, target: str) -> object:
        """Resolve a ``module.path:Qual.name`` target by name.

        :param target: Target string.
        :returns: Resolved object.
        """
        module_name, qualname = _parse_target(target)
        return self.resolve(module_name, qualname)

    def __enter__(self) -> "ExecutionContext":
        self.open()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        self.close()
