"""Tests for the scoped execution context."""

import sys
import uuid
from pathlib import Path

import pytest

from realharness import ExecutionContext


class _StaticSpace:
    """Parent module space with a fixed search path."""

    def __init__(self, entries: list[str]) -> None:
        self._entries = entries

    @property
    def search_path(self) -> list[str]:
        return list(self._entries)


def _write_module(directory: Path, source: str) -> str:
    """Write a uniquely named module into ``directory``.

    :param directory: Target directory.
    :param source: Module source.
    :returns: Module name.
    """
    module_name: str = f"realharness_ctx_{uuid.uuid4().hex}"
    (directory / f"{module_name}.py").write_text(source, encoding="utf-8")
    return module_name


def test_entries_are_added_and_removed(tmp_path: Path) -> None:
    """Only entries the context added are withdrawn on exit."""
    own_entry: str = str(tmp_path / "own")
    already_present: str = sys.path[0]
    with ExecutionContext([own_entry, already_present]) as context:
        assert context.is_open is True
        assert own_entry in sys.path
    assert own_entry not in sys.path
    assert already_present in sys.path


def test_parent_entries_come_first(tmp_path: Path) -> None:
    """Parent entries precede the context's own entries."""
    parent_entry: str = str(tmp_path / "parent")
    own_entry: str = str(tmp_path / "own")
    context = ExecutionContext([own_entry, parent_entry], parent=_StaticSpace([parent_entry]))
    assert context.search_path == [parent_entry, own_entry]


def test_resolve_and_locate_nested_qualname(tmp_path: Path) -> None:
    """Objects are found by module and dotted qualname."""
    module_name: str = _write_module(
        tmp_path,
        "class Outer:\n    class Inner:\n        VALUE = 42\n",
    )
    try:
        with ExecutionContext([str(tmp_path)]) as context:
            inner: object = context.resolve(module_name, "Outer.Inner")
            assert inner.VALUE == 42  # type: ignore[attr-defined]
            assert context.locate(f"{module_name}:Outer.Inner") is inner
    finally:
        sys.modules.pop(module_name, None)


def test_module_outside_context_is_not_importable(tmp_path: Path) -> None:
    """Without the context, the module directory is not on the path."""
    module_name: str = _write_module(tmp_path, "VALUE = 1\n")
    context = ExecutionContext([str(tmp_path)])
    with pytest.raises(ImportError):
        context.resolve(module_name, "VALUE")


@pytest.mark.parametrize("target", ["no_colon", "a:b:c", ":Name", "module:"])
def test_locate_rejects_malformed_targets(target: str) -> None:
    """Targets must use ``module:qualname``."""
    with pytest.raises(ValueError):
        ExecutionContext([]).locate(target)
