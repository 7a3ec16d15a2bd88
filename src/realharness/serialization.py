"""File-based transport of object graphs between the controller and the server process."""

import pickle
from collections.abc import Callable
from pathlib import Path
from typing import Any
from typing import BinaryIO

import cloudpickle

from realharness.errors import SerializationError

ClassResolver = Callable[[str, str], object]


class _ResolvingUnpickler(pickle.Unpickler):
    """Unpickler that consults a caller-supplied resolver before default lookup."""

    _resolver: ClassResolver | None

    def __init__(self, stream: BinaryIO, resolver: ClassResolver | None) -> None:
        """Initialize the unpickler.

        :param stream: Binary stream to decode.
        :param resolver: Optional ``(module, qualname) -> object`` resolver.
        """
        super().__init__(stream)
        self._resolver = resolver

    def find_class(self, module: str, name: str) -> Any:
        """Resolve global references during unpickling.

        :param module: Module name referenced by pickle.
        :param name: Attribute qualname referenced by pickle.
        :returns: Resolved class/function object.
        """
        if self._resolver is not None:
            try:
                return self._resolver(module, name)
            except (ImportError, AttributeError, LookupError):
                pass
        return super().find_class(module, name)


def write_ser(path: Path, value: object) -> None:
    """Serialize ``value``'s full object graph to ``path``.

    Functions and classes that are not importable by name (lambdas, closures,
    classes defined inside a test) are captured by value.

    :param path: Destination file; overwritten when present.
    :param value: Value to serialize.
    :raises SerializationError: If ``value`` holds non-transportable state.
    :raises OSError: If the file cannot be written.
    """
    try:
        payload: bytes = cloudpickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
    except (pickle.PicklingError, TypeError, AttributeError, ValueError) as exc:
        raise SerializationError(f"Cannot serialize {type(value).__qualname__} to {path}: {exc}") from exc
    path.write_bytes(payload)


def read_ser(path: Path, resolver: ClassResolver | None = None) -> object:
    """Deserialize the object graph stored at ``path``.

    :param path: Source file.
    :param resolver: Optional resolver consulted for each referenced global
        before the default import-based resolution.
    :returns: Deserialized value.
    :raises FileNotFoundError: If ``path`` does not exist.
    :raises SerializationError: If the payload is corrupt or references
        globals that cannot be resolved.
    """
    with path.open("rb") as stream:
        unpickler = _ResolvingUnpickler(stream, resolver)
        try:
            return unpickler.load()
        except (pickle.UnpicklingError, EOFError, ImportError, AttributeError, ValueError) as exc:
            raise SerializationError(f"Cannot deserialize {path}: {exc}") from exc
