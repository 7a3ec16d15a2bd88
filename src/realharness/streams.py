"""Background copying of server output to the controller's console."""

import threading
from typing import IO

import structlog

log = structlog.get_logger("realharness.streams")


class StreamCopyThread(threading.Thread):
    """Daemon thread that copies lines from a child pipe to a text stream."""

    _label: str
    _source: IO[bytes]
    _target: IO[str]

    def __init__(self, label: str, source: IO[bytes], target: IO[str]) -> None:
        """Initialize the copier.

        :param label: Tag prefixed to every copied line.
        :param source: Binary pipe read until EOF.
        :param target: Text stream written to.
        """
        super().__init__(name=f"copy {label}", daemon=True)
        self._label = label
        self._source = source
        self._target = target

    def run(self) -> None:
        try:
            for raw_line in iter(self._source.readline, b""):
                line: str = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                self._target.write(f"[{self._label}] {line}\n")
                self._target.flush()
        except (OSError, ValueError) as exc:
            log.warning("Stopped copying server output", label=self._label, error=str(exc))
        finally:
            try:
                self._source.close()
            except OSError:
                pass
