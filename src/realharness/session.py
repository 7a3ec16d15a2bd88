"""Controller side of a realharness session.

A session owns one state directory and one TCP port. Each :meth:`RealServerSession.run`
serializes a step into the directory, launches the server against it, and
turns the outcome into a return value, a re-raised :class:`ProxyException`,
or an :class:`AbnormalTerminationError`.
"""

import os
import random
import shutil
import subprocess
import sys
import tempfile
import threading
from collections.abc import Callable
from collections.abc import Iterable
from pathlib import Path
from types import TracebackType
from typing import Any

import structlog

from realharness.config import HarnessConfig
from realharness.errors import AbnormalTerminationError
from realharness.errors import LaunchError
from realharness.errors import SerializationError
from realharness.errors import SessionStateError
from realharness.launch import ERROR_FILE
from realharness.launch import STEP_FILE
from realharness.launch import LaunchDescriptor
from realharness.layout import harness_location
from realharness.layout import install_init_script
from realharness.layout import install_plugins
from realharness.proxy import ProxyException
from realharness.serialization import read_ser
from realharness.serialization import write_ser
from realharness.streams import StreamCopyThread

log = structlog.get_logger("realharness.session")

Step = Callable[[Any], object]
_STREAM_DRAIN_SECONDS: float = 5.0


def _controller_search_path() -> list[str]:
    """Return the controller's import path as absolute entries.

    :returns: ``sys.path`` with the implicit current-directory entry made explicit.
    """
    entries: list[str] = []
    for entry in sys.path:
        entries.append(os.path.abspath(entry if len(entry) > 0 else os.curdir))
    return list(dict.fromkeys(entries))


class TemporaryDirectoryAllocator:
    """Hands out temporary directories and removes them all on dispose."""

    _prefix: str
    _allocated: list[Path]

    def __init__(self, prefix: str = "realharness-") -> None:
        self._prefix = prefix
        self._allocated = []

    def allocate(self) -> Path:
        """Create a fresh directory.

        :returns: Absolute path of the new directory.
        :raises OSError: If the directory cannot be created.
        """
        directory: Path = Path(tempfile.mkdtemp(prefix=self._prefix)).resolve()
        self._allocated.append(directory)
        return directory

    def dispose(self) -> None:
        """Remove every allocated directory.

        :raises OSError: If a directory cannot be removed; later ones are still attempted.
        """
        errors: list[OSError] = []
        while len(self._allocated) > 0:
            directory: Path = self._allocated.pop()
            try:
                shutil.rmtree(directory)
            except FileNotFoundError:
                continue
            except OSError as exc:
                errors.append(exc)
        if len(errors) > 0:
            raise errors[0]


class RealServerSession:
    """Run steps against a real server process that keeps its state between launches."""

    description: str
    config: HarnessConfig
    _plugin_sources: list[Path]
    _allocator: TemporaryDirectoryAllocator
    _home: Path | None
    _port: int | None
    _lock: threading.Lock
    _random: random.Random

    def __init__(
        self,
        description: str,
        config: HarnessConfig | None = None,
        plugins: Iterable[Path] = (),
        rng: random.Random | None = None,
    ) -> None:
        """Initialize an unallocated session.

        :param description: Human-readable label, used in logs and output tags.
        :param config: Launch configuration; defaults to :meth:`HarnessConfig.from_environ`.
        :param plugins: Plugin sources installed into the session directory.
        :param rng: Random source used to pick the port.
        """
        self.description = description
        self.config = HarnessConfig.from_environ() if config is None else config
        self._plugin_sources = [Path(source) for source in plugins]
        self._allocator = TemporaryDirectoryAllocator()
        self._home = None
        self._port = None
        self._lock = threading.Lock()
        self._random = random.Random() if rng is None else rng

    @property
    def home(self) -> Path:
        """Session directory and server state root.

        :raises SessionStateError: If the session is not allocated.
        """
        if self._home is None:
            raise SessionStateError(f"Session {self.description!r} is not allocated")
        return self._home

    @property
    def port(self) -> int:
        """HTTP port shared by every launch of this session.

        :raises SessionStateError: If the session is not allocated.
        """
        if self._port is None:
            raise SessionStateError(f"Session {self.description!r} is not allocated")
        return self._port

    @property
    def url(self) -> str:
        return f"http://{self.config.listen_address}:{self.port}{self.config.prefix}/"

    @property
    def is_allocated(self) -> bool:
        return self._home is not None

    def allocate(self) -> None:
        """Create the session directory and choose the port.

        :raises OSError: If the directory or its contents cannot be created.
        """
        if self._home is not None:
            return
        home: Path = self._allocator.allocate()
        try:
            install_init_script(home)
            install_plugins(home, self._plugin_sources)
        except BaseException:
            self._allocator.dispose()
            raise
        self._port = self._random.randrange(self.config.port_range_start, self.config.port_range_start + self.config.port_range_count)
        self._home = home
        log.info("=== Starting session", description=self.description, home=str(home), port=self._port)

    def dispose(self) -> None:
        """Release the session directory. Safe to call more than once."""
        self._home = None
        self._port = None
        try:
            self._allocator.dispose()
        except OSError:
            log.warning("Could not remove session directory", description=self.description, exc_info=True)

    def _build_descriptor(self) -> LaunchDescriptor:
        return LaunchDescriptor(
            python_executable=self.config.python_executable,
            server_module=self.config.server_module,
            search_path=_controller_search_path(),
            port=self.port,
            home=self.home,
            description=self.description,
            location=harness_location(),
            prefix=self.config.prefix,
            listen_address=self.config.listen_address,
            development=self.config.development,
        )

    def _launch(self, descriptor: LaunchDescriptor) -> subprocess.Popen[bytes]:
        """Start the server process.

        :param descriptor: Launch parameters.
        :returns: Running process with piped output.
        :raises LaunchError: If the process cannot be started.
        """
        log.info("Launching server", description=self.description, command=descriptor.display_command())
        try:
            return subprocess.Popen(
                descriptor.command(),
                env=descriptor.environment(os.environ),
                cwd=str(descriptor.home),
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise LaunchError(f"Could not launch {descriptor.python_executable}: {exc}") from exc

    def _reap(self, process: subprocess.Popen[bytes], copiers: list[StreamCopyThread]) -> None:
        """Make sure the server process is gone and its pipes are released.

        :param process: Launched server process.
        :param copiers: Output copiers started for ``process``.
        """
        if process.poll() is None:
            log.warning("Killing server process", description=self.description, pid=process.pid)
            process.kill()
            process.wait()
        for copier in copiers:
            copier.join(timeout=_STREAM_DRAIN_SECONDS)
        if len(copiers) < 2:
            for pipe in (process.stdout, process.stderr):
                if pipe is not None:
                    pipe.close()

    def run(self, step: Step) -> None:
        """Run ``step`` in a fresh server process for this session.

        :param step: Callable taking a :class:`~realharness.fixture.LiveServerFixture`.
        :raises SessionStateError: If the session is not allocated.
        :raises SerializationError: If ``step`` or the reported failure cannot be transported.
        :raises LaunchError: If the server process cannot be started.
        :raises AbnormalTerminationError: If the server process exits non-zero.
        :raises ProxyException: If the step raised inside the server process.
        """
        home: Path = self.home
        with self._lock:
            step_file: Path = home / STEP_FILE
            error_file: Path = home / ERROR_FILE
            error_file.unlink(missing_ok=True)
            write_ser(step_file, step)

            descriptor: LaunchDescriptor = self._build_descriptor()
            process: subprocess.Popen[bytes] = self._launch(descriptor)
            copiers: list[StreamCopyThread] = []
            try:
                for source, target in ((process.stdout, sys.stdout), (process.stderr, sys.stderr)):
                    copier: StreamCopyThread = StreamCopyThread(self.description, source, target)  # type: ignore[arg-type]
                    copier.start()
                    copiers.append(copier)
                exit_code: int = process.wait()
            finally:
                self._reap(process, copiers)
            log.info("Server process exited", description=self.description, exit_code=exit_code)

            if exit_code != 0:
                raise AbnormalTerminationError(exit_code, self.description)
            if error_file.is_file() is False:
                return

            failure: object = read_ser(error_file)
            if isinstance(failure, BaseException) is False:
                raise SerializationError(f"{error_file} does not hold an exception: {type(failure).__qualname__}")
            if isinstance(failure, ProxyException) is True:
                failure.add_note(failure.format_remote())
            raise failure  # type: ignore[misc]

    def __enter__(self) -> "RealServerSession":
        try:
            self.allocate()
        except BaseException:
            self.dispose()
            raise
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        self.dispose()
