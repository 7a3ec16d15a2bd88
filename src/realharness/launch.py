"""Process-start parameters shared by the controller and the server process.

Everything here is available to the server before it touches the session
directory, so it travels on the command line and in the environment rather
than through the file channel.
"""

import os
from collections.abc import Mapping
from pathlib import Path

from realharness.errors import SessionStateError

LOCATION_ENV: str = "REALHARNESS_LOCATION"
SEARCH_PATH_ENV: str = "REALHARNESS_PATH"
PORT_ENV: str = "REALHARNESS_PORT"
DESCRIPTION_ENV: str = "REALHARNESS_DESCRIPTION"
HOME_ENV: str = "REALSERVER_HOME"
DEVELOPMENT_ENV: str = "REALSERVER_DEVELOPMENT"
STEP_FILE: str = "step.ser"
ERROR_FILE: str = "error.ser"
_ELIDED: str = "…"


class LaunchDescriptor:
    """Everything needed to start one server process for a session."""

    python_executable: str
    server_module: str
    search_path: list[str]
    port: int
    home: Path
    description: str
    location: str
    prefix: str
    listen_address: str
    development: bool

    def __init__(
        self,
        python_executable: str,
        server_module: str,
        search_path: list[str],
        port: int,
        home: Path,
        description: str,
        location: str,
        prefix: str,
        listen_address: str = "127.0.0.1",
        development: bool = True,
    ) -> None:
        """Initialize a launch descriptor.

        :param python_executable: Interpreter used to run the server.
        :param server_module: Module executed with ``-m``.
        :param search_path: Import path entries the test code needs.
        :param port: HTTP port the server binds.
        :param home: Session directory, used as the server's state root.
        :param description: Human-readable session label.
        :param location: Directory containing the ``realharness`` package.
        :param prefix: HTTP context path.
        :param listen_address: Interface the server binds.
        :param development: Whether the server starts in development mode.
        """
        self.python_executable = python_executable
        self.server_module = server_module
        self.search_path = list(search_path)
        self.port = port
        self.home = home
        self.description = description
        self.location = location
        self.prefix = prefix
        self.listen_address = listen_address
        self.development = development

    def command(self) -> list[str]:
        """Build the server argv.

        :returns: Argument list for :class:`subprocess.Popen`.
        """
        return [
            self.python_executable,
            "-m",
            self.server_module,
            f"--http-port={self.port}",
            f"--http-listen-address={self.listen_address}",
            f"--prefix={self.prefix}",
        ]

    def environment(self, base: Mapping[str, str]) -> dict[str, str]:
        """Build the server environment on top of ``base``.

        :param base: Environment inherited from the controller.
        :returns: New environment mapping.
        """
        environ: dict[str, str] = dict(base)
        environ[LOCATION_ENV] = self.location
        environ[SEARCH_PATH_ENV] = os.pathsep.join(self.search_path)
        environ[PORT_ENV] = str(self.port)
        environ[DESCRIPTION_ENV] = self.description
        environ[HOME_ENV] = str(self.home)
        if self.development is True:
            environ[DEVELOPMENT_ENV] = "true"
        else:
            environ.pop(DEVELOPMENT_ENV, None)
        inherited_pythonpath: str = environ.get("PYTHONPATH", "")
        if len(inherited_pythonpath) > 0:
            environ["PYTHONPATH"] = os.pathsep.join([self.location, inherited_pythonpath])
        else:
            environ["PYTHONPATH"] = self.location
        environ["PYTHONUNBUFFERED"] = "1"
        return environ

    def display_command(self) -> str:
        """Render the command for logs, with the search path elided.

        :returns: Printable command line prefixed by the session variables.
        """
        assignments: list[str] = [
            f"{HOME_ENV}={self.home}",
            f"{PORT_ENV}={self.port}",
            f"{SEARCH_PATH_ENV}={_ELIDED}",
        ]
        return " ".join(assignments + self.command())


class SessionProperties:
    """Session parameters as seen from inside the server process."""

    location: str
    search_path: list[str]
    port: int
    description: str
    home: Path

    def __init__(self, location: str, search_path: list[str], port: int, description: str, home: Path) -> None:
        self.location = location
        self.search_path = search_path
        self.port = port
        self.description = description
        self.home = home

    @property
    def step_file(self) -> Path:
        return self.home / STEP_FILE

    @property
    def error_file(self) -> Path:
        return self.home / ERROR_FILE

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> "SessionProperties":
        """Read the session parameters published by the controller.

        :param environ: Environment to read; defaults to ``os.environ``.
        :returns: Parsed session properties.
        :raises SessionStateError: If a required variable is missing or malformed.
        """
        source: Mapping[str, str] = os.environ if environ is None else environ
        home: str = _require_env(source, HOME_ENV)
        raw_port: str = _require_env(source, PORT_ENV)
        try:
            port: int = int(raw_port)
        except ValueError as exc:
            raise SessionStateError(f"{PORT_ENV} must be an integer, got {raw_port!r}") from exc

        raw_search_path: str = source.get(SEARCH_PATH_ENV, "")
        search_path: list[str] = [entry for entry in raw_search_path.split(os.pathsep) if len(entry) > 0]
        return cls(
            location=source.get(LOCATION_ENV, ""),
            search_path=search_path,
            port=port,
            description=source.get(DESCRIPTION_ENV, "realharness session"),
            home=Path(home),
        )


def _require_env(source: Mapping[str, str], name: str) -> str:
    """Return a non-empty environment value.

    :param source: Environment mapping.
    :param name: Variable name.
    :returns: Variable value.
    :raises SessionStateError: If the variable is missing or empty.
    """
    value: str | None = source.get(name)
    if value is None or len(value) == 0:
        raise SessionStateError(f"{name} is not set; not running under a realharness session")
    return value
