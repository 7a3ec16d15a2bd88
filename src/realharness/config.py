"""Controller-side configuration for realharness sessions."""

import os
import sys
from collections.abc import Mapping

PYTHON_ENV: str = "REALHARNESS_PYTHON"
SERVER_MODULE_ENV: str = "REALHARNESS_SERVER_MODULE"
PREFIX_ENV: str = "REALHARNESS_PREFIX"
LISTEN_ADDRESS_ENV: str = "REALHARNESS_LISTEN_ADDRESS"
DEFAULT_SERVER_MODULE: str = "realharness.appserver"
DEFAULT_PREFIX: str = "/realserver"
DEFAULT_LISTEN_ADDRESS: str = "127.0.0.1"
# Dynamic/private port range: 49152-65535.
DYNAMIC_PORT_START: int = 49152
DYNAMIC_PORT_COUNT: int = 16384


def _validate_prefix(prefix: str) -> str:
    """Normalize an HTTP context path.

    :param prefix: Requested prefix.
    :returns: Prefix with one leading slash and no trailing slash.
    :raises ValueError: If ``prefix`` contains whitespace.
    """
    stripped: str = prefix.strip()
    if any(character.isspace() for character in stripped) is True:
        raise ValueError(f"prefix must not contain whitespace: {prefix!r}")
    trimmed: str = stripped.strip("/")
    if len(trimmed) == 0:
        return ""
    return f"/{trimmed}"


def _validate_port_range(start: int, count: int) -> tuple[int, int]:
    """Validate a port range.

    :param start: First port.
    :param count: Number of ports.
    :returns: Tuple of ``(start, count)``.
    :raises ValueError: If the range is empty or leaves ``1..65535``.
    """
    if count <= 0:
        raise ValueError("port range must contain at least one port")
    if start < 1 or start + count - 1 > 65535:
        raise ValueError(f"port range {start}..{start + count - 1} is outside 1..65535")
    return start, count


class HarnessConfig:
    """How the controller launches the server for a session."""

    python_executable: str
    server_module: str
    prefix: str
    listen_address: str
    port_range_start: int
    port_range_count: int
    development: bool

    def __init__(
        self,
        python_executable: str | None = None,
        server_module: str = DEFAULT_SERVER_MODULE,
        prefix: str = DEFAULT_PREFIX,
        listen_address: str = DEFAULT_LISTEN_ADDRESS,
        port_range_start: int = DYNAMIC_PORT_START,
        port_range_count: int = DYNAMIC_PORT_COUNT,
        development: bool = True,
    ) -> None:
        """Initialize the configuration.

        :param python_executable: Interpreter for the server; defaults to ``sys.executable``.
        :param server_module: Module run with ``python -m``.
        :param prefix: HTTP context path of the server.
        :param listen_address: Interface the server binds.
        :param port_range_start: First port of the range sessions pick from.
        :param port_range_count: Size of that range.
        :param development: Start the server in development mode.
        :raises ValueError: If any value is invalid.
        """
        if python_executable is None:
            python_executable = sys.executable
        if len(server_module.strip()) == 0:
            raise ValueError("server_module cannot be empty")
        self.python_executable = python_executable
        self.server_module = server_module.strip()
        self.prefix = _validate_prefix(prefix)
        self.listen_address = listen_address
        self.port_range_start, self.port_range_count = _validate_port_range(port_range_start, port_range_count)
        self.development = development

    @property
    def port_range(self) -> range:
        return range(self.port_range_start, self.port_range_start + self.port_range_count)

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> "HarnessConfig":
        """Build a configuration from ``REALHARNESS_*`` variables.

        :param environ: Environment to read; defaults to ``os.environ``.
        :returns: Configuration with unset variables at their defaults.
        """
        source: Mapping[str, str] = os.environ if environ is None else environ
        return cls(
            python_executable=source.get(PYTHON_ENV) or None,
            server_module=source.get(SERVER_MODULE_ENV) or DEFAULT_SERVER_MODULE,
            prefix=source.get(PREFIX_ENV, DEFAULT_PREFIX),
            listen_address=source.get(LISTEN_ADDRESS_ENV) or DEFAULT_LISTEN_ADDRESS,
        )
