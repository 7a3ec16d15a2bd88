"""Test-support handle bound to a live application.

The same :class:`LiveServerFixture` is handed to steps running inside a
server process and can be built directly around an in-process
:class:`~realharness.appserver.Application`, so step code is reusable in
both settings.
"""

import threading
from pathlib import Path
from types import TracebackType
from typing import Any
from typing import ClassVar

import httpx
import structlog

log = structlog.get_logger("realharness.fixture")


class TestEnvironment:
    """Process-wide marker for the test currently driving the application."""

    __test__: ClassVar[bool] = False
    _current: ClassVar["TestEnvironment | None"] = None
    _lock: ClassVar[threading.Lock] = threading.Lock()

    description: str

    def __init__(self, description: str) -> None:
        self.description = description

    @classmethod
    def get(cls) -> "TestEnvironment | None":
        """Return the pinned environment, if any."""
        with cls._lock:
            return cls._current

    def pin(self) -> None:
        """Make this the current environment."""
        with TestEnvironment._lock:
            TestEnvironment._current = self

    def dispose(self) -> None:
        """Unpin this environment if it is still current."""
        with TestEnvironment._lock:
            if TestEnvironment._current is self:
                TestEnvironment._current = None


class LiveServerFixture:
    """What a step sees: the running application plus HTTP helpers."""

    app: Any
    port: int
    description: str
    env: TestEnvironment
    _client: httpx.Client
    _is_closed: bool

    def __init__(self, app: Any, port: int, description: str) -> None:
        """Bind the fixture to a booted application.

        :param app: Live application instance.
        :param port: Port the application serves HTTP on.
        :param description: Session label.
        """
        self.app = app
        self.port = port
        self.description = description
        app.root_url = self.url
        app.no_usage_statistics = True
        app.update_checks_enabled = False
        self.env = TestEnvironment(description)
        self.env.pin()
        self._client = httpx.Client(base_url=self.url, timeout=30.0)
        self._is_closed = False
        log.debug("Fixture bound", url=self.url, description=description)

    @property
    def home(self) -> Path:
        return Path(self.app.home)

    @property
    def url(self) -> str:
        """Root URL of the application, with a trailing slash."""
        prefix: str = str(getattr(self.app, "prefix", "")).rstrip("/")
        host: str = str(getattr(self.app, "listen_address", "localhost"))
        if host in ("", "0.0.0.0", "::"):
            host = "localhost"
        return f"http://{host}:{self.port}{prefix}/"

    def get(self, path: str) -> httpx.Response:
        """Issue a GET relative to the application root.

        :param path: Path under the application root, such as ``api/json``.
        :returns: HTTP response.
        """
        return self._client.get(path.lstrip("/"))

    def get_json(self, path: str) -> object:
        """GET ``path`` and decode the JSON body.

        :param path: Path under the application root.
        :returns: Decoded JSON value.
        :raises httpx.HTTPStatusError: If the response status is not 2xx.
        """
        response: httpx.Response = self.get(path)
        response.raise_for_status()
        return response.json()

    def close(self) -> None:
        """Release the HTTP client and unpin the test environment."""
        if self._is_closed is True:
            return
        self._is_closed = True
        self._client.close()
        self.env.dispose()

    def __enter__(self) -> "LiveServerFixture":
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"LiveServerFixture({self.description!r}, url={self.url!r})"
