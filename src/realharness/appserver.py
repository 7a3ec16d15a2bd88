"""Reference server application launched by realharness sessions.

Boot order: state directories, plugins, HTTP listener, then every
``init.d/*.py`` script with the live application bound to ``app``. The
scripts run on the booting thread once the server is ready to serve.
"""

import argparse
import importlib
import json
import logging
import os
import runpy
import sys
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler
from http.server import ThreadingHTTPServer
from pathlib import Path

import structlog

from realharness.launch import DEVELOPMENT_ENV
from realharness.launch import HOME_ENV
from realharness.layout import INIT_DIR
from realharness.layout import PLUGINS_DIR
from realharness.logs import configure_logging

log = structlog.get_logger("realharness.appserver")

_PLUGIN_ARCHIVE_SUFFIXES: tuple[str, ...] = (".zip", ".whl")


class PluginManager:
    """Discovers and imports the plugins installed under ``<home>/plugins``."""

    plugins_dir: Path
    plugins: dict[str, object]

    def __init__(self, plugins_dir: Path) -> None:
        self.plugins_dir = plugins_dir
        self.plugins = {}

    @property
    def search_path(self) -> list[str]:
        """Import path entries that expose installed plugins.

        :returns: Plugins directory followed by plugin archives, sorted by name.
        """
        if self.plugins_dir.is_dir() is False:
            return []
        entries: list[str] = [str(self.plugins_dir)]
        for candidate in sorted(self.plugins_dir.iterdir()):
            if candidate.suffix in _PLUGIN_ARCHIVE_SUFFIXES:
                entries.append(str(candidate))
        return entries

    def _plugin_names(self) -> list[str]:
        names: list[str] = []
        for candidate in sorted(self.plugins_dir.iterdir()):
            if candidate.name.startswith(("_", ".")):
                continue
            if candidate.is_file() is True and candidate.suffix == ".py":
                names.append(candidate.stem)
            elif candidate.is_dir() is True and (candidate / "__init__.py").is_file() is True:
                names.append(candidate.name)
        return names

    def start(self) -> None:
        """Put plugins on the import path and import each top-level plugin module."""
        if self.plugins_dir.is_dir() is False:
            return
        for entry in self.search_path:
            if entry not in sys.path:
                sys.path.append(entry)
        importlib.invalidate_caches()
        for name in self._plugin_names():
            self.plugins[name] = importlib.import_module(name)
            log.info("Loaded plugin", plugin=name)


class _ApplicationRequestHandler(BaseHTTPRequestHandler):
    server: "_ApplicationHTTPServer"

    def do_GET(self) -> None:
        app: Application = self.server.app
        if self.path.rstrip("/") == f"{app.prefix}/api/json":
            self._send_json(200, app.describe())
            return
        self._send_json(404, {"error": "not found", "path": self.path})

    def _send_json(self, status_code: int, data: dict[str, object]) -> None:
        body: bytes = json.dumps(data).encode("utf-8")
        self.send_response(status_code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, format: str, *args: object) -> None:
        log.debug("HTTP request", request=format % args)


class _ApplicationHTTPServer(ThreadingHTTPServer):
    daemon_threads = True
    app: "Application"


class Application:
    """A small monolithic server with persistent state, plugins and init hooks."""

    home: Path
    port: int
    listen_address: str
    prefix: str
    development: bool
    plugin_manager: PluginManager
    root_url: str | None
    no_usage_statistics: bool
    update_checks_enabled: bool
    _http_server: _ApplicationHTTPServer | None
    _serve_thread: threading.Thread | None
    _shutdown_hooks: list[Callable[[], None]]
    _is_booted: bool

    def __init__(
        self,
        home: Path,
        port: int,
        listen_address: str = "127.0.0.1",
        prefix: str = "",
        development: bool = False,
    ) -> None:
        """Initialize an application that has not booted yet.

        :param home: Persistent state root.
        :param port: HTTP port; ``0`` picks a free one at boot.
        :param listen_address: Interface to bind.
        :param prefix: HTTP context path.
        :param development: Development mode flag.
        """
        self.home = home
        self.port = port
        self.listen_address = listen_address
        self.prefix = prefix.rstrip("/")
        self.development = development
        self.plugin_manager = PluginManager(home / PLUGINS_DIR)
        self.root_url = None
        self.no_usage_statistics = False
        self.update_checks_enabled = development is False
        self._http_server = None
        self._serve_thread = None
        self._shutdown_hooks = []
        self._is_booted = False

    @property
    def is_booted(self) -> bool:
        return self._is_booted

    def add_shutdown_hook(self, hook: Callable[[], None]) -> None:
        self._shutdown_hooks.append(hook)

    def describe(self) -> dict[str, object]:
        """Summarize the running application.

        :returns: JSON-compatible status payload.
        """
        return {
            "status": "ok",
            "home": str(self.home),
            "port": self.port,
            "prefix": self.prefix,
            "development": self.development,
            "root_url": self.root_url,
            "plugins": sorted(self.plugin_manager.plugins),
        }

    def start_http(self) -> None:
        """Bind the HTTP listener and serve on a background thread.

        :raises OSError: If the address cannot be bound.
        """
        http_server = _ApplicationHTTPServer((self.listen_address, self.port), _ApplicationRequestHandler)
        http_server.app = self
        self.port = http_server.server_address[1]
        self._http_server = http_server
        self._serve_thread = threading.Thread(target=http_server.serve_forever, name="http", daemon=True)
        self._serve_thread.start()
        log.info("HTTP listener started", address=self.listen_address, port=self.port, prefix=self.prefix)

    def boot(self) -> None:
        """Bring the application up and hand it to the init scripts."""
        self.home.mkdir(parents=True, exist_ok=True)
        self.plugin_manager.start()
        self.start_http()
        self._is_booted = True
        log.info("Application booted", home=str(self.home), development=self.development)
        self.run_init_scripts()

    def run_init_scripts(self) -> None:
        """Execute ``init.d/*.py`` in name order with ``app`` in their globals."""
        init_dir: Path = self.home / INIT_DIR
        if init_dir.is_dir() is False:
            return
        for script in sorted(init_dir.glob("*.py")):
            log.info("Running init script", script=script.name)
            runpy.run_path(str(script), init_globals={"app": self}, run_name="__realserver_init__")

    def clean_up(self) -> None:
        """Run shutdown hooks and stop the HTTP listener."""
        hooks: list[Callable[[], None]] = list(reversed(self._shutdown_hooks))
        self._shutdown_hooks.clear()
        for hook in hooks:
            try:
                hook()
            except Exception:
                log.exception("Shutdown hook failed", hook=repr(hook))
        http_server: _ApplicationHTTPServer | None = self._http_server
        if http_server is not None:
            http_server.shutdown()
            http_server.server_close()
            self._http_server = None
        self._is_booted = False

    def wait(self) -> None:
        """Block until the HTTP listener stops."""
        serve_thread: threading.Thread | None = self._serve_thread
        if serve_thread is not None:
            serve_thread.join()


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the realharness reference server.")
    parser.add_argument("--http-port", type=int, default=8080, help="HTTP port to bind.")
    parser.add_argument("--http-listen-address", default="127.0.0.1", help="Interface to bind.")
    parser.add_argument("--prefix", default="", help="HTTP context path.")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Boot the application and serve until interrupted.

    :param argv: Command-line arguments, without the program name.
    :returns: Process exit code.
    """
    args: argparse.Namespace = _parse_args(argv)
    development: bool = os.environ.get(DEVELOPMENT_ENV, "").lower() in ("1", "true", "yes")
    configure_logging(logging.DEBUG if development is True else logging.INFO)

    raw_home: str = os.environ.get(HOME_ENV, "")
    if len(raw_home) == 0:
        log.error("State root is not set", variable=HOME_ENV)
        return 2

    app = Application(
        Path(raw_home),
        args.http_port,
        listen_address=args.http_listen_address,
        prefix=args.prefix,
        development=development,
    )
    try:
        app.boot()
    except OSError as exc:
        log.error("Application failed to boot", error=str(exc))
        return 1
    try:
        app.wait()
    except KeyboardInterrupt:
        pass
    finally:
        app.clean_up()
    return 0


if __name__ == "__main__":
    sys.exit(main())
