"""Entry point executed inside the server process once the application has booted.

This module only depends on the launch contract and the file channel. The
fixture type handed to the step is looked up by name through the execution
context, so the same lookup picks up whichever ``realharness`` the test
search path provides.
"""

import logging
import os
import sys
from collections.abc import Callable
from typing import Any

import structlog

from realharness.context import ExecutionContext
from realharness.launch import SessionProperties
from realharness.proxy import ProxyException
from realharness.proxy import describe_message
from realharness.serialization import read_ser
from realharness.serialization import write_ser

log = structlog.get_logger("realharness.remote")

FIXTURE_TARGET: str = "realharness.fixture:LiveServerFixture"
ExitFunction = Callable[[int], None]


def _exit_process(code: int) -> None:
    """Terminate the server process immediately.

    Non-daemon threads started by the application must not keep it alive.

    :param code: Process exit code.
    """
    logging.shutdown()
    for stream in (sys.stdout, sys.stderr):
        try:
            stream.flush()
        except (OSError, ValueError):
            pass
    os._exit(code)


def _invoke_step(step: object, fixture: object) -> None:
    """Call ``step`` with ``fixture``.

    :param step: Callable taking the fixture, or an object with ``run(fixture)``.
    :param fixture: Test-support handle.
    :raises TypeError: If ``step`` is neither.
    """
    if callable(step) is True:
        step(fixture)
        return
    run_method: object = getattr(step, "run", None)
    if callable(run_method) is True:
        run_method(fixture)
        return
    raise TypeError(f"Step must be callable or define run(fixture), got {type(step).__qualname__}")


def _run_step(app: Any, properties: SessionProperties, context: ExecutionContext) -> None:
    """Load the step, run it against a fresh fixture, then clean up the host.

    :param app: Live application.
    :param properties: Session parameters.
    :param context: Open execution context.
    """
    fixture: Any = None
    try:
        fixture_type: Any = context.locate(FIXTURE_TARGET)
        step: object = read_ser(properties.step_file, context.resolve)
        log.info("Running step", step=repr(step), description=properties.description)
        fixture = fixture_type(app, properties.port, properties.description)
        _invoke_step(step, fixture)
    finally:
        try:
            app.clean_up()
        finally:
            if fixture is not None:
                fixture.close()


def run(app: Any, exit_process: ExitFunction = _exit_process) -> None:
    """Run the session's step against ``app`` and exit.

    A step failure is reported only through the failure artifact; the process
    still exits with code ``0``. Exit code ``1`` means the failure artifact
    itself could not be written.

    :param app: Live application handed over by the init script.
    :param exit_process: Process terminator.
    """
    properties: SessionProperties = SessionProperties.from_environ()
    exit_code: int = 0
    with ExecutionContext(properties.search_path, parent=app.plugin_manager) as context:
        try:
            _run_step(app, properties, context)
        except (KeyboardInterrupt, SystemExit):
            raise
        except BaseException as exc:
            log.info("Step failed", error=f"{type(exc).__qualname__}: {describe_message(exc)}")
            try:
                write_ser(properties.error_file, ProxyException.from_exception(exc))
            except OSError:
                log.exception("Could not write failure artifact", path=str(properties.error_file))
                exit_code = 1
        else:
            log.info("Step succeeded", description=properties.description)
    exit_process(exit_code)
