"""Tests for the test-support handle against an in-process application."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from realharness import LiveServerFixture
from realharness import TestEnvironment
from realharness.appserver import Application


@pytest.fixture
def booted_app(tmp_path: Path) -> Iterator[Application]:
    """Boot an application on a free port.

    :param tmp_path: State root.
    :yields: Booted application.
    """
    app = Application(tmp_path / "home", 0, prefix="/realserver", development=True)
    app.boot()
    try:
        yield app
    finally:
        app.clean_up()


def test_fixture_configures_application(booted_app: Application) -> None:
    """Building the fixture points the application at its own URL."""
    with LiveServerFixture(booted_app, booted_app.port, "in-process") as fixture:
        assert fixture.url == f"http://127.0.0.1:{booted_app.port}/realserver/"
        assert booted_app.root_url == fixture.url
        assert booted_app.no_usage_statistics is True
        assert booted_app.update_checks_enabled is False
        assert fixture.home == booted_app.home


def test_fixture_http_helpers(booted_app: Application) -> None:
    """HTTP helpers reach the running listener under the prefix."""
    with LiveServerFixture(booted_app, booted_app.port, "in-process") as fixture:
        payload: object = fixture.get_json("api/json")
        assert isinstance(payload, dict)
        assert payload["status"] == "ok"
        assert payload["root_url"] == fixture.url
        assert fixture.get("/missing").status_code == 404


def test_environment_is_pinned_until_close(booted_app: Application) -> None:
    """The fixture's environment is current only while it is open."""
    fixture = LiveServerFixture(booted_app, booted_app.port, "pinned")
    assert TestEnvironment.get() is fixture.env
    fixture.close()
    assert TestEnvironment.get() is None
    fixture.close()


def test_dispose_leaves_newer_environment_pinned() -> None:
    """Disposing a stale environment does not unpin a newer one."""
    older = TestEnvironment("older")
    newer = TestEnvironment("newer")
    older.pin()
    newer.pin()
    older.dispose()
    assert TestEnvironment.get() is newer
    newer.dispose()
    assert TestEnvironment.get() is None


def test_application_runs_init_scripts_and_shutdown_hooks(tmp_path: Path) -> None:
    """Init scripts see ``app`` after boot; hooks run on clean-up."""
    home: Path = tmp_path / "home"
    (home / "init.d").mkdir(parents=True)
    (home / "init.d" / "10_mark.py").write_text(
        "app.add_shutdown_hook(lambda home=app.home: (home / 'hook.txt').write_text('hook'))\n"
        "(app.home / 'booted.txt').write_text(str(app.is_booted))\n",
        encoding="utf-8",
    )
    app = Application(home, 0)
    app.boot()
    app.clean_up()

    assert (home / "booted.txt").read_text() == "True"
    assert (home / "hook.txt").read_text() == "hook"
    assert app.is_booted is False
