"""Show a realharness session: state survives restarts and failures cross back intact."""

import argparse
import pathlib
import sys

SRC_PATH: str = str(pathlib.Path(__file__).resolve().parent.parent / "src")


def _ensure_src_path(src_path: str) -> None:
    """Ensure ``src`` is importable in the current interpreter.

    :param src_path: Absolute path to the repository ``src`` directory.
    """
    exists: bool = src_path in sys.path
    if exists is False:
        sys.path.insert(0, src_path)


def _count_launches(fixture: object) -> None:
    """Increment a counter kept in the server's state root.

    :param fixture: Live server fixture.
    """
    counter_file: pathlib.Path = fixture.home / "launches.txt"  # type: ignore[attr-defined]
    previous: int = 0
    if counter_file.is_file() is True:
        previous = int(counter_file.read_text(encoding="utf-8"))
    counter_file.write_text(str(previous + 1), encoding="utf-8")
    status: object = fixture.get_json("api/json")  # type: ignore[attr-defined]
    print(f"launch {previous + 1}: server says {status}")


def _fail_on_purpose(fixture: object) -> None:
    """Raise a chained failure inside the server process.

    :param fixture: Live server fixture.
    """
    try:
        {}["missing"]
    except KeyError as exc:
        raise RuntimeError("step failed on purpose") from exc


def _parse_args() -> argparse.Namespace:
    """Parse command-line arguments.

    :returns: Parsed arguments.
    """
    parser = argparse.ArgumentParser(description="Run steps against a real server process.")
    parser.add_argument("--launches", type=int, default=2, help="Successful launches before the failing one.")
    return parser.parse_args()


def main() -> int:
    """Run the demo.

    :returns: Process exit code.
    """
    args: argparse.Namespace = _parse_args()
    _ensure_src_path(SRC_PATH)

    from realharness import ProxyException
    from realharness import RealServerSession
    from realharness import configure_logging

    configure_logging()
    with RealServerSession("real_server_demo") as session:
        for _ in range(args.launches):
            session.run(_count_launches)
        launches: str = (session.home / "launches.txt").read_text(encoding="utf-8")
        print(f"state root {session.home} recorded {launches} launches on port {session.port}")

        try:
            session.run(_fail_on_purpose)
        except ProxyException as failure:
            print(f"captured remote failure: {failure}")
            print(failure.format_remote())
            return 0
    print("expected the last step to fail", file=sys.stderr)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
