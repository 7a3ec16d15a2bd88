"""Classloader-agnostic mirror of a failure raised in the server process.

A :class:`ProxyException` is built only from values every interpreter can
rebuild (strings, integers, tuples, and other proxies), so it can be
unpickled by a process that cannot import the original exception type.
The exact type is lost; message, frames, cause chain, suppressed members and
notes survive.
"""

import traceback

FrameTuple = tuple[str, int | None, str, str | None]
UNPRINTABLE_MESSAGE: str = "<exception str() failed>"


def describe_message(exc: BaseException) -> str:
    """Return ``str(exc)``, or a placeholder when rendering it raises.

    :param exc: Source exception.
    :returns: Exception message.
    """
    try:
        return str(exc)
    except Exception:
        return UNPRINTABLE_MESSAGE


def _qualified_type_name(exc: BaseException) -> str:
    """Return the importable name of ``exc``'s type.

    :param exc: Source exception.
    :returns: ``qualname`` for builtins, ``module.qualname`` otherwise.
    """
    exc_type: type[BaseException] = type(exc)
    module_name: str = exc_type.__module__
    if module_name == "builtins":
        return exc_type.__qualname__
    return f"{module_name}.{exc_type.__qualname__}"


def _render_summary(type_name: str, message: str) -> str:
    """Render the one-line identity of a failure.

    :param type_name: Qualified exception type name.
    :param message: Exception message.
    :returns: ``type: message``, or the bare type name when the message is empty.
    """
    if len(message) == 0:
        return type_name
    return f"{type_name}: {message}"


def _effective_cause(exc: BaseException) -> BaseException | None:
    """Return the exception Python would print as the cause of ``exc``.

    :param exc: Source exception.
    :returns: Explicit cause, implicit context, or ``None``.
    """
    explicit_cause: BaseException | None = exc.__cause__
    if explicit_cause is not None:
        return explicit_cause
    if exc.__suppress_context__ is True:
        return None
    return exc.__context__


def _suppressed_members(exc: BaseException) -> list[BaseException]:
    """Return the secondary failures carried by ``exc``.

    :param exc: Source exception.
    :returns: Group members in order, or an empty list.
    """
    if isinstance(exc, ProxyException) is True:
        return list(exc.suppressed)
    if isinstance(exc, BaseExceptionGroup) is True:
        return list(exc.exceptions)
    return []


def _extract_frames(exc: BaseException) -> tuple[FrameTuple, ...]:
    """Copy the traceback of ``exc`` into plain tuples.

    :param exc: Source exception.
    :returns: ``(filename, lineno, name, line)`` per frame, outermost first.
    """
    summary: traceback.StackSummary = traceback.extract_tb(exc.__traceback__)
    return tuple((frame.filename, frame.lineno, frame.name, frame.line) for frame in summary)


def _extract_notes(exc: BaseException) -> tuple[str, ...]:
    notes: object = getattr(exc, "__notes__", ())
    if isinstance(notes, (list, tuple)) is False:
        return ()
    return tuple(note for note in notes if isinstance(note, str) is True)


class ProxyException(Exception):
    """Generic stand-in for an exception raised on the other side of a process boundary."""

    summary: str
    message: str
    type_name: str
    frames: tuple[FrameTuple, ...]
    suppressed: tuple["ProxyException", ...]
    notes: tuple[str, ...]

    def __init__(
        self,
        summary: str,
        message: str = "",
        type_name: str = "",
        frames: tuple[FrameTuple, ...] = (),
        cause: "ProxyException | None" = None,
        suppressed: tuple["ProxyException", ...] = (),
        notes: tuple[str, ...] = (),
    ) -> None:
        """Initialize a proxy from already-captured diagnostic content.

        :param summary: One-line rendering of the original identity and message.
        :param message: Original exception message.
        :param type_name: Qualified name of the original exception type.
        :param frames: Captured stack frames, outermost first.
        :param cause: Proxied cause, if the original had one.
        :param suppressed: Proxied secondary failures in original order.
        :param notes: Notes attached to the original exception.
        """
        super().__init__(summary)
        self.summary = summary
        self.message = message
        self.type_name = type_name
        self.frames = tuple(tuple(frame) for frame in frames)  # type: ignore[misc]
        self.suppressed = tuple(suppressed)
        self.notes = tuple(notes)
        for note in self.notes:
            self.add_note(note)
        self.__cause__ = cause
        self.__suppress_context__ = True

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ProxyException":
        """Build a proxy tree mirroring ``exc``.

        :param exc: Exception to mirror.
        :returns: Proxy carrying the diagnostic content of ``exc``.
        """
        return _build_proxy(cls, exc, frozenset())

    def __str__(self) -> str:
        return self.summary

    def __reduce__(self) -> object:
        return (
            type(self),
            (
                self.summary,
                self.message,
                self.type_name,
                self.frames,
                self.__cause__,
                self.suppressed,
                self.notes,
            ),
        )

    def cause_chain(self) -> list["ProxyException"]:
        """Return this proxy followed by each proxied cause.

        :returns: Proxies from outermost to root cause.
        """
        chain: list[ProxyException] = [self]
        current: BaseException | None = self.__cause__
        while isinstance(current, ProxyException) is True:
            chain.append(current)
            current = current.__cause__
        return chain

    def format_remote(self) -> str:
        """Render the captured frames, causes and suppressed members as text.

        :returns: Multi-line traceback-style report.
        """
        lines: list[str] = []
        _format_into(self, lines, "")
        return "".join(lines)


def _build_proxy(
    proxy_type: type[ProxyException],
    exc: BaseException,
    seen_ids: frozenset[int],
) -> ProxyException:
    """Recursively mirror ``exc`` and everything it refers to.

    :param proxy_type: Proxy class to instantiate.
    :param exc: Exception to mirror.
    :param seen_ids: Identities already on the current path, to break cycles.
    :returns: Proxy for ``exc``.
    """
    path_ids: frozenset[int] = seen_ids | {id(exc)}

    if isinstance(exc, ProxyException) is True:
        type_name: str = exc.type_name
        message: str = exc.message
        summary: str = exc.summary
    else:
        type_name = _qualified_type_name(exc)
        message = describe_message(exc)
        summary = _render_summary(type_name, message)

    frames: tuple[FrameTuple, ...] = _extract_frames(exc)
    if len(frames) == 0 and isinstance(exc, ProxyException) is True:
        frames = exc.frames

    cause: BaseException | None = _effective_cause(exc)
    proxied_cause: ProxyException | None = None
    if cause is not None and id(cause) not in path_ids:
        proxied_cause = _build_proxy(proxy_type, cause, path_ids)

    proxied_suppressed: list[ProxyException] = []
    for member in _suppressed_members(exc):
        if id(member) in path_ids:
            continue
        proxied_suppressed.append(_build_proxy(proxy_type, member, path_ids))

    return proxy_type(
        summary,
        message=message,
        type_name=type_name,
        frames=frames,
        cause=proxied_cause,
        suppressed=tuple(proxied_suppressed),
        notes=_extract_notes(exc),
    )


def _format_into(proxy: ProxyException, lines: list[str], indent: str) -> None:
    """Append the report for ``proxy`` to ``lines``.

    :param proxy: Proxy to render.
    :param lines: Output accumulator.
    :param indent: Prefix applied to every emitted line.
    """
    lines.append(f"{indent}Remote traceback (most recent call last):\n")
    stack: traceback.StackSummary = traceback.StackSummary.from_list(list(proxy.frames))
    for block in stack.format():
        for line in block.splitlines():
            lines.append(f"{indent}{line}\n")
    lines.append(f"{indent}{proxy.summary}\n")
    for note in proxy.notes:
        lines.append(f"{indent}{note}\n")

    total: int = len(proxy.suppressed)
    for position, member in enumerate(proxy.suppressed, start=1):
        lines.append(f"{indent}Suppressed [{position}/{total}]:\n")
        _format_into(member, lines, indent + "  ")

    cause: BaseException | None = proxy.__cause__
    if isinstance(cause, ProxyException) is True:
        lines.append(f"{indent}Caused by:\n")
        _format_into(cause, lines, indent)
