"""
ephemtls.guard
~~~~~~~~~~~~~~
Fail-fast wrapper for critical output channels.

A :class:`PanickingWriter` forwards writes to its sink unchanged.  When the
sink fails it raises :class:`IntentionalPanicError`, which derives from
``BaseException`` so that the usual ``except Exception`` safety nets
(logging handlers, per-connection handlers) cannot swallow it.  Only a
top-level boundary should catch it, attach a stack with :func:`recover`
and terminate.
"""

from __future__ import annotations

import traceback
from typing import Any, AnyStr, Optional, Protocol


class IntentionalPanicError(BaseException):
    """Unrecoverable condition that must propagate to a recovery boundary."""

    def __init__(self, message: str, stack: Optional[str] = None):
        if stack is not None:
            message = f"intentional panic error: {message}\nstack: {stack}\n"
        super().__init__(message)
        self._message = message
        self._stack = stack

    @property
    def message(self) -> str:
        return self._message

    @property
    def stack(self) -> Optional[str]:
        return self._stack

    def __str__(self) -> str:
        return self._message

    def add_stack(self, stack: str) -> "IntentionalPanicError":
        """Return a new error whose message records *stack*.

        Call this at the point of recovery and raise the result; the
        receiver is left untouched.
        """
        return IntentionalPanicError(self._message, stack=stack)


class Sink(Protocol):
    def write(self, data: Any) -> Any: ...


class PanickingWriter:
    """Writer that escalates instead of reporting a failed write."""

    def __init__(self, name: str, sink: Sink):
        self.name = name
        self._sink = sink

    def write(self, data: AnyStr) -> int:
        try:
            n = self._sink.write(data)
        except Exception as exc:
            raise IntentionalPanicError(
                f"fatal write to {self.name} failed: {exc}"
            ) from exc
        # file-like sinks may not report a count
        return len(data) if n is None else n

    def flush(self) -> None:
        flush = getattr(self._sink, "flush", None)
        if flush is None:
            return
        try:
            flush()
        except Exception as exc:
            raise IntentionalPanicError(
                f"fatal flush of {self.name} failed: {exc}"
            ) from exc

    def close(self) -> None:
        close = getattr(self._sink, "close", None)
        if close is not None:
            close()

    def __repr__(self) -> str:
        return f"<PanickingWriter {self.name!r}>"


def recover(err: IntentionalPanicError) -> IntentionalPanicError:
    """Enrich *err* with the stack at the current point of recovery."""
    if err.__traceback__ is not None:
        lines = traceback.format_exception(type(err), err, err.__traceback__)
    else:
        lines = traceback.format_stack()
    return err.add_stack("".join(lines))


__all__ = ["IntentionalPanicError", "PanickingWriter", "recover"]
