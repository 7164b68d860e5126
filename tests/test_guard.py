import io

import pytest

from ephemtls.guard import IntentionalPanicError, PanickingWriter, recover


class FailingSink:
    def __init__(self, fail_on: int = 1):
        self.fail_on = fail_on
        self.writes = []

    def write(self, data):
        if len(self.writes) + 1 == self.fail_on:
            raise OSError(28, "No space left on device")
        self.writes.append(data)
        return len(data)


class NoneReturningSink:
    def __init__(self):
        self.data = []

    def write(self, data):
        self.data.append(data)


def test_write_passes_through():
    sink = io.BytesIO()
    w = PanickingWriter("audit", sink)
    assert w.write(b"hello") == 5
    assert w.write(b"") == 0
    assert sink.getvalue() == b"hello"


def test_write_reports_len_when_sink_returns_none():
    sink = NoneReturningSink()
    w = PanickingWriter("audit", sink)
    assert w.write("abc") == 3
    assert sink.data == ["abc"]


def test_failed_write_escalates_with_name_and_cause():
    sink = FailingSink(fail_on=2)
    w = PanickingWriter("access log", sink)
    w.write(b"first")

    with pytest.raises(IntentionalPanicError) as ei:
        w.write(b"second")

    msg = ei.value.message
    assert "access log" in msg
    assert "No space left on device" in msg
    assert isinstance(ei.value.__cause__, OSError)
    assert sink.writes == [b"first"]


def test_escalation_is_not_an_ordinary_exception():
    w = PanickingWriter("stream", FailingSink())
    with pytest.raises(IntentionalPanicError):
        try:
            w.write(b"x")
        except Exception:  # a supervisor of this shape must not catch it
            pytest.fail("escalation was swallowed by except Exception")


def test_closed_sink_escalates():
    sink = io.StringIO()
    sink.close()
    w = PanickingWriter("closed", sink)
    with pytest.raises(IntentionalPanicError) as ei:
        w.write("x")
    assert "fatal write to closed failed" in str(ei.value)


def test_flush_failure_escalates():
    class BadFlush:
        def write(self, data):
            return len(data)

        def flush(self):
            raise OSError("flush failed")

    w = PanickingWriter("buffered", BadFlush())
    with pytest.raises(IntentionalPanicError) as ei:
        w.flush()
    assert "buffered" in str(ei.value)


def test_close_passes_through():
    sink = io.BytesIO()
    w = PanickingWriter("s", sink)
    w.close()
    assert sink.closed
    # sinks without close() are fine
    PanickingWriter("s", NoneReturningSink()).close()


def test_add_stack_returns_new_instance():
    err = IntentionalPanicError("fatal write to log failed: disk full")
    enriched = err.add_stack("frame one\nframe two")

    assert enriched is not err
    assert err.message == "fatal write to log failed: disk full"
    assert err.stack is None
    assert enriched.stack == "frame one\nframe two"
    assert err.message in enriched.message
    assert "frame two" in enriched.message
    assert len(enriched.message) > len(err.message)
    assert enriched.message.startswith("intentional panic error: ")


def test_recover_attaches_traceback():
    w = PanickingWriter("stderr", FailingSink())
    try:
        w.write(b"x")
    except IntentionalPanicError as err:
        enriched = recover(err)
    assert "test_recover_attaches_traceback" in enriched.stack
    assert "fatal write to stderr failed" in enriched.message


def test_recover_without_traceback_uses_current_stack():
    enriched = recover(IntentionalPanicError("boom"))
    assert "test_recover_without_traceback_uses_current_stack" in enriched.stack


class TransportSink:
    def write(self, data):
        raise RuntimeError("transport closed")

    def flush(self):
        raise RuntimeError("transport closed")


def test_any_sink_failure_escalates():
    w = PanickingWriter("access log", TransportSink())
    with pytest.raises(IntentionalPanicError) as ei:
        w.write(b"x")
    assert "fatal write to access log failed: transport closed" in ei.value.message
    assert isinstance(ei.value.__cause__, RuntimeError)

    with pytest.raises(IntentionalPanicError) as ei:
        w.flush()
    assert "access log" in ei.value.message
