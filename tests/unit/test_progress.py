"""
Unit tests for upload progress accounting (cosbackup/backup/progress.py).
"""

import io

import pytest

from cosbackup.backup.progress import (
    DEFAULT_INTERVAL,
    ProgressReader,
    parse_progress_interval
)


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start=100.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_reader(data, interval=1.0, clock=None):
    events = []
    reader = ProgressReader(
        io.BytesIO(data),
        total=len(data),
        interval=interval,
        on_progress=events.append,
        clock=clock or FakeClock()
    )
    return reader, events


class TestProgressReader:
    """Test ProgressReader event emission."""

    def test_reads_all_data(self):
        """Test the wrapped stream content passes through unchanged."""
        data = b'abcdefghij' * 100
        reader, _ = make_reader(data)

        assert reader.read() == data
        assert reader.read() == b''

    def test_first_read_emits(self):
        """Test the first read always produces an event."""
        reader, events = make_reader(b'x' * 100)

        reader.read(10)

        assert len(events) == 1
        assert events[0].read == 10
        assert events[0].final is False

    def test_events_rate_limited(self):
        """Test reads within the interval do not emit."""
        clock = FakeClock()
        reader, events = make_reader(b'x' * 100, interval=1.0, clock=clock)

        reader.read(10)
        clock.advance(0.2)
        reader.read(10)
        clock.advance(0.2)
        reader.read(10)

        assert len(events) == 1

        clock.advance(1.0)
        reader.read(10)

        assert len(events) == 2
        assert events[1].read == 40

    def test_final_event_exactly_once(self):
        """Test a single final event when the stream is exhausted."""
        clock = FakeClock()
        reader, events = make_reader(b'x' * 30, clock=clock)

        reader.read(10)
        clock.advance(0.1)
        reader.read(10)
        clock.advance(0.1)
        reader.read(10)
        reader.read(10)
        reader.read()

        finals = [e for e in events if e.final]
        assert len(finals) == 1
        assert finals[0].read == 30
        assert finals[0].percent == 100
        assert events[-1].final is True

    def test_final_read_on_tick_boundary(self):
        """Test the last read landing on a tick emits one event, the final one."""
        clock = FakeClock()
        reader, events = make_reader(b'x' * 20, interval=1.0, clock=clock)

        reader.read(10)
        clock.advance(1.0)
        reader.read(10)

        assert len(events) == 2
        assert [e.final for e in events] == [False, True]

    def test_rate_and_eta(self):
        """Test rate is bytes per second since the previous event."""
        clock = FakeClock()
        reader, events = make_reader(b'x' * 400, interval=1.0, clock=clock)

        reader.read(100)
        clock.advance(2.0)
        reader.read(100)

        assert events[1].rate == pytest.approx(50.0)
        assert events[1].eta == pytest.approx(4.0)

    def test_seek_restarts_accounting_without_second_final(self):
        """Test a rewind resets counters but a re-read does not finish twice."""
        data = b'y' * 50
        reader, events = make_reader(data)

        reader.read()
        reader.seek(0)

        assert reader.read_bytes == 0
        assert reader.read() == data
        assert reader.finished is True
        assert len([e for e in events if e.final]) == 1

    def test_len_is_total(self):
        reader, _ = make_reader(b'z' * 42)

        assert len(reader) == 42

    def test_empty_stream_single_final_event(self):
        """Test a zero-byte stream still reports completion."""
        reader, events = make_reader(b'')

        assert reader.read() == b''
        assert reader.read() == b''
        assert len(events) == 1
        assert events[0].final is True


class TestParseProgressInterval:
    """Test PROGRESS_INTERVAL parsing."""

    @pytest.mark.parametrize('value,expected', [
        ('500ms', 0.5),
        ('2s', 2.0),
        ('1m', 60.0),
        ('1.5', 1.5),
        ('1ms', 0.001),
        (3, 3.0),
    ])
    def test_valid_values(self, value, expected):
        assert parse_progress_interval(value) == pytest.approx(expected)

    @pytest.mark.parametrize('value', [
        None,
        '',
        'fast',
        '0s',
        '2m',
        '0.5ms',
        '1' * 21,
        '-1s',
    ])
    def test_invalid_values_fall_back(self, value):
        """Test malformed, too long or out of range values use the default."""
        assert parse_progress_interval(value) == DEFAULT_INTERVAL
