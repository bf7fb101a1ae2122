"""Tests for Pydantic models and transfer timing."""

import pytest
from pydantic import ValidationError

from cvlsconnect.config import TransferTiming
from cvlsconnect.exceptions import ParseError
from cvlsconnect.models.records import (
    DEFAULT_MESSAGES,
    LogEntry,
    TransferState,
    TransferStatus,
    percent_complete,
)


class TestTransferState:
    """Tests for TransferState."""

    def test_running_is_only_non_terminal(self):
        """Test that every state but RUNNING is terminal."""
        for state in TransferState:
            assert state.is_terminal is (state is not TransferState.RUNNING)

    def test_failure_states(self):
        """Test failure classification."""
        assert not TransferState.SUCCEEDED.is_failure
        assert not TransferState.RUNNING.is_failure
        assert TransferState.FAILED_LOST_PACKETS.is_failure
        assert TransferState.FAILED.is_failure

    def test_every_state_has_default_message(self):
        """Test that each state has a default message."""
        assert set(DEFAULT_MESSAGES) == set(TransferState)


class TestPercentComplete:
    """Tests for percent_complete."""

    def test_basic(self):
        """Test integer percent of pages."""
        assert percent_complete(3, 12) == 25
        assert percent_complete(4, 12) == 33

    def test_zero_page_count(self):
        """Test that an unknown page count gives 0%."""
        assert percent_complete(5, 0) == 0

    def test_clamped_to_100(self):
        """Test the firmware page index running past the count is clamped."""
        assert percent_complete(16, 13) == 100


class TestTransferStatus:
    """Tests for TransferStatus."""

    def test_create_derives_percent_and_message(self):
        """Test create fills in percent and default message."""
        status = TransferStatus.create(TransferState.RUNNING, pages_total=10, current_page=5)
        assert status.percent == 50
        assert status.message == DEFAULT_MESSAGES[TransferState.RUNNING]
        assert status.is_running
        assert not status.succeeded

    def test_explicit_message(self):
        """Test an explicit message replaces the default."""
        status = TransferStatus.create(TransferState.FAILED, message="Transfer stopped.")
        assert status.message == "Transfer stopped."

    def test_frozen(self):
        """Test that snapshots are immutable."""
        status = TransferStatus.create(TransferState.SUCCEEDED)
        with pytest.raises(ValidationError):
            status.percent = 10

    def test_percent_validated(self):
        """Test that percent outside 0-100 is rejected."""
        with pytest.raises(ValidationError):
            TransferStatus(
                pages_total=1,
                current_page=0,
                percent=101,
                state=TransferState.RUNNING,
                message="x",
            )

    def test_str(self):
        """Test string representation."""
        status = TransferStatus.create(TransferState.SUCCEEDED, pages_total=4, current_page=4)
        assert str(status).startswith("SUCCEEDED 100%")


class TestLogEntry:
    """Tests for LogEntry."""

    def test_from_bytes(self):
        """Test binary layout: LE code, LE timestamp, UTF-8 message."""
        data = (7).to_bytes(4, "little") + (123456).to_bytes(4, "little") + b"Over temperature"
        entry = LogEntry.from_bytes(data)
        assert entry.code == 7
        assert entry.timestamp == 123456
        assert entry.message == "Over temperature"

    def test_from_bytes_strips_terminators(self):
        """Test trailing NULs and line endings are removed."""
        data = bytes(8) + b"Fan fault\x00\x00"
        assert LogEntry.from_bytes(data).message == "Fan fault"

    def test_from_bytes_header_only(self):
        """Test an entry without message text."""
        assert LogEntry.from_bytes(bytes(8)).message == ""

    def test_from_bytes_too_short_raises(self):
        """Test that a truncated entry raises ParseError."""
        with pytest.raises(ParseError) as exc_info:
            LogEntry.from_bytes(b"\x01\x02\x03")
        assert exc_info.value.record_type == "LogEntry"

    def test_from_text(self):
        """Test parsing a text log reply."""
        entry = LogEntry.from_text("4,12,99887,Lamp on, channel 1\r", 4)
        assert entry is not None
        assert entry.code == 12
        assert entry.timestamp == 99887
        assert entry.message == "Lamp on, channel 1"

    def test_from_text_wrong_index(self):
        """Test that a reply for another index carries no entry."""
        assert LogEntry.from_text("5,12,99887,msg", 4) is None

    @pytest.mark.parametrize("reply", ["", "4", "4,x,1,msg", "4,-1,1,msg"])
    def test_from_text_no_entry(self, reply):
        """Test replies that do not describe an entry."""
        assert LogEntry.from_text(reply, 4) is None


class TestTransferTiming:
    """Tests for TransferTiming."""

    def test_binary_defaults(self):
        """Test binary socket defaults."""
        timing = TransferTiming.binary()
        assert timing.reply_timeout == 0.5
        assert timing.max_missed_pages == 5
        assert timing.step_delay == 0.0

    def test_text_defaults(self):
        """Test text protocol defaults."""
        timing = TransferTiming.text()
        assert timing.reply_timeout == 1.0
        assert timing.terminal_timeout == 5.0

    def test_validation(self):
        """Test that non-positive timeouts are rejected."""
        with pytest.raises(ValidationError):
            TransferTiming(reply_timeout=0)
        with pytest.raises(ValidationError):
            TransferTiming(max_missed_pages=0)
