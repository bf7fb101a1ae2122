"""Tests for MockTransport."""

import asyncio

import pytest

from cvlsconnect.exceptions import TimeoutError, TransportError
from cvlsconnect.transport.mock import MockTransport, ScriptedMockTransport


class TestMockTransport:
    """Tests for MockTransport class."""

    @pytest.fixture
    def transport(self):
        """Create a MockTransport instance."""
        return MockTransport()

    @pytest.mark.asyncio
    async def test_open_close(self, transport):
        """Test opening and closing transport."""
        assert not transport.is_open
        await transport.open()
        assert transport.is_open
        await transport.close()
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_double_open_raises(self, transport):
        """Test that opening twice raises error."""
        await transport.open()
        with pytest.raises(TransportError):
            await transport.open()

    @pytest.mark.asyncio
    async def test_write_records_data(self, transport):
        """Test that write records data."""
        await transport.open()
        await transport.write(b"&f\r\n")
        await transport.write(b"&@e?\r\n")
        assert transport.written_data == [b"&f\r\n", b"&@e?\r\n"]
        assert transport.last_written == b"&@e?\r\n"

    @pytest.mark.asyncio
    async def test_write_when_closed_raises(self, transport):
        """Test that writing to closed transport raises."""
        with pytest.raises(TransportError):
            await transport.write(b"test")

    @pytest.mark.asyncio
    async def test_read_until_line(self, transport):
        """Test reading one line out of a multi-line response."""
        await transport.open()
        transport.add_response(b"&@i0,[General]\r\nName=CV-LS\r\n")
        assert await transport.read_until(b"\n") == b"&@i0,[General]\r\n"
        assert await transport.read_until(b"\n") == b"Name=CV-LS\r\n"

    @pytest.mark.asyncio
    async def test_read_until_spans_responses(self, transport):
        """Test a line split across queued responses."""
        await transport.open()
        transport.add_responses(b"&f1.", b"20\r\n")
        assert await transport.read_until(b"\n") == b"&f1.20\r\n"

    @pytest.mark.asyncio
    async def test_read_until_no_data_raises(self, transport):
        """Test that reading with no line available raises timeout."""
        await transport.open()
        transport.add_response(b"partial")
        with pytest.raises(TimeoutError):
            await transport.read_until(b"\n")

    @pytest.mark.asyncio
    async def test_read_exact_bytes(self, transport):
        """Test reading exact number of bytes."""
        await transport.open()
        transport.add_response(b"hello world")
        assert await transport.read(5) == b"hello"
        assert await transport.read(6) == b" world"

    @pytest.mark.asyncio
    async def test_receive_returns_available(self, transport):
        """Test receive returns fed bytes in one chunk."""
        await transport.open()
        transport.feed(b"\x12\x20")
        transport.feed(b"\x33")
        assert await transport.receive() == b"\x12\x20\x33"

    @pytest.mark.asyncio
    async def test_receive_waits_for_feed(self, transport):
        """Test receive wakes up when data is injected later."""
        await transport.open()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, transport.feed, b"late")
        assert await transport.receive(timeout=1.0) == b"late"

    @pytest.mark.asyncio
    async def test_receive_timeout(self, transport):
        """Test receive raises when nothing arrives."""
        await transport.open()
        with pytest.raises(TimeoutError):
            await transport.receive(timeout=0.01)

    @pytest.mark.asyncio
    async def test_receive_after_disconnect(self, transport):
        """Test receive reports end of stream once the peer is gone."""
        await transport.open()
        transport.simulate_disconnect()
        assert not transport.is_open
        assert await transport.receive() == b""

    @pytest.mark.asyncio
    async def test_clear(self, transport):
        """Test clearing transport state."""
        await transport.open()
        await transport.write(b"test")
        transport.add_response(b"line\n")
        transport.clear()
        assert transport.written_data == []
        with pytest.raises(TimeoutError):
            await transport.read_until(b"\n")

    @pytest.mark.asyncio
    async def test_discard_buffers(self, transport):
        """Test discarding buffered bytes."""
        await transport.open()
        transport.add_response(b"stale data\n")
        await transport.read(4)
        transport.discard_buffers()
        with pytest.raises(TimeoutError):
            await transport.read_until(b"\n")

    @pytest.mark.asyncio
    async def test_response_callback(self, transport):
        """Test dynamic response callback."""
        await transport.open()
        transport.set_response_callback(lambda data: data)
        await transport.write(b"echo\n")
        assert await transport.read_until(b"\n") == b"echo\n"

    @pytest.mark.asyncio
    async def test_response_callback_none(self, transport):
        """Test a callback returning None produces no data."""
        await transport.open()
        transport.set_response_callback(lambda data: None)
        await transport.write(b"ignored\n")
        with pytest.raises(TimeoutError):
            await transport.receive(timeout=0.01)

    @pytest.mark.asyncio
    async def test_context_manager(self):
        """Test async context manager protocol."""
        async with MockTransport() as transport:
            assert transport.is_open
            transport.add_response(b"ok\n")
            assert await transport.read_until(b"\n") == b"ok\n"
        assert not transport.is_open

    @pytest.mark.asyncio
    async def test_pending_counts_unread_bytes(self, transport):
        """Test pending reflects bytes not yet consumed."""
        await transport.open()
        transport.feed(b"&f1.20\r\n&z")
        assert transport.pending == 10
        await transport.read_until(b"\n")
        assert transport.pending == 2

    @pytest.mark.asyncio
    async def test_responder_sees_each_write(self, transport):
        """Test the responder is called once per written buffer."""
        seen = []

        def responder(data):
            seen.append(data)
            return None

        await transport.open()
        transport.set_response_callback(responder)
        await transport.write(b"&f\r\n")
        await transport.write(bytearray(b"&z\r\n"))
        assert seen == [b"&f\r\n", b"&z\r\n"]


class TestScriptedMockTransport:
    """Tests for ScriptedMockTransport class."""

    @pytest.fixture
    def transport(self):
        """Create a ScriptedMockTransport instance."""
        return ScriptedMockTransport()

    @pytest.mark.asyncio
    async def test_scripted_responses(self, transport):
        """Test each write is answered by its step."""
        await transport.open()
        transport.expect(response=b"&f1.20\r\n", request=b"&f\r\n")
        transport.expect(response=b"&@e12\r\n", request=b"&@e?\r\n")

        await transport.write(b"&f\r\n")
        assert await transport.read_until(b"\n") == b"&f1.20\r\n"
        assert not transport.script_complete

        await transport.write(b"&@e?\r\n")
        assert await transport.read_until(b"\n") == b"&@e12\r\n"
        assert transport.script_complete

    @pytest.mark.asyncio
    async def test_unexpected_request_raises(self, transport):
        """Test a write differing from the step's request."""
        await transport.open()
        transport.expect(response=b"x\n", request=b"&f\r\n")

        with pytest.raises(AssertionError, match="Script step 0"):
            await transport.write(b"&z\r\n")

    @pytest.mark.asyncio
    async def test_writes_past_script_unanswered(self, transport):
        """Test writes after the last step get no data."""
        await transport.open()
        transport.expect(response=b"only\n")
        await transport.write(b"a")
        await transport.write(b"b")
        assert await transport.read_until(b"\n") == b"only\n"
        assert transport.pending == 0

    @pytest.mark.asyncio
    async def test_reset_script(self, transport):
        """Test rewinding to the first step."""
        await transport.open()
        transport.expect(response=b"first\n")
        transport.expect(response=b"second\n")

        await transport.write(b"a")
        await transport.read_until(b"\n")

        transport.reset_script()

        await transport.write(b"b")
        assert await transport.read_until(b"\n") == b"first\n"
