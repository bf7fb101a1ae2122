"""Tests for the paginated transfer engine."""

import asyncio
from collections import defaultdict

import pytest

from cvlsconnect.config import TransferTiming
from cvlsconnect.exceptions import ConnectionError, TimeoutError, TransferAbort, TransportError
from cvlsconnect.models.records import DEFAULT_MESSAGES, TransferState
from cvlsconnect.protocol.constants import ProtocolConstants
from cvlsconnect.transfer.engine import (
    OutboundPage,
    PageReply,
    TransferCursor,
    TransferEngine,
    TransferStrategy,
    collect_lines,
    pages_for,
)

SENTINEL = ProtocolConstants.SENTINEL_PAGE
FAST = TransferTiming(reply_timeout=0.05, terminal_timeout=0.05, stop_timeout=0.5)


def ack(page):
    """Reply acknowledging ``page``."""
    return PageReply(lines=(f"ack {page.index}",))


class ScriptedStrategy(TransferStrategy):
    """Call/response strategy whose replies come from a responder function."""

    name = "scripted"

    def __init__(self, responder=ack, page_size=1024):
        self.responder = responder
        self.page_size = page_size
        self.sent = []
        self.acknowledged = []

    def page_count_for(self, source):
        return pages_for(len(source), self.page_size)

    def encode_page(self, cursor):
        if cursor.exhausted:
            return OutboundPage(index=SENTINEL, payload=b"end", final=True)
        chunk = cursor.chunk(self.page_size)
        return OutboundPage(index=cursor.page, payload=chunk, byte_count=len(chunk))

    async def send_page(self, page):
        self.sent.append(page.index)
        result = self.responder(page)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def page_matches_reply(self, page, reply):
        return reply.first_line == f"ack {page.index}"

    def describe_miss(self, page, reply):
        if reply.first_line.startswith("err "):
            return reply.first_line[4:]
        return None

    def on_page_acknowledged(self, page, reply):
        self.acknowledged.append(page.index)


class OutOfBandStrategy(ScriptedStrategy):
    """Strategy whose replies arrive through ``receive_reply``."""

    name = "out-of-band"
    asynchronous = True
    engine = None

    def encode_page(self, cursor):
        if cursor.exhausted:
            return OutboundPage(index=SENTINEL, final=True, expects_reply=False)
        return super().encode_page(cursor)

    async def send_page(self, page):
        self.sent.append(page.index)
        if not page.final:
            reply = self.responder(page)
            if reply is not None:
                asyncio.get_running_loop().call_soon(self.engine.receive_reply, reply)
        return None


class TestTransferCursor:
    """Tests for TransferCursor and page arithmetic."""

    def test_pages_for(self):
        """Test page count rounds up."""
        assert pages_for(3000, 1024) == 3
        assert pages_for(1024, 1024) == 1
        assert pages_for(0, 1024) == 0

    def test_chunk_and_advance(self):
        """Test the cursor slices the source and advances by acknowledged bytes."""
        cursor = TransferCursor(source=b"abcdef", page_count=2)
        assert cursor.chunk(4) == b"abcd"
        cursor.advance(4, 4)
        assert cursor.page == 4
        assert cursor.chunk(4) == b"ef"
        assert not cursor.exhausted
        cursor.advance(2, 4)
        assert cursor.exhausted

    def test_collect_lines(self):
        """Test reply lines are joined with CRLF."""
        assert collect_lines(["a", "b"]) == "a\r\nb"


class TestTransferEngine:
    """Tests for TransferEngine with a call/response strategy."""

    @pytest.fixture
    def connected(self):
        """Mutable connection flag."""
        return {"value": True}

    def make_engine(self, strategy, connected):
        return TransferEngine(strategy, lambda: connected["value"], FAST)

    @pytest.mark.asyncio
    async def test_upload_succeeds(self, connected):
        """Test 3000 bytes go out as 3 pages plus the sentinel."""
        strategy = ScriptedStrategy()
        engine = self.make_engine(strategy, connected)

        status = await engine.run(bytes(3000), timeout=2.0)

        assert status.state is TransferState.SUCCEEDED
        assert status.pages_total == 3
        assert strategy.sent == [0, 1, 2, SENTINEL]
        assert strategy.acknowledged == [0, 1, 2]
        assert status.message == DEFAULT_MESSAGES[TransferState.SUCCEEDED]

    @pytest.mark.asyncio
    async def test_empty_upload_sends_only_sentinel(self, connected):
        """Test an empty source goes straight to the final page."""
        strategy = ScriptedStrategy()
        status = await self.make_engine(strategy, connected).run(b"", timeout=2.0)
        assert status.state is TransferState.SUCCEEDED
        assert strategy.sent == [SENTINEL]

    @pytest.mark.asyncio
    async def test_sixth_consecutive_miss_fails(self, connected):
        """Test one page missed more than five times ends the transfer."""

        def responder(page):
            return None if page.index == 1 else ack(page)

        strategy = ScriptedStrategy(responder)
        status = await self.make_engine(strategy, connected).run(bytes(3000), timeout=2.0)

        assert status.state is TransferState.FAILED_LOST_PACKETS
        assert strategy.sent.count(1) == 6
        assert 2 not in strategy.sent

    @pytest.mark.asyncio
    async def test_five_misses_per_page_tolerated(self, connected):
        """Test the miss counter restarts when a different page is missed."""
        misses = defaultdict(int)

        def responder(page):
            if misses[page.index] < 5:
                misses[page.index] += 1
                return None
            return ack(page)

        strategy = ScriptedStrategy(responder)
        status = await self.make_engine(strategy, connected).run(bytes(3000), timeout=2.0)

        assert status.state is TransferState.SUCCEEDED
        assert len(strategy.sent) == 4 * 6

    @pytest.mark.asyncio
    async def test_mismatched_reply_is_a_miss(self, connected):
        """Test a reply for another page does not advance the cursor."""

        def responder(page):
            return PageReply(lines=("ack 99",))

        strategy = ScriptedStrategy(responder)
        status = await self.make_engine(strategy, connected).run(bytes(10), timeout=2.0)

        assert status.state is TransferState.FAILED_LOST_PACKETS
        assert strategy.sent == [0] * 6
        assert strategy.acknowledged == []

    @pytest.mark.asyncio
    async def test_retry_resends_same_page(self, connected):
        """Test a missed page is resent with the same payload."""
        payloads = []
        attempts = defaultdict(int)

        def responder(page):
            payloads.append(page.payload)
            attempts[page.index] += 1
            return None if attempts[page.index] == 1 else ack(page)

        strategy = ScriptedStrategy(responder, page_size=4)
        status = await self.make_engine(strategy, connected).run(b"abcdefgh", timeout=2.0)

        assert status.succeeded
        assert payloads == [b"abcd", b"abcd", b"efgh", b"efgh", b"end", b"end"]

    @pytest.mark.asyncio
    async def test_miss_reason_published(self, connected):
        """Test a unit error reply is shown while the page is retried."""
        attempts = defaultdict(int)

        def responder(page):
            attempts[page.index] += 1
            if attempts[page.index] == 1:
                return PageReply(lines=("err Checksum Error!",))
            return ack(page)

        strategy = ScriptedStrategy(responder)
        engine = self.make_engine(strategy, connected)
        seen = []
        engine.subscribe(seen.append)

        status = await engine.run(bytes(10), timeout=2.0)

        assert status.succeeded
        assert any(s.is_running and s.message == "Checksum Error!" for s in seen)

    @pytest.mark.asyncio
    async def test_send_failure_is_a_miss(self, connected):
        """Test transport errors while sending count as missed pages."""

        def responder(page):
            raise TransportError("write failed")

        strategy = ScriptedStrategy(responder)
        status = await self.make_engine(strategy, connected).run(bytes(10), timeout=2.0)

        assert status.state is TransferState.FAILED_LOST_PACKETS
        assert len(strategy.sent) == 6

    @pytest.mark.asyncio
    async def test_not_connected_at_start(self, connected):
        """Test a transfer on a closed transport fails without sending."""
        connected["value"] = False
        strategy = ScriptedStrategy()

        status = await self.make_engine(strategy, connected).start(bytes(10))

        assert status.state is TransferState.FAILED_CONNECTION
        assert strategy.sent == []

    @pytest.mark.asyncio
    async def test_connection_lost_mid_transfer(self, connected):
        """Test losing the transport ends the transfer with FAILED_CONNECTION."""

        def responder(page):
            if page.index == 1:
                connected["value"] = False
            return ack(page)

        strategy = ScriptedStrategy(responder)
        status = await self.make_engine(strategy, connected).run(bytes(3000), timeout=2.0)

        assert status.state is TransferState.FAILED_CONNECTION
        assert strategy.sent == [0, 1]

    @pytest.mark.asyncio
    async def test_connection_lost_while_preparing(self, connected):
        """Test a connection error during preparation is reported as a state."""

        class Disconnecting(ScriptedStrategy):
            async def prepare(self, cursor, source):
                connected["value"] = False
                raise ConnectionError("Not connected")

        strategy = Disconnecting()
        status = await self.make_engine(strategy, connected).run(bytes(10), timeout=2.0)

        assert status.state is TransferState.FAILED_CONNECTION
        assert strategy.sent == []

    @pytest.mark.asyncio
    async def test_connection_error_while_sending(self, connected):
        """Test a connection error on send ends the transfer at the next step."""

        def responder(page):
            connected["value"] = False
            raise ConnectionError("Not connected")

        strategy = ScriptedStrategy(responder)
        status = await self.make_engine(strategy, connected).run(bytes(10), timeout=2.0)

        assert status.state is TransferState.FAILED_CONNECTION
        assert strategy.sent == [0]

    @pytest.mark.asyncio
    async def test_connection_error_in_completion(self, connected):
        """Test a connection error while completing maps to FAILED_CONNECTION."""

        class LosingCompletion(ScriptedStrategy):
            async def on_terminal_reply(self, engine, page, reply):
                raise ConnectionError("Not connected")

        strategy = LosingCompletion()
        status = await self.make_engine(strategy, connected).run(bytes(10), timeout=2.0)

        assert status.state is TransferState.FAILED_CONNECTION
        assert strategy.sent == [0, SENTINEL]

    @pytest.mark.asyncio
    async def test_prepare_abort(self, connected):
        """Test a refused transfer reports the strategy's state and message."""

        class Refusing(ScriptedStrategy):
            async def prepare(self, cursor, source):
                raise TransferAbort(TransferState.FAILED_INVALID_FIRMWARE, "Firmware too old")

        strategy = Refusing()
        status = await self.make_engine(strategy, connected).run(bytes(10))

        assert status.state is TransferState.FAILED_INVALID_FIRMWARE
        assert status.message == "Firmware too old"
        assert strategy.sent == []

    @pytest.mark.asyncio
    async def test_prepare_timeout(self, connected):
        """Test a prepare step that times out fails initialization."""

        class Silent(ScriptedStrategy):
            async def prepare(self, cursor, source):
                raise TimeoutError("no reply")

        status = await self.make_engine(Silent(), connected).run(bytes(10))
        assert status.state is TransferState.FAILED_INITIALIZE

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, connected):
        """Test stopping a running transfer, then stopping again."""
        blocker = asyncio.Event()

        async def wait_forever(page):
            await blocker.wait()

        engine = self.make_engine(ScriptedStrategy(wait_forever), connected)
        status = await engine.start(bytes(10))
        assert status.is_running
        await asyncio.sleep(0.01)

        assert await engine.stop() is True
        assert engine.state is TransferState.FAILED
        assert engine.status.message == "Transfer stopped."

        assert await engine.stop() is True
        assert engine.state is TransferState.FAILED

    @pytest.mark.asyncio
    async def test_stop_idle_engine(self, connected):
        """Test stopping an engine that never ran leaves it idle."""
        engine = self.make_engine(ScriptedStrategy(), connected)
        assert await engine.stop() is True
        assert engine.state is TransferState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_global_timeout(self, connected):
        """Test run forces FAILED_TIME_OUT when the transfer takes too long."""
        blocker = asyncio.Event()

        async def wait_forever(page):
            await blocker.wait()

        engine = self.make_engine(ScriptedStrategy(wait_forever), connected)
        status = await engine.run(bytes(10), timeout=0.05)

        assert status.state is TransferState.FAILED_TIME_OUT
        assert not engine.is_running

    @pytest.mark.asyncio
    async def test_engine_reusable(self, connected):
        """Test a second transfer starts from a clean state."""
        strategy = ScriptedStrategy()
        engine = self.make_engine(strategy, connected)

        first = await engine.run(bytes(2048), timeout=2.0)
        strategy.sent.clear()
        second = await engine.run(bytes(10), timeout=2.0)

        assert first.succeeded
        assert second.succeeded
        assert second.pages_total == 1
        assert strategy.sent == [0, SENTINEL]

    @pytest.mark.asyncio
    async def test_progress_snapshots(self, connected):
        """Test subscribers see RUNNING ticks with percent up to 100, then the end state."""
        strategy = ScriptedStrategy(page_size=256)
        strategy.page_step = 4
        strategy.page_count_for = lambda source: pages_for(len(source), 64)
        engine = self.make_engine(strategy, connected)
        seen = []
        engine.subscribe(seen.append)

        await engine.run(bytes(700), timeout=2.0)

        running = [s.percent for s in seen if s.is_running]
        assert running == sorted(running)
        assert all(0 <= p <= 100 for p in running)
        assert seen[-1].state is TransferState.SUCCEEDED

    @pytest.mark.asyncio
    async def test_subscriber_errors_tolerated(self, connected):
        """Test a failing subscriber does not break the transfer."""

        def broken(status):
            raise RuntimeError("subscriber bug")

        engine = self.make_engine(ScriptedStrategy(), connected)
        engine.subscribe(broken)
        seen = []
        engine.subscribe(seen.append)

        status = await engine.run(bytes(3000), timeout=2.0)

        assert status.succeeded
        assert seen[-1].succeeded

    @pytest.mark.asyncio
    async def test_unsubscribe(self, connected):
        """Test an unsubscribed callback receives nothing."""
        engine = self.make_engine(ScriptedStrategy(), connected)
        seen = []
        unsubscribe = engine.subscribe(seen.append)
        unsubscribe()
        unsubscribe()

        await engine.run(bytes(10), timeout=2.0)
        assert seen == []

    def test_set_page_count_ignores_negative(self, connected):
        """Test negative page counts are ignored."""
        engine = self.make_engine(ScriptedStrategy(), connected)
        engine.set_page_count(12)
        engine.set_page_count(-1)
        assert engine.status.pages_total == 12


class TestOutOfBandReplies:
    """Tests for TransferEngine with replies delivered by a read pump."""

    def make_engine(self, strategy):
        engine = TransferEngine(strategy, lambda: True, FAST)
        strategy.engine = engine
        return engine

    @pytest.mark.asyncio
    async def test_out_of_band_upload(self):
        """Test replies routed through receive_reply complete the transfer."""
        strategy = OutOfBandStrategy()
        status = await self.make_engine(strategy).run(bytes(2500), timeout=2.0)

        assert status.succeeded
        assert strategy.sent == [0, 1, 2, SENTINEL]

    @pytest.mark.asyncio
    async def test_out_of_band_reply_timeout(self):
        """Test unanswered pages time out and fail after six attempts."""
        strategy = OutOfBandStrategy(lambda page: None)
        status = await self.make_engine(strategy).run(bytes(10), timeout=2.0)

        assert status.state is TransferState.FAILED_LOST_PACKETS
        assert strategy.sent == [0] * 6

    @pytest.mark.asyncio
    async def test_reply_while_idle_discarded(self):
        """Test replies arriving with no transfer running are dropped."""
        engine = self.make_engine(OutOfBandStrategy())
        engine.receive_reply(PageReply(lines=("ack 0",)))
        assert await engine.next_reply(0.01) is None
