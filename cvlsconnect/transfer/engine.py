"""
Reliable paginated transfer engine.

A ``TransferEngine`` moves a large payload (firmware image, configuration
file, event log) over a link that only supports small request/reply
exchanges. The receiving unit echoes back what it accepted so the sender
can detect loss or corruption and retransmit.

Each engine drives one worker task per transfer:

    Idle(SUCCEEDED) -> start() -> RUNNING -> ... -> terminal state

Every step of the worker:
1. Fails the transfer with FAILED_CONNECTION if the transport is gone
2. Publishes a progress snapshot
3. Sends the page for the current cursor, reusing the cached page on retry
4. Waits for the reply (out of band for binary, inline for text)
5. Advances the cursor on a matching reply, or applies the missed-page policy

Variant-specific behavior (page encoding, echo matching, end detection,
completion handling) lives in a ``TransferStrategy``; the retry, timeout
and progress logic here is shared by every variant.
"""

from __future__ import annotations

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from cvlsconnect.config import TransferTiming
from cvlsconnect.exceptions import (
    CVLSConnectError,
    ConnectionError,
    ParseError,
    TimeoutError,
    TransferAbort,
    TransportError,
)
from cvlsconnect.models.records import TransferState, TransferStatus
from cvlsconnect.protocol.constants import ProtocolConstants

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)

StatusCallback = Callable[[TransferStatus], None]


@dataclass(frozen=True)
class OutboundPage:
    """
    One page as put on the wire.

    Attributes:
        index: Page index sent to the unit (SENTINEL_PAGE for the final page).
        payload: Bytes the unit is expected to echo (binary) or the complete
            command (text).
        byte_count: Source bytes carried by the page; the cursor pointer
            advances by this much when the page is acknowledged.
        final: True for the end-of-transfer page.
        expects_reply: False if the final page is fire-and-forget.
    """

    index: int
    payload: bytes = b""
    byte_count: int = 0
    final: bool = False
    expects_reply: bool = True


@dataclass(frozen=True)
class PageReply:
    """
    A reply candidate for the page in flight.

    Binary replies carry the command id and the raw data section (page index
    first). Text replies carry the reply lines.
    """

    command: int | None = None
    data: bytes = b""
    lines: tuple[str, ...] = ()

    @property
    def page(self) -> int | None:
        """Big-endian page index at the start of the data, if present."""
        if len(self.data) < 2:
            return None
        return int.from_bytes(self.data[:2], "big")

    @property
    def page_data(self) -> bytes:
        """Data following the page index."""
        return self.data[2:]

    @property
    def first_line(self) -> str:
        """First text reply line, or an empty string."""
        return self.lines[0] if self.lines else ""


@dataclass(frozen=True)
class TransferOutcome:
    """Terminal state chosen by a strategy's completion handling."""

    state: TransferState
    message: str | None = None


@dataclass
class TransferCursor:
    """
    Position of a transfer.

    Attributes:
        source: Payload being uploaded (empty for downloads).
        page_count: Authoritative or provisional number of pages.
        page: Index of the current page.
        pointer: Source bytes already acknowledged.
    """

    source: bytes = b""
    page_count: int = 0
    page: int = 0
    pointer: int = 0

    @property
    def exhausted(self) -> bool:
        """True once every source byte has been acknowledged."""
        return self.pointer >= len(self.source)

    def chunk(self, size: int) -> bytes:
        """Next unacknowledged slice of at most ``size`` bytes."""
        return self.source[self.pointer : self.pointer + size]

    def advance(self, byte_count: int, page_step: int) -> None:
        """Move past an acknowledged page."""
        self.pointer += byte_count
        self.page += page_step


class TransferStrategy(ABC):
    """
    Capability interface implemented once per transfer variant.

    Attributes:
        name: Short name used in log messages.
        asynchronous: True if replies arrive out of band through
            ``TransferEngine.receive_reply`` (binary socket), False if
            ``send_page`` returns the reply (text protocol).
        page_step: Pages the cursor advances per acknowledged page.
    """

    name: str = "transfer"
    asynchronous: bool = False
    page_step: int = 1

    def page_count_for(self, source: bytes) -> int:
        """Initial page count for a transfer of ``source``."""
        return 0

    async def prepare(self, cursor: TransferCursor, source: bytes) -> None:
        """
        Check preconditions and reset variant state before a transfer.

        Raises:
            TransferAbort: To refuse the transfer with a specific state.
        """
        return None

    @abstractmethod
    def encode_page(self, cursor: TransferCursor) -> OutboundPage:
        """Build the page for the cursor, or the final page once exhausted."""
        ...

    @abstractmethod
    async def send_page(self, page: OutboundPage) -> PageReply | None:
        """Put a page on the wire; text variants return the reply."""
        ...

    @abstractmethod
    def page_matches_reply(self, page: OutboundPage, reply: PageReply) -> bool:
        """True if ``reply`` acknowledges exactly ``page``."""
        ...

    def describe_miss(self, page: OutboundPage, reply: PageReply) -> str | None:
        """Human-readable reason for a non-matching reply, if the unit gave one."""
        return None

    def is_end_of_transfer(self, page: OutboundPage, reply: PageReply) -> bool:
        """True if a matching reply signals that no more data follows."""
        return False

    def on_page_acknowledged(self, page: OutboundPage, reply: PageReply) -> None:
        """Store whatever a matching reply delivered."""
        return None

    async def on_terminal_reply(
        self,
        engine: TransferEngine,
        page: OutboundPage,
        reply: PageReply | None,
    ) -> TransferOutcome:
        """
        Resolve the transfer once the final page or end marker is seen.

        Raises:
            TransferAbort: To end the transfer with a specific state.
        """
        return TransferOutcome(TransferState.SUCCEEDED)


def pages_for(length: int, page_size: int) -> int:
    """Number of ``page_size`` pages needed for ``length`` bytes."""
    return math.ceil(length / page_size)


class TransferEngine:
    """
    Generic reliable paginated transfer state machine.

    One engine exists per capability of a connection owner and is reused
    for every transfer of that capability.

    Example:
        >>> engine = TransferEngine(strategy, lambda: client.is_connected)
        >>> unsubscribe = engine.subscribe(lambda status: print(status.percent))
        >>> status = await engine.run(image, timeout=30.0)
        >>> status.state
        <TransferState.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        strategy: TransferStrategy,
        is_connected: Callable[[], bool],
        timing: TransferTiming | None = None,
        name: str | None = None,
    ) -> None:
        """
        Initialize the engine in the idle state.

        Args:
            strategy: Variant implementation.
            is_connected: Returns the current connection state of the transport.
            timing: Timing and retry policy (default: binary socket defaults).
            name: Name used in log messages (default: the strategy name).
        """
        self._strategy = strategy
        self._is_connected = is_connected
        self._timing = timing or TransferTiming()
        self._name = name or strategy.name

        self._state = TransferState.SUCCEEDED
        self._message: str | None = None
        self._cursor = TransferCursor()
        self._outbound: OutboundPage | None = None
        self._outbound_key: tuple[int, int] | None = None
        self._missed_page = 0
        self._missed_page_count = 0

        self._task: asyncio.Task[None] | None = None
        self._replies: asyncio.Queue[PageReply] = asyncio.Queue()
        self._subscribers: list[StatusCallback] = []

    # ===== Public State =====

    @property
    def name(self) -> str:
        """Engine name used in log messages."""
        return self._name

    @property
    def strategy(self) -> TransferStrategy:
        """The variant implementation driven by this engine."""
        return self._strategy

    @property
    def timing(self) -> TransferTiming:
        """Timing and retry policy."""
        return self._timing

    @property
    def state(self) -> TransferState:
        """Current transfer state."""
        return self._state

    @property
    def is_running(self) -> bool:
        """Check if a transfer is in progress."""
        return self._state is TransferState.RUNNING

    @property
    def status(self) -> TransferStatus:
        """Immutable snapshot of the current transfer."""
        return TransferStatus.create(
            self._state,
            pages_total=self._cursor.page_count,
            current_page=self._cursor.page,
            message=self._message,
        )

    def subscribe(self, callback: StatusCallback) -> Callable[[], None]:
        """
        Receive a snapshot on every progress tick and state change.

        Args:
            callback: Called with each new ``TransferStatus``.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # ===== Control =====

    async def start(self, source: bytes | bytearray | None = None) -> TransferStatus:
        """
        Start a transfer.

        Any previous transfer is stopped first. Expected failures are
        reported in the returned status, never raised.

        Args:
            source: Payload for uploads; ignored by downloads.

        Returns:
            Status right after starting (RUNNING, or the failure state).
        """
        if not await self.stop():
            return self.status

        if not await self._initialize(bytes(source or b"")):
            return self.status

        try:
            self._task = asyncio.get_running_loop().create_task(
                self._run(),
                name=f"transfer-{self._name}",
            )
        except RuntimeError as e:
            logger.error("%s: unable to start worker: %s", self._name, e)
            self._set_state(TransferState.FAILED_START)

        return self.status

    async def stop(self, timeout: float | None = None) -> bool:
        """
        Stop the current transfer.

        Idempotent: stopping an idle engine returns True and leaves the
        state untouched. A transfer still RUNNING when stopped ends as FAILED.

        Args:
            timeout: Seconds to wait for the worker (default: timing.stop_timeout).

        Returns:
            True if no worker is running afterwards; False (and FAILED_STOP)
            if the worker did not finish in time.
        """
        task = self._task
        if task is None or task.done():
            self._task = None
            return True

        if task is asyncio.current_task():
            raise RuntimeError("A transfer cannot stop itself from its own worker")

        task.cancel()
        done, _ = await asyncio.wait({task}, timeout=timeout or self._timing.stop_timeout)
        if not done:
            logger.error("%s: worker did not stop in time", self._name)
            self._set_state(TransferState.FAILED_STOP)
            return False

        self._task = None
        if self._state is TransferState.RUNNING:
            self._set_state(TransferState.FAILED, "Transfer stopped.")
        return True

    async def wait(self, timeout: float | None = None) -> TransferStatus:
        """
        Wait for the current transfer to finish.

        Args:
            timeout: Maximum seconds to wait (None waits indefinitely).

        Returns:
            The status when the transfer finished or the wait expired.
        """
        task = self._task
        if task is not None and not task.done():
            await asyncio.wait({task}, timeout=timeout)
        return self.status

    async def run(
        self,
        source: bytes | bytearray | None = None,
        timeout: float = ProtocolConstants.DEFAULT_TRANSFER_TIMEOUT,
    ) -> TransferStatus:
        """
        Start a transfer and wait for it to finish.

        On expiry of ``timeout`` the transfer is forced to FAILED_TIME_OUT
        and stopped.

        Args:
            source: Payload for uploads; ignored by downloads.
            timeout: Global transfer timeout in seconds (default: 5.0).

        Returns:
            The final status.
        """
        status = await self.start(source)
        if not status.is_running:
            return status

        await self.wait(timeout)
        if self._state is TransferState.RUNNING:
            logger.warning("%s: timed out after %.1fs", self._name, timeout)
            self._set_state(TransferState.FAILED_TIME_OUT)
            await self.stop()
        return self.status

    # ===== Inputs =====

    def set_page_count(self, count: int) -> None:
        """
        Revise the page count, e.g. once the unit reports an authoritative one.

        Args:
            count: New total page count; negative values are ignored.
        """
        if count < 0:
            return
        if count != self._cursor.page_count:
            logger.debug("%s: page count %d -> %d", self._name, self._cursor.page_count, count)
        self._cursor.page_count = count

    def receive_reply(self, reply: PageReply) -> None:
        """
        Hand a reply received by the read pump to the waiting worker.

        Replies arriving while no transfer is running are discarded.
        """
        if self._state is not TransferState.RUNNING:
            logger.debug("%s: ignoring reply while idle", self._name)
            return
        self._replies.put_nowait(reply)

    async def next_reply(self, timeout: float) -> PageReply | None:
        """
        Wait for the next out-of-band reply.

        Returns:
            The reply, or None if none arrived within ``timeout`` seconds.
        """
        try:
            return await asyncio.wait_for(self._replies.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    # ===== Worker =====

    async def _initialize(self, source: bytes) -> bool:
        self._missed_page = 0
        self._missed_page_count = 0
        self._message = None
        self._outbound = None
        self._outbound_key = None
        self._drain_replies()
        self._cursor = TransferCursor(
            source=source,
            page_count=self._strategy.page_count_for(source),
        )

        if not self._is_connected():
            self._set_state(TransferState.FAILED_CONNECTION)
            return False

        try:
            await self._strategy.prepare(self._cursor, source)
        except TransferAbort as abort:
            logger.error("%s: refused: %s", self._name, abort)
            self._set_state(abort.state, abort.message)
            return False
        except ConnectionError as e:
            logger.error("%s: connection lost while initializing: %s", self._name, e)
            self._set_state(TransferState.FAILED_CONNECTION)
            return False
        except (TimeoutError, TransportError, ParseError) as e:
            logger.error("%s: unable to initialize: %s", self._name, e)
            self._set_state(TransferState.FAILED_INITIALIZE, str(e))
            return False

        logger.info("%s: starting (%d pages)", self._name, self._cursor.page_count)
        self._set_state(TransferState.RUNNING)
        return True

    async def _run(self) -> None:
        try:
            while self._state is TransferState.RUNNING:
                await self._step()
                if self._timing.step_delay and self._state is TransferState.RUNNING:
                    await asyncio.sleep(self._timing.step_delay)
        except TransferAbort as abort:
            self._finish(abort.state, abort.message)
        except ConnectionError as e:
            logger.error("%s: connection lost: %s", self._name, e)
            self._finish(TransferState.FAILED_CONNECTION)
        except CVLSConnectError as e:
            logger.error("%s: transfer error: %s", self._name, e)
            self._finish(TransferState.FAILED, str(e))

        if self._state is TransferState.SUCCEEDED:
            logger.info("%s: completed", self._name)
        else:
            logger.error("%s: ended with %s", self._name, self._state.name)

    async def _step(self) -> None:
        if not self._is_connected():
            self._finish(TransferState.FAILED_CONNECTION)
            return

        self._publish()
        page = self._current_page()
        reply = await self._exchange(page)

        if self._state is not TransferState.RUNNING:
            return

        if page.final and not page.expects_reply:
            outcome = await self._strategy.on_terminal_reply(self, page, reply)
            self._finish(outcome.state, outcome.message)
            return

        if reply is None or not self._strategy.page_matches_reply(page, reply):
            if reply is not None:
                self._message = self._strategy.describe_miss(page, reply) or self._message
            self._process_missed_page(self._cursor.page)
            return

        if page.final or self._strategy.is_end_of_transfer(page, reply):
            outcome = await self._strategy.on_terminal_reply(self, page, reply)
            self._finish(outcome.state, outcome.message)
            return

        self._strategy.on_page_acknowledged(page, reply)
        self._cursor.advance(page.byte_count, self._strategy.page_step)
        logger.debug("%s: page %d acknowledged", self._name, page.index)

    def _current_page(self) -> OutboundPage:
        key = (self._cursor.page, self._cursor.pointer)
        if self._outbound is None or self._outbound_key != key:
            self._outbound = self._strategy.encode_page(self._cursor)
            self._outbound_key = key
        return self._outbound

    async def _exchange(self, page: OutboundPage) -> PageReply | None:
        if self._strategy.asynchronous:
            self._drain_replies()

        try:
            reply = await self._strategy.send_page(page)
        except (TimeoutError, TransportError, ConnectionError) as e:
            logger.warning("%s: page %d not delivered: %s", self._name, page.index, e)
            return None

        if not self._strategy.asynchronous or not page.expects_reply:
            return reply

        timeout = self._timing.terminal_timeout if page.final else self._timing.reply_timeout
        return await self.next_reply(timeout)

    def _process_missed_page(self, page: int) -> None:
        if page == self._missed_page:
            self._missed_page_count += 1
        else:
            self._missed_page = page
            self._missed_page_count = 1

        logger.warning(
            "%s: missed page %d (%d/%d)",
            self._name,
            page,
            self._missed_page_count,
            self._timing.max_missed_pages,
        )
        if self._missed_page_count > self._timing.max_missed_pages:
            self._finish(TransferState.FAILED_LOST_PACKETS)

    def _drain_replies(self) -> None:
        while not self._replies.empty():
            self._replies.get_nowait()

    def _finish(self, state: TransferState, message: str | None = None) -> None:
        if self._state is TransferState.RUNNING:
            self._set_state(state, message)

    def _set_state(self, state: TransferState, message: str | None = None) -> None:
        self._state = state
        self._message = message
        self._publish()

    def _publish(self) -> None:
        status = self.status
        for callback in list(self._subscribers):
            try:
                callback(status)
            except Exception:
                logger.exception("%s: status subscriber failed", self._name)


def collect_lines(lines: Iterable[str]) -> str:
    """Join reply lines with CRLF, as the unit formats multi-line text."""
    return "\r\n".join(lines)
