import asyncio
import logging
from typing import Optional

from websockets.frames import CloseCode, Frame, Opcode
from websockets.protocol import State
from websockets.server import ServerProtocol

from .helpers import send_pending, wait_unless
from .protocol import CommandRouter

logger = logging.getLogger(__name__)

READ_SIZE = 4096


class ConnectionSession:
    """ Read/dispatch/write loop for one upgraded connection.

        Frames are decoded by the sans-I/O ``ServerProtocol``; this class
        owns the stream pair and releases it exactly once, whichever way
        the loop ends.
    """

    def __init__(self,
                 session_id: str,
                 protocol: ServerProtocol,
                 reader: asyncio.StreamReader,
                 writer: asyncio.StreamWriter,
                 router: CommandRouter,
                 cancelled: asyncio.Event,
                 read_size: int = READ_SIZE) -> None:
        self.session_id = session_id
        self.protocol = protocol
        self.reader = reader
        self.writer = writer
        self.router = router
        self.cancelled = cancelled
        self.read_size = read_size

        # Message being reassembled from continuation frames.
        self._opcode: Optional[Opcode] = None
        self._buffer = bytearray()
        self._released = False

    @property
    def state(self) -> State:
        return self.protocol.state

    async def run(self) -> None:
        """ Serve the connection until close, error or server shutdown. """
        logger.info(f"{self.session_id}: client connected")
        try:
            while self.protocol.state is State.OPEN:
                received, data = await wait_unless(self.reader.read(self.read_size), self.cancelled)
                if not received:
                    await self._going_away()
                    break
                if not data:
                    logger.debug(f"{self.session_id}: peer closed the transport")
                    self.protocol.receive_eof()
                    break

                self.protocol.receive_data(data)
                for event in self.protocol.events_received():
                    self._handle_frame(event)
                    await self._flush()
                await self._flush()
        except OSError as e:
            logger.warning(f"{self.session_id}: transport error: {e}")
        finally:
            await self.release()
            logger.info(f"{self.session_id}: client disconnected")

    def _handle_frame(self, frame: Frame) -> None:
        message = self._assemble(frame)
        if message is None:
            return

        try:
            text = message.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning(f"{self.session_id}: invalid UTF-8 in text message")
            if self.protocol.state is State.OPEN:
                self.protocol.send_close(CloseCode.INVALID_DATA, "invalid utf-8")
            return

        logger.debug(f"{self.session_id}: received {text!r}")
        response = self.router.dispatch(text)

        # A close frame in the same read moves the protocol out of OPEN.
        if self.protocol.state is not State.OPEN:
            logger.debug(f"{self.session_id}: dropping response to {text!r}, connection closing")
            return
        self.protocol.send_text(response.encode("utf-8"))
        logger.debug(f"{self.session_id}: sent {response!r}")

    def _assemble(self, frame: Frame) -> Optional[bytes]:
        """ Collect data frames; return the payload of a completed text message. """
        if frame.opcode is Opcode.TEXT or frame.opcode is Opcode.BINARY:
            self._opcode = frame.opcode
            self._buffer = bytearray(frame.data)
        elif frame.opcode is Opcode.CONT:
            self._buffer.extend(frame.data)
        else:
            # PING, PONG and CLOSE are answered by the protocol itself.
            return None

        if not frame.fin:
            return None

        opcode, payload = self._opcode, bytes(self._buffer)
        self._opcode = None
        self._buffer = bytearray()

        if opcode is not Opcode.TEXT:
            logger.debug(f"{self.session_id}: ignoring binary message of {len(payload)} bytes")
            return None
        return payload

    async def _going_away(self) -> None:
        logger.debug(f"{self.session_id}: server shutting down")
        if self.protocol.state is State.OPEN:
            self.protocol.send_close(CloseCode.GOING_AWAY, "server shutting down")
        await self._flush()

    async def _flush(self) -> None:
        await send_pending(self.protocol, self.writer)

    async def release(self) -> None:
        """ Close the transport. Safe to call more than once. """
        if self._released:
            return
        self._released = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError as e:
            logger.debug(f"{self.session_id}: error while closing transport: {e}")
