import asyncio
import itertools
import logging
import socket
from enum import Enum
from http import HTTPStatus
from typing import Optional, Set
from urllib.parse import urlsplit

from websockets.http11 import Request
from websockets.server import ServerProtocol

from .helpers import DEFAULT_ADDRESS, Address, parse_address, send_pending, wait_unless
from .protocol import CommandRouter
from .session import READ_SIZE, ConnectionSession

logger = logging.getLogger(__name__)

MAX_SIZE = 2 ** 20
HANDSHAKE_TIMEOUT = 10.0
ACCEPT_RETRY_DELAY = 0.1


class ServerState(Enum):
    """ Listener lifecycle. """

    STOPPED = "stopped"
    RUNNING = "running"


class StateServer:
    """ WebSocket server answering text commands through a CommandRouter.

        start() binds the listener and spawns the accept loop in the
        background; stop() fires the shared cancellation event, waits for
        the accept loop to finish and releases the socket. Live sessions
        see the same event and close on their own.

        Usage:
            async with StateServer(CommandRouter(info_handlers)) as server:
                ...
    """

    def __init__(self,
                 router: CommandRouter,
                 address: str = DEFAULT_ADDRESS,
                 read_size: int = READ_SIZE,
                 max_size: Optional[int] = MAX_SIZE,
                 handshake_timeout: float = HANDSHAKE_TIMEOUT) -> None:
        self.router = router
        self.address = parse_address(address)
        self.read_size = read_size
        self.max_size = max_size
        self.handshake_timeout = handshake_timeout

        self._socket: Optional[socket.socket] = None
        self._cancelled: Optional[asyncio.Event] = None
        self._accept_task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Future] = None
        self._clients: Set[asyncio.Task] = set()
        self._session_counter = itertools.count(1)

    @property
    def state(self) -> ServerState:
        return ServerState.RUNNING if self._socket is not None else ServerState.STOPPED

    @property
    def port(self) -> Optional[int]:
        """ Port actually bound, which differs from the configured one for port 0. """
        if self._socket is None:
            return None
        return self._socket.getsockname()[1]

    @property
    def uri(self) -> str:
        port = self.port if self.port is not None else self.address.port
        return Address(self.address.host, port, self.address.path).uri

    async def __aenter__(self) -> "StateServer":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.dispose()

    async def start(self, address: Optional[str] = None) -> None:
        """ Bind the listener and start accepting connections. """
        if self._stopping is not None:
            # Let an in-flight stop release the old listener first.
            await asyncio.shield(self._stopping)

        if self._socket is not None:
            logger.warning("WebSocket server is already running.")
            return

        sock = None
        try:
            if address is not None:
                self.address = parse_address(address)
            sock = socket.create_server((self.address.host, self.address.port))
            sock.setblocking(False)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to start WebSocket server: {e}")
            if sock is not None:
                sock.close()
            return

        self._socket = sock
        self._cancelled = asyncio.Event()
        self._accept_task = asyncio.create_task(self._accept_loop(sock, self._cancelled))
        logger.info(f"WebSocket server started at {self.uri}")

    async def stop(self) -> None:
        """ Cancel every session, wait for the accept loop, release the listener.

            Overlapping calls share one shutdown; every caller returns once
            the listener is released.
        """
        if self._stopping is None:
            if self._socket is None:
                logger.warning("WebSocket server is not running.")
                return
            self._stopping = asyncio.ensure_future(
                self._shutdown(self._socket, self._accept_task, self._cancelled)
            )
        await asyncio.shield(self._stopping)

    async def _shutdown(self,
                        sock: socket.socket,
                        accept_task: Optional[asyncio.Task],
                        cancelled: asyncio.Event) -> None:
        try:
            cancelled.set()
            if accept_task is not None:
                await accept_task
        except Exception as e:
            logger.error(f"Error stopping WebSocket server: {e}")
        finally:
            sock.close()
            self._socket = None
            self._accept_task = None
            self._stopping = None
        logger.info("WebSocket server stopped.")

    async def dispose(self) -> None:
        """ Final teardown for the host. Silent when stopped, never raises. """
        if self._socket is None and self._stopping is None:
            return
        try:
            await self.stop()
        except Exception as e:
            logger.error(f"Error disposing WebSocket server: {e}")

    async def wait_closed(self) -> None:
        """ Wait for every client task spawned so far to finish. """
        if self._clients:
            await asyncio.gather(*self._clients, return_exceptions=True)

    async def _accept_loop(self, sock: socket.socket, cancelled: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        while not cancelled.is_set():
            try:
                accepted, result = await wait_unless(loop.sock_accept(sock), cancelled)
            except OSError as e:
                if cancelled.is_set() or sock.fileno() == -1:
                    break
                logger.error(f"Error accepting WebSocket connection: {e}")
                # Errors such as EMFILE repeat until resources free up.
                await wait_unless(asyncio.sleep(ACCEPT_RETRY_DELAY), cancelled)
                continue

            if not accepted:
                break

            client, peer = result
            if cancelled.is_set():
                client.close()
                break

            # The handshake and the session run on their own task so a slow
            # client never holds up the next accept.
            task = asyncio.create_task(self._serve_client(client, peer, cancelled))
            self._clients.add(task)
            task.add_done_callback(self._clients.discard)

        logger.debug("Accept loop finished.")

    async def _serve_client(self, client: socket.socket, peer, cancelled: asyncio.Event) -> None:
        session_id = f"session_{next(self._session_counter)}"
        try:
            reader, writer = await asyncio.open_connection(sock=client)
        except OSError as e:
            logger.error(f"{session_id}: could not open stream for {peer}: {e}")
            client.close()
            return

        try:
            protocol = await asyncio.wait_for(
                self._upgrade(session_id, reader, writer, cancelled),
                self.handshake_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"{session_id}: handshake with {peer} timed out")
            protocol = None
        except Exception as e:
            logger.warning(f"{session_id}: handshake with {peer} failed: {e}")
            protocol = None

        if protocol is None or cancelled.is_set():
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"{session_id}: error while closing transport: {e}")
            return

        session = ConnectionSession(
            session_id, protocol, reader, writer, self.router, cancelled, self.read_size
        )
        await session.run()

    async def _upgrade(self,
                       session_id: str,
                       reader: asyncio.StreamReader,
                       writer: asyncio.StreamWriter,
                       cancelled: asyncio.Event) -> Optional[ServerProtocol]:
        """ Read the HTTP request and answer it. Returns the protocol when upgraded. """
        protocol = ServerProtocol(max_size=self.max_size, logger=logger)

        request = None
        while request is None:
            received, data = await wait_unless(reader.read(self.read_size), cancelled)
            if not received:
                return None
            if data:
                protocol.receive_data(data)
            else:
                protocol.receive_eof()

            events = protocol.events_received()
            if events:
                request = events[0]
            elif protocol.handshake_exc is not None or not data:
                logger.warning(f"{session_id}: invalid HTTP request: {protocol.handshake_exc}")
                await send_pending(protocol, writer)
                return None

        response = self._validate(protocol, request)
        if response is None:
            response = protocol.accept(request)
        protocol.send_response(response)
        await send_pending(protocol, writer)

        if response.status_code != HTTPStatus.SWITCHING_PROTOCOLS:
            logger.warning(
                f"{session_id}: rejected {request.path} with "
                f"{response.status_code} {response.reason_phrase}: {protocol.handshake_exc}"
            )
            return None
        return protocol

    def _validate(self, protocol: ServerProtocol, request: Request):
        """ Reject plain HTTP requests and requests for other paths. """
        if "websocket" not in ", ".join(request.headers.get_all("Upgrade")).lower():
            return protocol.reject(HTTPStatus.BAD_REQUEST, "Expected a WebSocket upgrade request.\n")
        if urlsplit(request.path).path != self.address.path:
            return protocol.reject(HTTPStatus.NOT_FOUND, "Not Found\n")
        return None
