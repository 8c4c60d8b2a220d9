import asyncio
import logging
from typing import Awaitable, NamedTuple, Optional, Tuple, TypeVar
from urllib.parse import urlsplit

T = TypeVar("T")

DEFAULT_ADDRESS = "ws://localhost:8080/"


class Address(NamedTuple):
    host: str
    port: int
    path: str

    @property
    def uri(self) -> str:
        return f"ws://{self.host}:{self.port}{self.path}"


def setup_logging(level: int = logging.DEBUG) -> None:
    """ Configure the logger. """

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def parse_address(address: str = DEFAULT_ADDRESS) -> Address:
    """ Split a ws://host:port/path address into its parts.

        The http:// form is accepted too, since that is how listener
        prefixes are usually written.
    """
    parts = urlsplit(address)
    if parts.scheme not in ("ws", "http"):
        raise ValueError(f"Unsupported scheme in address: {address!r}")
    if not parts.hostname:
        raise ValueError(f"Missing host in address: {address!r}")
    try:
        port = parts.port
    except ValueError as e:
        raise ValueError(f"Invalid port in address: {address!r}") from e
    return Address(parts.hostname, 80 if port is None else port, parts.path or "/")


async def wait_unless(aw: Awaitable[T], cancelled: asyncio.Event) -> Tuple[bool, Optional[T]]:
    """ Await ``aw`` unless ``cancelled`` fires first.

        Returns (True, result) when the awaitable finished, or (False, None)
        when the event won the race. The losing side is cancelled either way.
    """
    if cancelled.is_set():
        if asyncio.iscoroutine(aw):
            aw.close()
        return False, None

    work = asyncio.ensure_future(aw)
    stop = asyncio.ensure_future(cancelled.wait())
    try:
        done, _ = await asyncio.wait({work, stop}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop.cancel()
        if not work.done():
            work.cancel()

    if work not in done:
        return False, None
    return True, work.result()


async def send_pending(protocol, writer: asyncio.StreamWriter) -> None:
    """ Write whatever a sans-I/O protocol has queued; an empty chunk means EOF. """
    for data in protocol.data_to_send():
        if data:
            writer.write(data)
        elif writer.can_write_eof():
            writer.write_eof()
    await writer.drain()
