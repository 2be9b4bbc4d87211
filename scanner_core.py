import asyncio
import errno
import logging

from models import PortResult, PortState, Protocol
from service_matcher import close_writer, detect_service, grab_banner


logger = logging.getLogger(__name__)

DEFAULT_SERVICE_TIMEOUT_MS = 5000

FILTERED_ERRNOS = {errno.ENETUNREACH, errno.EHOSTUNREACH}
FILTERED_HINTS = ("timeout", "unreachable", "filtered")


class PermitPool:
    """
    Bounded pool of connection permits shared by every scan task of a run.

    Use as ``async with pool:``; the permit is returned on every exit path.
    The counters are there so callers can check the bound was honored.
    """

    def __init__(self, limit):
        if limit < 1:
            raise ValueError("permit pool limit must be >= 1")
        self.limit = limit
        self._semaphore = asyncio.Semaphore(limit)
        self.in_flight = 0
        self.peak = 0
        self.acquired = 0
        self.released = 0

    async def __aenter__(self):
        await self._semaphore.acquire()
        self.in_flight += 1
        self.acquired += 1
        self.peak = max(self.peak, self.in_flight)
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.in_flight -= 1
        self.released += 1
        self._semaphore.release()
        return False


def classify_connect_error(exc):
    if isinstance(exc, ConnectionRefusedError):
        return PortState.CLOSED, "conn-refused"
    if isinstance(exc, (TimeoutError, PermissionError)):
        return PortState.FILTERED, type(exc).__name__
    if getattr(exc, "errno", None) in FILTERED_ERRNOS:
        return PortState.FILTERED, errno.errorcode.get(exc.errno, "unreachable")

    # Platform-specific messages; best effort only.
    msg = str(exc).lower()
    if "refused" in msg:
        return PortState.CLOSED, "refused"
    if any(hint in msg for hint in FILTERED_HINTS):
        return PortState.FILTERED, "unreachable"
    return PortState.CLOSED, "error"


async def connect_probe(ip, port, timeout_ms):
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(ip, port), timeout=timeout_ms / 1000.0)
    except asyncio.TimeoutError:
        return PortState.FILTERED, "timeout"
    except OSError as exc:
        return classify_connect_error(exc)
    await close_writer(writer)
    return PortState.OPEN, "syn-ack"


async def scan_port(
    ip,
    port,
    timeout_ms,
    pool,
    service_detection=False,
    database=None,
    service_timeout_ms=DEFAULT_SERVICE_TIMEOUT_MS,
):
    async with pool:
        state, reason = await connect_probe(ip, port, timeout_ms)

    service = None
    banner = None
    if state is PortState.OPEN and service_detection:
        if database is not None:
            service = await detect_service(ip, port, database, service_timeout_ms)
        else:
            banner = await grab_banner(ip, port, service_timeout_ms)
    return PortResult(port=port, protocol=Protocol.TCP, state=state, service=service, reason=reason, banner=banner)


async def scan_tcp(
    target,
    ports,
    timeout_ms,
    pool,
    service_detection=False,
    database=None,
    service_timeout_ms=DEFAULT_SERVICE_TIMEOUT_MS,
    progress=None,
):
    if not ports:
        return []

    async def run_one(port):
        result = await scan_port(target.ip, port, timeout_ms, pool, service_detection, database, service_timeout_ms)
        if progress is not None:
            progress(target, result)
        return result

    logger.debug("TCP scan of %s: %d ports, timeout %dms", target.display, len(ports), timeout_ms)
    return list(await asyncio.gather(*(run_one(p) for p in ports)))
