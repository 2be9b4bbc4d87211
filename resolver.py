import asyncio
import logging
import socket

from models import ResolutionError, ScanTarget
from validators import extract_domain, is_ip_literal


logger = logging.getLogger(__name__)


async def resolve(hostname):
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    except (socket.gaierror, UnicodeError) as exc:
        raise ResolutionError(f"Could not resolve {hostname}: {exc}") from exc

    ips = []
    for info in infos:
        ip = info[4][0]
        if ip not in ips:
            ips.append(ip)
    if not ips:
        raise ResolutionError(f"No IP addresses found for host: {hostname}")
    return ips


async def resolve_target(identifier):
    host = extract_domain(identifier)
    if not host:
        raise ResolutionError(f"Empty target: {identifier!r}")
    if is_ip_literal(host):
        return ScanTarget(ip=host, original=identifier)
    ips = await resolve(host)
    logger.info("Resolved %s to %s", host, ", ".join(ips))
    return ScanTarget(ip=ips[0], original=identifier)
