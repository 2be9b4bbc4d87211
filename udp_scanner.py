import asyncio
import ipaddress
import logging
import socket

from scapy.asn1.asn1 import ASN1_OID
from scapy.layers.dns import DNS, DNSQR
from scapy.layers.ntp import NTPHeader
from scapy.layers.snmp import SNMP, SNMPget, SNMPvarbind

from models import PortResult, PortState, Protocol


logger = logging.getLogger(__name__)

RECV_BUFFER_SIZE = 1024
SYS_DESCR_OID = "1.3.6.1.2.1.1.1.0"


def dns_query():
    return bytes(DNS(id=0x1234, rd=1, qd=DNSQR(qname="google.com", qtype="A", qclass="IN")))


def snmp_get_request():
    pdu = SNMPget(id=1, varbindlist=[SNMPvarbind(oid=ASN1_OID(SYS_DESCR_OID))])
    return bytes(SNMP(version=0, community="public", PDU=pdu))


def ntp_client_request():
    return bytes(NTPHeader(leap=0, version=3, mode=3))


UDP_PAYLOADS = {
    53: dns_query,
    123: ntp_client_request,
    161: snmp_get_request,
}


def probe_payload(port):
    build = UDP_PAYLOADS.get(port)
    return build() if build else b""


def _family(ip):
    return socket.AF_INET6 if ipaddress.ip_address(ip).version == 6 else socket.AF_INET


async def scan_udp_port(ip, port, timeout_ms):
    loop = asyncio.get_running_loop()
    try:
        sock = socket.socket(_family(ip), socket.SOCK_DGRAM)
    except OSError as exc:
        logger.debug("UDP socket for %s:%s failed: %r", ip, port, exc)
        return PortResult(port=port, protocol=Protocol.UDP, state=PortState.CLOSED, reason="socket-error")

    with sock:
        sock.setblocking(False)
        try:
            sock.bind(("", 0))
            sock.connect((ip, port))
            await loop.sock_sendall(sock, probe_payload(port))
        except OSError as exc:
            logger.debug("UDP send to %s:%s failed: %r", ip, port, exc)
            return PortResult(port=port, protocol=Protocol.UDP, state=PortState.CLOSED, reason="send-error")

        try:
            await asyncio.wait_for(loop.sock_recv(sock, RECV_BUFFER_SIZE), timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError:
            # Silence cannot be told apart from a filtering firewall.
            return PortResult(port=port, protocol=Protocol.UDP, state=PortState.OPEN, reason="no-response")
        except OSError as exc:
            logger.debug("UDP receive from %s:%s failed: %r", ip, port, exc)
            return PortResult(port=port, protocol=Protocol.UDP, state=PortState.CLOSED, reason="port-unreach")
    return PortResult(port=port, protocol=Protocol.UDP, state=PortState.OPEN, reason="udp-response")


async def scan_udp(target, ports, timeout_ms, progress=None):
    results = []
    for port in ports:
        result = await scan_udp_port(target.ip, port, timeout_ms)
        if progress is not None:
            progress(target, result)
        results.append(result)
    return results
