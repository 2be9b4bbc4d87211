import asyncio
import logging
import re

from models import HARD_MATCH_CONFIDENCE, SOFT_MATCH_CONFIDENCE, Protocol, ServiceInfo


logger = logging.getLogger(__name__)

READ_BUFFER_SIZE = 4096
BANNER_BUFFER_SIZE = 1024
FALLBACK_PROBES = ("GetRequest", "GenericLines")

# version field tag -> ServiceInfo attribute
FIELD_ATTRS = {
    "p": "product",
    "v": "version",
    "i": "extra_info",
    "h": "hostname",
    "o": "os_info",
    "d": "device_type",
    "cpe": "cpe",
}

PLACEHOLDER_RE = re.compile(r"\$(\d)")


def substitute(template, match):
    """Replace $1..$9 in a version template with the match's capture groups."""
    def repl(m):
        n = int(m.group(1))
        if n < 1 or n > match.re.groups:
            return m.group(0)
        return match.group(n) or ""

    return PLACEHOLDER_RE.sub(repl, template)


def match_rules(text, rules, confidence):
    for rule in rules:
        m = rule.pattern.search(text)
        if m is None:
            continue
        info = ServiceInfo(service=rule.service, confidence=confidence)
        for tag, template in rule.version_info.items():
            attr = FIELD_ATTRS.get(tag)
            if attr:
                setattr(info, attr, substitute(template, m))
        return info
    return None


def identify(response, probe):
    """
    Match a raw response against one probe's rules.

    Hard matches are tried first, in file order, then soft matches. The
    response is decoded as latin-1 so every byte maps to one character and
    byte escapes in patterns keep working.
    """
    text = response.decode("latin-1")
    info = match_rules(text, probe.matches, HARD_MATCH_CONFIDENCE)
    if info is None:
        info = match_rules(text, probe.soft_matches, SOFT_MATCH_CONFIDENCE)
    return info


def relevant_probes(database, port, protocol=Protocol.TCP):
    port_text = str(port)
    tagged = f"T:{port}"
    relevant = [
        probe
        for probe in database.probes
        if probe.protocol == protocol
        and probe.name != "NULL"
        and any(port_text in spec or tagged in spec for spec in probe.ports)
    ]
    if relevant:
        return relevant
    return [p for p in database.probes if p.protocol == protocol and p.name in FALLBACK_PROBES]


async def close_writer(writer):
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass  # peer reset while closing


async def send_probe(host, port, probe, timeout_ms):
    """Run one probe on a fresh connection; returns the response bytes or None."""
    timeout = timeout_ms / 1000.0
    try:
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError) as exc:
        logger.debug("Probe %s: connect to %s:%s failed: %r", probe.name, host, port, exc)
        return None
    try:
        if probe.payload:
            writer.write(probe.payload)
            await asyncio.wait_for(writer.drain(), timeout=timeout)
        data = await asyncio.wait_for(reader.read(READ_BUFFER_SIZE), timeout=timeout)
    except (OSError, asyncio.TimeoutError) as exc:
        logger.debug("Probe %s on %s:%s got no response: %r", probe.name, host, port, exc)
        return None
    finally:
        await close_writer(writer)
    return data or None


async def detect_service(host, port, database, timeout_ms):
    candidates = []
    null_probe = database.get("NULL", Protocol.TCP)
    if null_probe is not None:
        candidates.append(null_probe)
    candidates.extend(relevant_probes(database, port))

    for probe in candidates:
        response = await send_probe(host, port, probe, timeout_ms)
        if response is None:
            continue
        info = identify(response, probe)
        if info is not None:
            logger.debug("%s:%s identified as %s by probe %s", host, port, info.service, probe.name)
            return info
    return None


async def grab_banner(host, port, timeout_ms):
    def single_line(text):
        if not text.strip():
            return None
        first = text.strip().splitlines()[0].strip()
        return " ".join(first.split())

    timeout = timeout_ms / 1000.0
    try:
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return None
    try:
        data = await asyncio.wait_for(reader.read(BANNER_BUFFER_SIZE), timeout=timeout)
    except (OSError, asyncio.TimeoutError):
        return None
    finally:
        await close_writer(writer)
    return single_line(data.decode(errors="ignore"))
