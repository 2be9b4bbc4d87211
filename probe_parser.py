"""
Loader for nmap-style service probe files.

The grammar is line oriented:

    Exclude T:9100-9107
    Probe TCP GetRequest q|GET / HTTP/1.0\\r\\n\\r\\n|
    rarity 1
    ports 80,8000-8010,8080
    match http m|^HTTP/1\\.[01] \\d\\d\\d .*\\r\\nServer: ([^\\r\\n]+)| p/$1/
    softmatch http m|^HTTP/1\\.[01] \\d\\d\\d|

Directives apply to the most recent ``Probe`` line.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from models import ProbeLoadError, Protocol


logger = logging.getLogger(__name__)

VERSION_FIELD_TAGS = ("p", "v", "i", "h", "o", "d")
HEX_DIGITS = "0123456789abcdefABCDEF"
SIMPLE_ESCAPES = {"n": b"\n", "r": b"\r", "t": b"\t", "0": b"\x00", "\\": b"\\"}
INT_DIRECTIVES = {"totalwaitms": "total_wait_ms", "tcpwrappedms": "tcp_wrapped_ms", "rarity": "rarity"}


@dataclass
class MatchEntry:
    service: str
    pattern: "re.Pattern"
    version_info: Dict[str, str] = field(default_factory=dict)


@dataclass
class ProbeEntry:
    protocol: Protocol
    name: str
    payload: bytes = b""
    no_payload: bool = False
    matches: List[MatchEntry] = field(default_factory=list)
    soft_matches: List[MatchEntry] = field(default_factory=list)
    ports: List[str] = field(default_factory=list)
    ssl_ports: List[str] = field(default_factory=list)
    total_wait_ms: Optional[int] = None
    tcp_wrapped_ms: Optional[int] = None
    rarity: Optional[int] = None
    fallback: Optional[str] = None


@dataclass
class ProbeDatabase:
    excludes: List[str] = field(default_factory=list)
    probes: List[ProbeEntry] = field(default_factory=list)

    def get(self, name, protocol=Protocol.TCP):
        for probe in self.probes:
            if probe.name == name and probe.protocol == protocol:
                return probe
        return None

    def __len__(self):
        return len(self.probes)


def decode_escapes(text):
    """Resolve \\n \\r \\t \\0 \\\\ and \\xHH into raw bytes."""
    out = bytearray()
    i = 0
    while i < len(text):
        ch = text[i]
        if ch == "\\" and i + 1 < len(text):
            nxt = text[i + 1]
            if nxt in SIMPLE_ESCAPES:
                out += SIMPLE_ESCAPES[nxt]
                i += 2
                continue
            hex_part = text[i + 2:i + 4]
            if nxt == "x" and len(hex_part) == 2 and all(c in HEX_DIGITS for c in hex_part):
                out.append(int(hex_part, 16))
                i += 4
                continue
        out += ch.encode("utf-8")
        i += 1
    return bytes(out)


def parse_probe_string(probe_part):
    """Split ``q|...| no-payload`` into (decoded payload, no_payload flag)."""
    if probe_part.startswith("q") and len(probe_part) > 2:
        delimiter = probe_part[1]
        end = probe_part.rfind(delimiter)
        if end > 1:
            tail = probe_part[end + 1:].split()
            return decode_escapes(probe_part[2:end]), "no-payload" in tail
    return decode_escapes(probe_part), "no-payload" in probe_part.split()


def _delimited(text, start):
    """Return (content, index after closing delimiter) for text[start] as delimiter."""
    if start >= len(text):
        return None, len(text)
    delimiter = text[start]
    end = text.find(delimiter, start + 1)
    if end == -1:
        return None, len(text)
    return text[start + 1:end], end + 1


def _skip_token(text, i):
    while i < len(text) and not text[i].isspace():
        i += 1
    return i


def parse_version_fields(text):
    fields = {}
    i = 0
    while i < len(text):
        if text[i].isspace():
            i += 1
            continue
        if text.startswith("cpe:", i):
            value, i = _delimited(text, i + 4)
            if value is not None:
                fields["cpe"] = value
            i = _skip_token(text, i)  # trailing "a" flag
            continue
        if text[i] in VERSION_FIELD_TAGS and i + 1 < len(text) and not text[i + 1].isspace():
            tag = text[i]
            value, i = _delimited(text, i + 1)
            if value is not None:
                fields[tag] = value
            continue
        i = _skip_token(text, i)
    return fields


def parse_match_line(rest):
    """Parse ``<service> m<d>pattern<d>[flags] [fields...]``; None if malformed."""
    parts = rest.split(None, 1)
    if len(parts) < 2:
        return None
    service, clause = parts
    if not clause.startswith("m") or len(clause) < 3:
        return None
    pattern, i = _delimited(clause, 1)
    if pattern is None:
        return None
    # Regex flags (i, s) are not applied.
    i = _skip_token(clause, i)
    try:
        compiled = re.compile(pattern)
    except re.error as exc:
        logger.debug("Skipping %s rule with unsupported pattern %r: %s", service, pattern, exc)
        return None
    return MatchEntry(service=service, pattern=compiled, version_info=parse_version_fields(clause[i:]))


def _parse_int(rest):
    tokens = rest.split()
    if not tokens or not (tokens[0].isascii() and tokens[0].isdigit()):
        return None
    return int(tokens[0])


def parse_probe_database(text):
    database = ProbeDatabase()
    current = None

    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(None, 1)
        directive = parts[0]
        rest = parts[1].strip() if len(parts) > 1 else ""

        if directive == "Exclude":
            if rest:
                database.excludes.append(rest)
            continue

        if directive == "Probe":
            if current is not None:
                database.probes.append(current)
            current = None
            fields = rest.split(None, 2)
            if len(fields) < 3:
                logger.debug("Ignoring incomplete Probe line: %s", line)
                continue
            try:
                protocol = Protocol(fields[0].lower())
            except ValueError:
                logger.debug("Ignoring probe %s with unknown protocol %s", fields[1], fields[0])
                continue
            payload, no_payload = parse_probe_string(fields[2])
            current = ProbeEntry(protocol=protocol, name=fields[1], payload=payload, no_payload=no_payload)
            continue

        if current is None:
            continue

        if directive in ("match", "softmatch"):
            entry = parse_match_line(rest)
            if entry is None:
                continue
            if directive == "match":
                current.matches.append(entry)
            else:
                current.soft_matches.append(entry)
        elif directive == "ports":
            if rest:
                current.ports.append(rest)
        elif directive == "sslports":
            if rest:
                current.ssl_ports.append(rest)
        elif directive in INT_DIRECTIVES:
            value = _parse_int(rest)
            if value is not None:
                setattr(current, INT_DIRECTIVES[directive], value)
        elif directive == "fallback":
            if rest:
                current.fallback = rest

    if current is not None:
        database.probes.append(current)
    return database


def load_probe_database(path):
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            text = f.read()
    except OSError as exc:
        raise ProbeLoadError(f"Cannot read probe file '{path}': {exc}") from exc
    database = parse_probe_database(text)
    logger.debug("Loaded %d probes and %d excludes from %s", len(database.probes), len(database.excludes), path)
    return database
