import ipaddress
import re


MAX_PORT = 65535


def extract_domain(target):
    target = (target or "").strip().lower()
    if not target:
        return ""

    # URL mode: keep host only.
    if target.startswith("http://") or target.startswith("https://"):
        target = re.sub(r"https?://", "", target)
        return target.split("/", 1)[0]

    return target.split("/", 1)[0]


def is_ip_literal(text):
    try:
        ipaddress.ip_address(text)
    except ValueError:
        return False
    return True


def parse_bool(value, default=False):
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


def _parse_port(text):
    if not (text.isascii() and text.isdigit()):
        return None
    port = int(text)
    if port > MAX_PORT:
        return None
    return port


def parse_port_spec(port_spec):
    """
    Expand "80,443,1000-2000" into a list of ports.

    Tokens keep their textual order and ranges expand ascending. Bad tokens
    (non-numeric, reversed or out of bounds) are dropped, duplicates are kept.
    """
    ports = []
    for chunk in str(port_spec or "").split(","):
        c = chunk.strip()
        if not c:
            continue
        if "-" in c:
            start_s, _, end_s = c.partition("-")
            start = _parse_port(start_s.strip())
            end = _parse_port(end_s.strip())
            if start is None or end is None or start > end:
                continue
            ports.extend(range(start, end + 1))
        else:
            port = _parse_port(c)
            if port is not None:
                ports.append(port)
    return ports
