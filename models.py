from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, Optional


HARD_MATCH_CONFIDENCE = 90
SOFT_MATCH_CONFIDENCE = 50


class PortProbeError(Exception):
    pass


class ResolutionError(PortProbeError):
    pass


class ProbeLoadError(PortProbeError):
    pass


class ConfigError(PortProbeError):
    pass


class Protocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"


class PortState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"
    FILTERED = "filtered"  # likely dropped by a firewall


@dataclass(frozen=True)
class ScanTarget:
    ip: str
    original: str

    @property
    def display(self):
        if self.original == self.ip:
            return self.ip
        return f"{self.original} ({self.ip})"


@dataclass
class ServiceInfo:
    service: str
    version: Optional[str] = None
    product: Optional[str] = None
    extra_info: Optional[str] = None
    hostname: Optional[str] = None
    os_info: Optional[str] = None
    device_type: Optional[str] = None
    cpe: Optional[str] = None
    confidence: int = HARD_MATCH_CONFIDENCE

    def summary(self):
        parts = [p for p in (self.product, self.version) if p]
        if self.extra_info:
            parts.append(f"({self.extra_info})")
        return " ".join(parts)

    def to_dict(self):
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class PortResult:
    port: int
    protocol: Protocol
    state: PortState
    service: Optional[ServiceInfo] = None
    reason: str = ""
    banner: Optional[str] = None

    @property
    def key(self):
        return f"{self.port}/{self.protocol.value}"

    def to_dict(self):
        data = {"state": self.state.value, "reason": self.reason}
        if self.service is not None:
            data["service"] = self.service.to_dict()
        if self.banner:
            data["banner"] = self.banner
        return data


@dataclass
class ScriptResult:
    script_name: str
    host: str
    port: Optional[int] = None
    success: bool = False
    output: str = ""
    error: Optional[str] = None
    data: Dict[str, str] = field(default_factory=dict)
