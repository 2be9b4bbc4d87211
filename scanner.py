import asyncio
import logging
from dataclasses import dataclass, field
from typing import List

from models import PortResult, PortState, ProbeLoadError, ScanTarget, ScriptResult
from probe_parser import load_probe_database
from resolver import resolve_target
from scanner_core import PermitPool, scan_tcp
from scripting import DEFAULT_SCRIPTS_DIR, ScriptRunner
from udp_scanner import scan_udp
from validators import extract_domain, parse_port_spec


logger = logging.getLogger(__name__)


@dataclass
class TargetReport:
    target: ScanTarget
    tcp: List[PortResult] = field(default_factory=list)
    udp: List[PortResult] = field(default_factory=list)
    scripts: List[ScriptResult] = field(default_factory=list)

    @property
    def results(self):
        return self.tcp + self.udp

    def count(self, state):
        return sum(1 for r in self.results if r.state is state)


def build_port_map(report, only_open=False):
    ports = {}
    for result in report.results:
        if only_open and result.state is not PortState.OPEN:
            continue
        ports[result.key] = result.to_dict()
    return ports


class Scanner:
    """Runs the TCP and/or UDP scans a ScanConfig asks for."""

    def __init__(self, config, script_runner=None):
        self.config = config.validate()
        self.script_runner = script_runner or ScriptRunner(config.scripts_dir or DEFAULT_SCRIPTS_DIR)
        self.pool = None

    def load_database(self):
        if not self.config.service_detection:
            return None
        try:
            database = load_probe_database(self.config.probes_file)
        except ProbeLoadError as exc:
            logger.warning("%s; falling back to banner grabbing", exc)
            return None
        logger.info("Loaded %d service probes", len(database))
        return database

    async def resolve_targets(self):
        # Any resolution failure aborts the whole run.
        return [await resolve_target(t) for t in self.config.targets]

    async def run(self, progress=None):
        cfg = self.config
        ports = parse_port_spec(cfg.ports)
        if not ports:
            logger.warning("No valid ports in %r; nothing to scan.", cfg.ports)
            return []

        targets = await self.resolve_targets()
        reports = [TargetReport(target=t) for t in targets]
        database = self.load_database()

        if cfg.tcp:
            self.pool = PermitPool(cfg.concurrency)
            tcp_results = await asyncio.gather(
                *(
                    scan_tcp(
                        t,
                        ports,
                        cfg.timeout_ms,
                        self.pool,
                        service_detection=cfg.service_detection,
                        database=database,
                        service_timeout_ms=cfg.service_timeout_ms,
                        progress=progress,
                    )
                    for t in targets
                )
            )
            for report, results in zip(reports, tcp_results):
                report.tcp = results

        if cfg.udp:
            for report in reports:
                report.udp = await scan_udp(report.target, ports, cfg.timeout_ms, progress=progress)

        if cfg.script:
            for report in reports:
                report.scripts = await self.run_scripts(report)
        return reports

    async def run_scripts(self, report):
        host = extract_domain(report.target.original) or report.target.ip
        script = self.config.script
        results = [await asyncio.to_thread(self.script_runner.run_script, script, host, None)]
        for r in report.tcp:
            if r.state is PortState.OPEN:
                results.append(await asyncio.to_thread(self.script_runner.run_script, script, host, r.port))
        failed = [r for r in results if not r.success]
        if failed:
            logger.warning("Script %s failed %d time(s) on %s: %s", script, len(failed), host, failed[0].error)
        return results
