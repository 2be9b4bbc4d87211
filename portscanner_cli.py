import argparse
import asyncio
import json
import logging
import os
import socket
import sys
import time
from dataclasses import asdict

from config import TIMING_PROFILES, ScanConfig, load_config_file, merge_values
from models import PortProbeError, PortState
from scanner import Scanner, build_port_map
from scripting import DEFAULT_SCRIPTS_DIR, ScriptRunner
from validators import parse_port_spec


logger = logging.getLogger("portprobe")


class C:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    GREEN = "\033[92m"
    CYAN = "\033[96m"
    YELLOW = "\033[93m"
    RED = "\033[91m"


STYLE_ENABLED = True
TOOL_NAME = "PortProbe"

COMMON_PORTS = {
    21: "ftp", 22: "ssh", 23: "telnet", 25: "smtp", 53: "domain", 80: "http",
    110: "pop3", 123: "ntp", 135: "msrpc", 139: "netbios-ssn", 143: "imap",
    161: "snmp", 443: "https", 445: "microsoft-ds", 993: "imaps", 995: "pop3s",
    1433: "ms-sql-s", 1521: "oracle", 3000: "grafana", 3306: "mysql",
    3389: "ms-wbt-server", 5432: "postgresql", 5672: "amqp", 5900: "vnc",
    6379: "redis", 8080: "http-proxy", 8443: "https-alt", 9200: "elasticsearch",
    11211: "memcached", 27017: "mongodb",
}


def paint(text, color):
    if not STYLE_ENABLED:
        return text
    return f"{color}{text}{C.RESET}"


def banner():
    print(paint("  ____            _     ____            _          ", C.GREEN + C.BOLD))
    print(paint(" |  _ \\ ___  _ __| |_  |  _ \\ _ __ ___ | |__   ___ ", C.GREEN + C.BOLD))
    print(paint(" | |_) / _ \\| '__| __| | |_) | '__/ _ \\| '_ \\ / _ \\", C.GREEN + C.BOLD))
    print(paint(" |  __/ (_) | |  | |_  |  __/| | | (_) | |_) |  __/", C.GREEN + C.BOLD))
    print(paint(" |_|   \\___/|_|   \\__| |_|   |_|  \\___/|_.__/ \\___|", C.GREEN + C.BOLD))
    print(paint(f"                [ {TOOL_NAME} ]", C.CYAN))


class ColorFormatter(logging.Formatter):
    LEVELS = {
        logging.DEBUG: ("DBG", C.DIM),
        logging.INFO: ("INFO", C.GREEN),
        logging.WARNING: ("WARN", C.YELLOW),
        logging.ERROR: ("ERR", C.RED),
        logging.CRITICAL: ("ERR", C.RED),
    }

    def format(self, record):
        tag, color = self.LEVELS.get(record.levelno, ("INFO", C.GREEN))
        text = f"[{tag}] {record.getMessage()}"
        if record.exc_info:
            text = f"{text}\n{self.formatException(record.exc_info)}"
        return paint(text, color)


def setup_logging(verbose=False, quiet=False):
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ColorFormatter())
    root = logging.getLogger()
    root.handlers[:] = [handler]
    if verbose:
        root.setLevel(logging.DEBUG)
    elif quiet:
        root.setLevel(logging.WARNING)
    else:
        root.setLevel(logging.INFO)
    logging.getLogger("scapy.runtime").setLevel(logging.ERROR)


def progress_bar(done, total, width=36):
    if total <= 0:
        return "[------------------------------------] 0.0%"
    ratio = min(max(done / total, 0.0), 1.0)
    fill = int(width * ratio)
    bar = "#" * fill + "-" * (width - fill)
    return f"[{bar}] {ratio * 100:5.1f}% ({done}/{total})"


class ProgressLine:
    def __init__(self, total, enabled):
        self.total = total
        self.enabled = enabled
        self.done = 0
        self.counts = {state: 0 for state in PortState}
        self.last_draw = 0.0

    def __call__(self, target, result):
        self.done += 1
        self.counts[result.state] += 1
        if not self.enabled:
            return
        now = time.time()
        if now - self.last_draw >= 0.06 or self.done == self.total:
            line = (
                f"{progress_bar(self.done, self.total)} "
                f"open:{self.counts[PortState.OPEN]} filtered:{self.counts[PortState.FILTERED]} "
                f"closed:{self.counts[PortState.CLOSED]}"
            )
            print(paint(line, C.CYAN), end="\r", file=sys.stderr)
            self.last_draw = now

    def clear(self):
        if self.enabled:
            print(" " * 100, end="\r", file=sys.stderr)


def get_port_service(port, proto="tcp"):
    try:
        return socket.getservbyport(port, proto)
    except (OSError, OverflowError):
        return COMMON_PORTS.get(port, "unknown")


def port_sort_value(key):
    try:
        return int(key.split("/", 1)[0])
    except ValueError:
        return 999999


def ensure_parent_dir(path):
    if not path:
        return
    parent = os.path.dirname(os.path.abspath(path))
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)


def print_scan_report(report, only_open):
    target = report.target
    rows = build_port_map(report, only_open=only_open)
    by_key = {r.key: r for r in report.results}

    print(f"Scan report for {target.display}")
    closed_count = report.count(PortState.CLOSED)
    filtered_count = report.count(PortState.FILTERED)
    if only_open and closed_count:
        print(f"Not shown: {closed_count} closed ports")
    if only_open and filtered_count:
        print(f"Not shown: {filtered_count} filtered ports")
    if not rows:
        print("No ports to display.")
        print()
        return

    print("PORT        STATE     SERVICE          VERSION")
    for key in sorted(rows, key=lambda k: (port_sort_value(k), k)):
        result = by_key[key]
        state = result.state.value
        if result.reason == "no-response":
            state = "open|filtered"
        if result.service is not None:
            service = result.service.service
            version = result.service.summary() or "-"
        else:
            service = get_port_service(result.port, result.protocol.value)
            version = result.banner or "-"
        print(f"{key:<11} {state:<9} {service[:16]:<16} {version}")
    print()


def print_script_results(report):
    for result in report.scripts:
        where = result.host if result.port is None else f"{result.host}:{result.port}"
        if not result.success:
            print(paint(f"Script {result.script_name} failed on {where}: {result.error or 'unknown error'}", C.RED))
            continue
        if not result.output and not result.data:
            continue
        print(f"Script {result.script_name} on {where}:")
        if result.output:
            print(f"  Output: {result.output}")
        for key, value in result.data.items():
            print(f"  {key}: {value}")
    if report.scripts:
        print()


def print_script_list(runner):
    names = runner.list_scripts()
    if not names:
        print(f"No scripts found in {runner.scripts_dir}")
        return
    print(f"Scripts in {runner.scripts_dir}:")
    for name in names:
        print(f"  {name}")


def export_json(path, config, reports, elapsed):
    payload = {
        "metadata": {
            "tool": TOOL_NAME,
            "ports": config.ports,
            "tcp": config.tcp,
            "udp": config.udp,
            "timeout_ms": config.timeout_ms,
            "concurrency": config.concurrency,
            "service_detection": config.service_detection,
            "elapsed_seconds": round(elapsed, 3),
        },
        "hosts": {
            r.target.ip: {
                "target": r.target.original,
                "ports": build_port_map(r, only_open=config.only_open),
                "scripts": [asdict(s) for s in r.scripts],
            }
            for r in reports
        },
    }
    ensure_parent_dir(path)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)


def build_config(args):
    config = ScanConfig()
    if args.config:
        load_config_file(args.config, config)

    overrides = {}
    if args.target:
        overrides["targets"] = args.target
    if args.ports is not None:
        overrides["ports"] = args.ports
    if args.udp:
        overrides["udp"] = True
    if args.tcp is not None:
        overrides["tcp"] = args.tcp
    for name in ("timing", "timeout_ms", "concurrency", "service_timeout_ms", "probes_file", "script", "scripts_dir", "json_out"):
        value = getattr(args, name)
        if value is not None:
            overrides[name] = value
    for name in ("service_detection", "show_all", "verbose"):
        if getattr(args, name):
            overrides[name] = True
    return merge_values(config, overrides)


def run(args):
    global STYLE_ENABLED
    STYLE_ENABLED = (not args.no_color) and ("NO_COLOR" not in os.environ)
    setup_logging(verbose=args.verbose, quiet=args.quiet)
    config = build_config(args)
    if config.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if args.list_scripts:
        print_script_list(ScriptRunner(config.scripts_dir or DEFAULT_SCRIPTS_DIR))
        return

    if not args.no_banner and not args.quiet:
        banner()
    scanner = Scanner(config)

    protocols = "+".join(p for p, on in (("TCP", config.tcp), ("UDP", config.udp)) if on)
    logger.info("Targets: %s | Ports: %s | Protocols: %s", ", ".join(config.targets), config.ports, protocols)
    logger.debug("Timeout %dms, concurrency %d, service detection %s", config.timeout_ms, config.concurrency, config.service_detection)

    total = len(parse_port_spec(config.ports)) * len(config.targets) * (int(config.tcp) + int(config.udp))
    progress = ProgressLine(total=total, enabled=sys.stderr.isatty() and not args.quiet)
    started = time.time()
    reports = asyncio.run(scanner.run(progress=progress))
    elapsed = time.time() - started
    progress.clear()

    print()
    for report in reports:
        print_scan_report(report, only_open=config.only_open)
        print_script_results(report)

    scanned = sum(len(r.results) for r in reports)
    open_count = sum(r.count(PortState.OPEN) for r in reports)
    logger.info("Scan complete: %d ports scanned, %d open, in %.2f seconds", scanned, open_count, elapsed)

    if config.json_out:
        export_json(config.json_out, config, reports, elapsed)
        logger.info("JSON saved -> %s", config.json_out)


def build_parser():
    p = argparse.ArgumentParser(
        prog="portprobe",
        description=f"{TOOL_NAME}: TCP connect / UDP port scanner with nmap-style service detection.",
        formatter_class=argparse.RawTextHelpFormatter,
        epilog=(
            "Timing Templates (-T), used when --timeout / --concurrency are not given:\n"
            + "".join(
                f"  -T{level}  concurrency {prof['concurrency']:<4} timeout {prof['timeout_ms']}ms\n"
                for level, prof in TIMING_PROFILES.items()
            )
            + "\nExamples:\n"
            "  portprobe -t scanme.nmap.org -p 22,80,443 -sV\n"
            "  portprobe -t 10.0.0.5 -t 10.0.0.6 -p 1-1024 --concurrency 200\n"
            "  portprobe -t 192.168.1.1 -p 53,123,161 --udp --no-tcp\n"
            "  portprobe --config scan.yaml --json-out out/scan.json"
        ),
    )
    p.add_argument("--config", default=None, help="YAML configuration file. Explicit CLI arguments override it.")
    p.add_argument("-t", "--target", action="append", default=[], help="Target IP or hostname (repeatable).")
    p.add_argument("-p", "--ports", default=None, help="Ports or ranges, comma separated. Example: 22,80,1000-2000. Default: 1-1024.")
    p.add_argument("--tcp", dest="tcp", action="store_true", default=None, help="Enable TCP connect scanning (default).")
    p.add_argument("--no-tcp", dest="tcp", action="store_false", help="Disable TCP scanning.")
    p.add_argument("--udp", action="store_true", help="Enable UDP scanning.")
    p.add_argument("-T", "--timing", type=int, default=None, help="Timing template 0..5. Default: 4.")
    p.add_argument("--timeout", dest="timeout_ms", type=int, default=None, help="Per-probe timeout in milliseconds.")
    p.add_argument("--concurrency", "--threads", dest="concurrency", type=int, default=None, help="Max simultaneous connection attempts across all targets.")
    p.add_argument("-sV", "--service-detection", dest="service_detection", action="store_true", help="Identify services on open TCP ports.")
    p.add_argument("--service-timeout", dest="service_timeout_ms", type=int, default=None, help="Timeout for each service probe in milliseconds. Default: 5000.")
    p.add_argument("--probes-file", default=None, help="nmap-style service probe file. Default: bundled data/service-probes.")
    p.add_argument("--script", default=None, help="Script name (from --scripts-dir) or path to a .py file with run(host, port).")
    p.add_argument("--scripts-dir", default=None, help="Directory holding scripts. Default: bundled plugins/.")
    p.add_argument("--list-scripts", action="store_true", help="List scripts available in --scripts-dir and exit.")
    p.add_argument("--show-all", action="store_true", help="Show closed and filtered ports too.")
    p.add_argument("--json-out", default=None, help="Write JSON report to file path.")
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    p.add_argument("--quiet", action="store_true", help="Only warnings and the final report.")
    p.add_argument("--no-color", action="store_true", help="Disable ANSI colors in output.")
    p.add_argument("--no-banner", action="store_true", help="Disable startup ASCII banner.")
    return p


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        run(args)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user.")
        return 130
    except PortProbeError as exc:
        logger.error(str(exc))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
