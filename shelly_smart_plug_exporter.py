from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import sys
import time
from dataclasses import dataclass, field
from socketserver import ThreadingMixIn
from threading import Thread
from typing import Any, Dict, List, Optional, Sequence
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

import requests
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client.platform_collector import PlatformCollector
from prometheus_client.process_collector import ProcessCollector

from shelly_exporter import API_TIMEOUT_SECONDS, Device, ScrapeError, get_metrics, make_session

EXPORTER_VERSION = "0.1.0"
DEFAULT_PORT = 9001
DEFAULT_LISTEN_HOST = "0.0.0.0"
METRICS_PATH = "/metrics"
FAILURE_BODY = b"Failed to process, please check application logs"

# leading host/address token of a mapping entry
_ADDRESS_RUN = re.compile(r"[0-9A-Za-z.\-]+")

logger = logging.getLogger(__name__)


@dataclass
class ExporterConfig:
    ip_addrs: List[str] = field(default_factory=list)
    hostname_ip_mapping: List[str] = field(default_factory=list)
    server_port: int = DEFAULT_PORT
    listen_host: str = DEFAULT_LISTEN_HOST
    timeout_seconds: float = API_TIMEOUT_SECONDS
    exporter_telemetry_path: Optional[str] = None


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True
    allow_reuse_address = True


class AccessLogHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        logger.info("%s %s", self.address_string(), format % args)


class ExporterTelemetry:
    """Self-instrumentation of the exporter, kept out of the device payload."""

    def __init__(self, registry: CollectorRegistry) -> None:
        self.registry = registry
        self.scrapes = Counter(
            "shelly_exporter_scrapes_total", "Scrape requests handled.", registry=registry
        )
        self.errors = Counter(
            "shelly_exporter_scrape_errors_total", "Failed scrapes by error kind.", ["kind"], registry=registry
        )
        self.duration = Histogram(
            "shelly_exporter_scrape_duration_seconds", "Time spent polling all plugs for one scrape.", registry=registry
        )
        build = Gauge(
            "shelly_exporter_build_info", "Exporter build information.", ["version", "python"], registry=registry
        )
        build.labels(EXPORTER_VERSION, sys.version.split()[0]).set(1)


def setup_logging(level: str) -> None:
    lvl = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(message)s")


def load_config_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        raw = f.read()

    if path.lower().endswith(".json"):
        data = json.loads(raw)
        if not isinstance(data, dict):
            raise ValueError("Config root must be an object")
        return data

    try:
        import yaml
    except Exception as e:
        raise RuntimeError("YAML config requires PyYAML. Install with: pip install pyyaml") from e

    data = yaml.safe_load(raw)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError("Config root must be a mapping/object")
    return data


def _str_list(cfg: Dict[str, Any], key: str) -> List[str]:
    items = cfg.get(key, [])
    if items is None:
        return []
    if not isinstance(items, list):
        raise ValueError(f"Config '{key}' must be a list")
    return [str(x).strip() for x in items]


def merge_config(args: argparse.Namespace, cfg: Dict[str, Any]) -> ExporterConfig:
    web_cfg = cfg.get("web", {}) if isinstance(cfg.get("web", {}), dict) else {}
    scrape_cfg = cfg.get("scrape", {}) if isinstance(cfg.get("scrape", {}), dict) else {}

    port = args.server_port if args.server_port is not None else int(web_cfg.get("port", DEFAULT_PORT))
    host = args.listen_host or str(web_cfg.get("listen_host", DEFAULT_LISTEN_HOST))
    timeout = args.timeout_seconds if args.timeout_seconds is not None else float(
        scrape_cfg.get("timeout_seconds", API_TIMEOUT_SECONDS)
    )
    telemetry_path = args.exporter_telemetry_path or web_cfg.get("exporter_telemetry_path") or None

    return ExporterConfig(
        ip_addrs=_split_addresses(list(args.ip_addrs or []) + _str_list(cfg, "devices")),
        hostname_ip_mapping=list(args.hostname_ip_mapping or []) + _str_list(cfg, "mappings"),
        server_port=port,
        listen_host=host,
        timeout_seconds=timeout,
        exporter_telemetry_path=str(telemetry_path) if telemetry_path else None,
    )


def load_plugs(ip_addrs: Sequence[str], hostname_ip_mapping: Sequence[str]) -> List[Device]:
    plugs: List[Device] = []
    for ip in ip_addrs:
        alias = ip

        for mapping in hostname_ip_mapping:
            if ":" not in mapping:
                m = _ADDRESS_RUN.match(mapping.strip())
                if m is not None and m.group(0) == ip:
                    logger.warning("Invalid mapping `%s`! Please use format `ip:hostname`", mapping)
                    break
                continue

            addr, _, hostname = mapping.partition(":")
            if addr.strip() != ip:
                continue
            hostname = hostname.strip()
            if not hostname:
                logger.warning("Invalid mapping `%s`! Hostname must not be empty", mapping)
                break
            alias = hostname
            break

        plugs.append(Device.for_address(ip, alias))

    return plugs


def make_app(
    plugs: Sequence[Device],
    session: requests.Session,
    timeout_seconds: float = API_TIMEOUT_SECONDS,
    telemetry: Optional[ExporterTelemetry] = None,
    telemetry_path: Optional[str] = None,
):
    def app(environ, start_response):
        path = environ.get("PATH_INFO", "")
        method = environ.get("REQUEST_METHOD", "GET")

        if path == METRICS_PATH and method == "GET":
            t0 = time.time()
            try:
                output = get_metrics(session, plugs, timeout=timeout_seconds)
            except ScrapeError as e:
                logger.error("An error occurred during processing - %s: %s", e.url, e)
                if telemetry is not None:
                    telemetry.errors.labels(type(e).__name__).inc()
                start_response("500 Internal Server Error", [("Content-Type", "text/plain; charset=utf-8")])
                return [FAILURE_BODY]
            finally:
                if telemetry is not None:
                    telemetry.scrapes.inc()
                    telemetry.duration.observe(time.time() - t0)
            start_response("200 OK", [("Content-Type", "text/plain; charset=utf-8")])
            return [output.encode("utf-8")]

        if telemetry is not None and telemetry_path and path == telemetry_path:
            start_response("200 OK", [("Content-Type", CONTENT_TYPE_LATEST)])
            return [generate_latest(telemetry.registry)]

        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"not found"]

    return app


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="shelly-smart-plug-exporter",
        description="Prometheus exporter for shelly smart plugs",
    )
    p.add_argument(
        "-i", "--ip-addr", dest="ip_addrs", action="extend", nargs="+", default=None,
        help="IP address of your smart plug(s) on your local network",
    )
    p.add_argument("-p", "--server-port", dest="server_port", type=int, default=None, help="Port to run the webserver at")
    p.add_argument(
        "-m", "--hostname-ip-mapping", dest="hostname_ip_mapping", action="append", default=None,
        help="IP -> Hostname mapping in `ip_address:hostname` format",
    )
    p.add_argument("--web.listen-host", dest="listen_host", default=None)
    p.add_argument("--web.exporter-telemetry-path", dest="exporter_telemetry_path", default=None)
    p.add_argument("--scrape.timeout-seconds", dest="timeout_seconds", type=float, default=None)
    p.add_argument("--config.file", dest="config_file", default=None)
    p.add_argument("--log.level", dest="log_level", default=os.environ.get("LOG_LEVEL", "INFO"))
    p.add_argument("--version", action="version", version=f"%(prog)s {EXPORTER_VERSION}")
    return p


def _split_addresses(values: Sequence[str]) -> List[str]:
    out: List[str] = []
    for v in values:
        out.extend(x for x in v.split(" ") if x)
    return out


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    setup_logging(args.log_level)

    cfg_path = args.config_file or os.environ.get("SHELLY_EXPORTER_CONFIG", "").strip() or None
    cfg: Dict[str, Any] = {}
    if cfg_path:
        cfg = load_config_file(cfg_path)
        logger.info("config_file=%s", cfg_path)

    conf = merge_config(args, cfg)
    if not conf.ip_addrs:
        raise SystemExit("no smart plugs configured: use --ip-addr ADDR or list them under 'devices' in the config file")

    plugs = load_plugs(conf.ip_addrs, conf.hostname_ip_mapping)

    telemetry: Optional[ExporterTelemetry] = None
    if conf.exporter_telemetry_path:
        registry = CollectorRegistry()
        ProcessCollector(registry=registry)
        PlatformCollector(registry=registry)
        telemetry = ExporterTelemetry(registry)

    session = make_session()
    app = make_app(
        plugs,
        session,
        timeout_seconds=conf.timeout_seconds,
        telemetry=telemetry,
        telemetry_path=conf.exporter_telemetry_path,
    )

    httpd = make_server(
        conf.listen_host,
        conf.server_port,
        app,
        server_class=ThreadingWSGIServer,
        handler_class=AccessLogHandler,
    )

    def _sig(*_):
        Thread(target=httpd.shutdown, daemon=True).start()

    signal.signal(signal.SIGTERM, _sig)
    signal.signal(signal.SIGINT, _sig)

    logger.info(
        "listening=%s:%s metrics_path=%s plugs=%s timeout=%.1fs exporter_telemetry=%s",
        conf.listen_host,
        conf.server_port,
        METRICS_PATH,
        ", ".join(f"{p.alias}={p.url}" for p in plugs),
        conf.timeout_seconds,
        conf.exporter_telemetry_path or "off",
    )

    try:
        httpd.serve_forever()
    finally:
        session.close()
        httpd.server_close()

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
