from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence
from urllib.parse import urlsplit

import requests

API_TIMEOUT_SECONDS = 10.0
STATUS_RPC_PATH = "/rpc/Switch.GetStatus?id=0"

logger = logging.getLogger(__name__)


class ScrapeError(Exception):
    def __init__(self, url: str, message: str) -> None:
        super().__init__(message)
        self.url = url


class ConnectionFailed(ScrapeError):
    pass


class UnexpectedStatus(ScrapeError):
    def __init__(self, url: str, status_code: int, body: str) -> None:
        super().__init__(url, f"API request failed with status code {status_code}")
        self.status_code = status_code
        self.body = body


class InvalidResponseBody(ScrapeError):
    pass


@dataclass(frozen=True)
class Device:
    url: str
    alias: str

    def __post_init__(self) -> None:
        if not self.alias:
            raise ValueError("device alias must not be empty")
        parts = urlsplit(self.url)
        if not parts.scheme or not parts.netloc:
            raise ValueError(f"invalid device url: {self.url!r}")

    @classmethod
    def for_address(cls, address: str, alias: Optional[str] = None) -> "Device":
        return cls(url=f"http://{address}{STATUS_RPC_PATH}", alias=alias or address)


def make_session() -> requests.Session:
    s = requests.Session()
    s.headers["Accept"] = "application/json"
    return s


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-standard JSON constant {name}")


def call_shelly_plug(session: requests.Session, url: str, timeout: float = API_TIMEOUT_SECONDS) -> Any:
    """Fetch the switch status of one plug and return the decoded JSON payload.

    Raises ConnectionFailed, UnexpectedStatus or InvalidResponseBody, after
    logging the failure.
    """
    try:
        resp = session.get(url, timeout=timeout)
    except requests.RequestException as e:
        logger.error("Failed to build the request at URI %s - %s", url, e)
        raise ConnectionFailed(url, "Failed to connect to API!") from e

    if not 200 <= resp.status_code <= 299:
        body = resp.text
        logger.error("Expected 2xx http status code from %s, got %s with body `%s`", url, resp.status_code, body)
        raise UnexpectedStatus(url, resp.status_code, body)

    try:
        return resp.json(parse_constant=_reject_constant)
    except ValueError as e:
        logger.error("Non-JSON response returned from %s - %s", url, e)
        raise InvalidResponseBody(url, "Invalid response!") from e


def _lookup(data: Any, *keys: str) -> Any:
    for k in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(k)
    return data


def _json_text(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def current_datetime() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


# (metric name, path into the Switch.GetStatus payload)
FIELDS = (
    ("power_watts", ("apower",)),
    ("voltage", ("voltage",)),
    ("current_amps", ("current",)),
    ("temperature_celsius", ("temperature", "tC")),
    ("temperature_fahrenheit", ("temperature", "tF")),
    ("running_total_power_consumed_watts", ("aenergy", "total")),
)


def convert_to_prometheus(data: Any, alias: str) -> str:
    lines: List[str] = [f"current_datetime{{hostname={alias}}} {current_datetime()}"]
    for name, path in FIELDS:
        lines.append(f"{name}{{hostname={alias}}} {_json_text(_lookup(data, *path))}")
    return "\n".join(lines)


def get_metrics(
    session: requests.Session,
    plugs: Sequence[Device],
    timeout: float = API_TIMEOUT_SECONDS,
) -> str:
    blocks: List[str] = []
    for plug in plugs:
        raw = call_shelly_plug(session, plug.url, timeout=timeout)
        blocks.append(convert_to_prometheus(raw, plug.alias))
    return "\n".join(blocks)
