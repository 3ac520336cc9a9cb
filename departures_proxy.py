#!/usr/bin/env python3
# SL departures proxy: filtered, sorted departures for a site as text or JSON.

import datetime
from dataclasses import dataclass
import json
import logging
import os
import re
import sys
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, TypedDict
from urllib.parse import quote

from dotenv import load_dotenv
from flask import Flask, Response, current_app, jsonify, make_response, request
import requests

load_dotenv()

log = logging.getLogger("departures_proxy")
logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def timeout_or_none(value: float) -> Optional[float]:
    return value if value > 0 else None


DEPARTURES_BASE = os.getenv("DEPARTURES_BASE_URL", "https://transport.integration.sl.se/v1")

UPSTREAM_CONNECT_TIMEOUT_SEC = env_float("UPSTREAM_CONNECT_TIMEOUT_SEC", 3.0)
UPSTREAM_READ_TIMEOUT_SEC = env_float("UPSTREAM_READ_TIMEOUT_SEC", 10.0)

APP_HOST = os.getenv("APP_HOST", "0.0.0.0")
APP_PORT = env_int("APP_PORT", 8080)

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"
CLOCK_FORMAT = "%H:%M"
DIVIDER = "-" * 20

_TIMESTAMP_RE = re.compile(r"\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}", re.ASCII)
_LINE_ID_RE = re.compile(r"[+-]?\d+", re.ASCII)

JsonDict = Dict[str, Any]
Timeout = Tuple[Optional[float], Optional[float]]


class RawLine(TypedDict):
    id: int
    designation: str


class RawDeparture(TypedDict):
    destination: str
    direction: str
    scheduled: str
    expected: str
    line: RawLine


class RawResponse(TypedDict, total=False):
    departures: List[RawDeparture]


class TimestampFormatError(ValueError):
    pass


class FetchError(Exception):
    def __init__(self, message: str):
        super().__init__(message)


class MissingParameter(Exception):
    def __init__(self, name: str):
        super().__init__(f"{name} query parameter is required")
        self.name = name


def parse_timestamp(text: str) -> datetime.datetime:
    if not isinstance(text, str) or not _TIMESTAMP_RE.fullmatch(text):
        raise TimestampFormatError(f"invalid timestamp {text!r}, expected YYYY-MM-DDTHH:MM:SS")
    try:
        return datetime.datetime.strptime(text, TIMESTAMP_FORMAT)
    except ValueError as exc:
        raise TimestampFormatError(f"invalid timestamp {text!r}: {exc}") from exc


def format_timestamp(value: datetime.datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def decode_timestamp(token: str) -> datetime.datetime:
    """Decode a JSON-quoted timestamp token such as '"2024-01-15T08:30:00"'.

    Works on the raw wire token; payloads already unquoted by the JSON
    decoder go through parse_timestamp.
    """
    if len(token) < 2 or token[0] != '"' or token[-1] != '"':
        raise TimestampFormatError(f"invalid timestamp token {token!r}, expected a quoted string")
    return parse_timestamp(token[1:-1])


def encode_timestamp(value: datetime.datetime) -> str:
    """Inverse of decode_timestamp: the quoted wire token."""
    return f'"{format_timestamp(value)}"'


def _text_field(raw: Any, key: str) -> str:
    # Missing or null text fields decode as empty strings.
    value = raw.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise TypeError(f"{key} must be a string, got {value!r}")
    return value


@dataclass(frozen=True)
class Line:
    id: int
    designation: str

    @classmethod
    def from_json(cls, raw: RawLine) -> "Line":
        line_id = raw["id"]
        if isinstance(line_id, bool) or not isinstance(line_id, int):
            raise TypeError(f"line id must be an integer, got {line_id!r}")
        return cls(id=line_id, designation=_text_field(raw, "designation"))


@dataclass(frozen=True)
class Departure:
    destination: str
    direction: str
    scheduled: datetime.datetime
    expected: datetime.datetime
    line: Line

    @classmethod
    def from_json(cls, raw: RawDeparture) -> "Departure":
        return cls(
            destination=_text_field(raw, "destination"),
            direction=_text_field(raw, "direction"),
            scheduled=parse_timestamp(raw["scheduled"]),
            expected=parse_timestamp(raw["expected"]),
            line=Line.from_json(raw["line"]),
        )

    def to_json(self) -> JsonDict:
        return {
            "destination": self.destination,
            "direction": self.direction,
            "scheduled": format_timestamp(self.scheduled),
            "expected": format_timestamp(self.expected),
            "line": {"id": self.line.id, "designation": self.line.designation},
        }


@dataclass(frozen=True)
class DeparturesResponse:
    departures: Tuple[Departure, ...]

    @classmethod
    def from_json(cls, raw: RawResponse) -> "DeparturesResponse":
        if not isinstance(raw, dict):
            raise TypeError(f"expected a JSON object, got {type(raw).__name__}")
        items = raw.get("departures")
        if items is None:
            items = []
        if not isinstance(items, list):
            raise TypeError("departures must be a list")
        return cls(departures=tuple(Departure.from_json(item) for item in items))


class DeparturesClient:
    """Single-attempt client for the provider's site departures endpoint."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        session: Optional[requests.Session] = None,
        timeout: Optional[Timeout] = None,
    ) -> None:
        self.base_url = (base_url or DEPARTURES_BASE).rstrip("/")
        self.session = session or requests.Session()
        if timeout is None:
            timeout = (
                timeout_or_none(UPSTREAM_CONNECT_TIMEOUT_SEC),
                timeout_or_none(UPSTREAM_READ_TIMEOUT_SEC),
            )
        self.timeout = timeout

    def departures_url(self, site_id: str) -> str:
        return f"{self.base_url}/sites/{quote(site_id, safe='')}/departures"

    def fetch(self, site_id: str) -> DeparturesResponse:
        url = self.departures_url(site_id)
        log.debug("GET %s", url)
        try:
            resp = self.session.get(
                url,
                timeout=self.timeout,
                headers={"Accept": "application/json"},
            )
        except requests.RequestException as exc:
            raise FetchError(f"error making request: {exc}") from exc

        try:
            body = resp.content
        except requests.RequestException as exc:
            raise FetchError(f"error reading response body: {exc}") from exc
        finally:
            resp.close()

        if resp.status_code >= 400:
            log.debug("Upstream returned HTTP %s for site %s", resp.status_code, site_id)

        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise FetchError(f"error parsing JSON: {exc}") from exc

        try:
            return DeparturesResponse.from_json(payload)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise FetchError(f"error parsing JSON: {exc}") from exc


def parse_line_id(value: str) -> Optional[int]:
    if not _LINE_ID_RE.fullmatch(value):
        return None
    return int(value)


def filter_departures(
    departures: Sequence[Departure], line_id: Optional[str], direction: Optional[str]
) -> List[Departure]:
    wanted_line: Optional[int] = None
    if line_id:
        wanted_line = parse_line_id(line_id)
        # An unparseable line filter matches nothing.
        if wanted_line is None:
            return []

    filtered: List[Departure] = []
    for d in departures:
        if wanted_line is not None and d.line.id != wanted_line:
            continue
        if direction and d.direction != direction:
            continue
        filtered.append(d)
    return filtered


def sort_departures(departures: Sequence[Departure]) -> List[Departure]:
    return sorted(departures, key=lambda d: d.expected)


def delay_minutes(departure: Departure) -> Optional[int]:
    scheduled = departure.scheduled.strftime(CLOCK_FORMAT)
    expected = departure.expected.strftime(CLOCK_FORMAT)
    if scheduled == expected:
        return None
    return (departure.expected - departure.scheduled) // datetime.timedelta(minutes=1)


def render_departures_text(departures: Sequence[Departure], site_id: str) -> Iterator[str]:
    if not departures:
        yield f"No departures found matching the criteria for site ID: {site_id}\n"
        return

    yield f"Upcoming Departures for site ID {site_id} (sorted by expected departure time):\n"
    yield f"{DIVIDER}\n"
    for d in departures:
        yield f"Line {d.line.designation} (ID: {d.line.id}) to {d.destination}\n"
        yield f"  Direction: {d.direction}\n"
        yield f"  Scheduled: {d.scheduled.strftime(CLOCK_FORMAT)}\n"
        yield f"  Expected:  {d.expected.strftime(CLOCK_FORMAT)}\n"
        delay = delay_minutes(d)
        if delay is not None:
            yield f"  Delay:     {delay} minutes\n"
        yield f"{DIVIDER}\n"


def error_response(message: str, status: int = 500) -> Response:
    resp = make_response(f"{message}\n", status)
    resp.headers["Content-Type"] = "text/plain; charset=utf-8"
    return resp


def load_departures() -> Tuple[List[Departure], str]:
    site_id = request.args.get("siteId", "")
    if not site_id:
        raise MissingParameter("siteId")

    client: DeparturesClient = current_app.extensions["departures_client"]
    response = client.fetch(site_id)
    filtered = filter_departures(
        response.departures,
        request.args.get("lineId", ""),
        request.args.get("direction", ""),
    )
    return sort_departures(filtered), site_id


def pipeline_error(exc: Exception) -> Response:
    # Missing input keeps the 500 status of the upstream failure path.
    if isinstance(exc, MissingParameter):
        return error_response(str(exc))
    log.warning(
        "Departure fetch failed for site %s: %s", request.args.get("siteId", ""), exc
    )
    return error_response(f"Error fetching departure data: {exc}")


def departures_text() -> Response:
    try:
        departures, site_id = load_departures()
    except (MissingParameter, FetchError) as exc:
        return pipeline_error(exc)

    return Response(
        render_departures_text(departures, site_id),
        mimetype="text/plain",
    )


def departures_json() -> Response:
    try:
        departures, _ = load_departures()
    except (MissingParameter, FetchError) as exc:
        return pipeline_error(exc)

    return jsonify([d.to_json() for d in departures])


def add_common_headers(resp: Response) -> Response:
    resp.headers.setdefault("X-Content-Type-Options", "nosniff")
    resp.headers.setdefault("Referrer-Policy", "no-referrer")
    return resp


def create_app(client: Optional[DeparturesClient] = None) -> Flask:
    app = Flask(__name__)
    app.json.sort_keys = False
    app.extensions["departures_client"] = client or DeparturesClient()
    app.add_url_rule("/departures", "departures_text", departures_text, methods=["GET"])
    app.add_url_rule("/departures/json", "departures_json", departures_json, methods=["GET"])
    app.after_request(add_common_headers)
    return app


def main() -> None:
    app = create_app()
    log.info("Server is running on http://%s:%d", APP_HOST, APP_PORT)
    try:
        app.run(host=APP_HOST, port=APP_PORT, threaded=True)
    except OSError as exc:
        log.critical("Server failed to start: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
