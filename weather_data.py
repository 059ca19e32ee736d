from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
import json
import logging
import math
import os
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Callable, Dict, List, Tuple
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

import requests

GEOMET_URL = os.getenv("GEOMET_URL", "https://geo.weather.gc.ca/geomet")
GEOMET_REQUEST_TIMEOUT_SECONDS = float(os.getenv("GEOMET_REQUEST_TIMEOUT_SECONDS", "15"))
GEOMET_BBOX_HALF_WIDTH_DEG = 0.015
GEOMET_ERROR_MARKER = "ServiceException"
FETCH_BATCH_SIZE = int(os.getenv("FETCH_BATCH_SIZE", "20"))
FORECAST_DEFAULT_DAYS = int(os.getenv("FORECAST_DEFAULT_DAYS", "2"))
FORECAST_MIN_DAYS = 1
FORECAST_MAX_DAYS = 7
DAYTIME_FIRST_HOUR = 7
DAYTIME_LAST_HOUR = 21
REFERENCE_TIMEZONE = os.getenv("FORECAST_TIMEZONE", "America/Vancouver")
MODEL_CYCLE_HOURS = (0, 6, 12, 18)
MODEL_PUBLICATION_LAG_HOURS = 5
REQUEST_HEADERS = {"Accept": "application/json, text/plain"}
PRESSURE_LAYER_CANDIDATES = (
    "HRDPS.CONTINENTAL_PRMSL",
    "HRDPS.CONTINENTAL_PN",
    "HRDPS.CONTINENTAL_PRES",
    "HRDPS.CONTINENTAL_PRES-SFC",
    "HRDPS.CONTINENTAL_PRES_SFC",
    "HRDPS.CONTINENTAL.PRES_MSL",
    "HRDPS.CONTINENTAL_MSL",
    "HRDPS.CONTINENTAL_MSLP",
    "HRDPS.CONTINENTAL_PN-SL",
    "HRDPS.CONTINENTAL_PRES_ISBL_1015",
)
DEBUG_LOCATION_ID = "squamish"
DEBUG_GRID_INDEX = 7
LOGGER = logging.getLogger("howe_forecast.weather_data")

_VALUE_PATTERN = re.compile(r"[Vv]alue[:\s=]+([+-]?\d+\.?\d*(?:[eE][+-]?\d+)?)")
_BARE_NUMBER_LINE = re.compile(r"^\s*([+-]?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?)\s*$", re.MULTILINE)
_NUMERIC_STRING = re.compile(r"^\s*[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?\s*$")


class ForecastProxyError(RuntimeError):
    """Base class for failures surfaced by the forecast proxy."""


class FetchFailure(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    UPSTREAM_ERROR = "upstream_error"
    UNPARSEABLE = "unparseable"


@dataclass(frozen=True)
class Location:
    location_id: str
    display_name: str
    lat: float
    lon: float


@dataclass(frozen=True)
class Variable:
    variable_id: str
    layer: str
    unit: str


@dataclass(frozen=True)
class TimeGridEntry:
    local_date: date
    local_hour: int
    utc_instant: datetime

    @property
    def utc_iso(self) -> str:
        return self.utc_instant.strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(frozen=True)
class FetchResult:
    """Outcome of one GetFeatureInfo request: a value or the reason there is none."""

    value: float | None
    failure: FetchFailure | None = None
    url: str = ""
    raw: str | None = None

    @property
    def ok(self) -> bool:
        return self.value is not None


LOCATIONS: Tuple[Location, ...] = (
    Location("pamrocks", "Pam Rocks", 49.4883, -123.2983),
    Location("squamish", "Squamish", 49.7016, -123.1558),
    Location("whistler", "Whistler", 50.1163, -122.9574),
    Location("lillooet", "Lillooet", 50.6868, -121.9422),
)

VARIABLES: Tuple[Variable, ...] = (
    Variable("pressure", "HRDPS.CONTINENTAL_PN", "hPa"),
    Variable("temperature", "HRDPS.CONTINENTAL_TT", "°C"),
    Variable("cloud", "HRDPS.CONTINENTAL_NT", "%"),
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def clamp_days(value: object, default: int = FORECAST_DEFAULT_DAYS) -> int:
    try:
        days = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return max(FORECAST_MIN_DAYS, min(FORECAST_MAX_DAYS, days))


def latest_model_run_start(now: datetime) -> datetime:
    """Start of the newest HRDPS cycle expected to be published at ``now``.

    Cycles start at 00/06/12/18 UTC and appear roughly five hours later, so
    23 UTC selects 18, 17 selects 12, 11 selects 06 and 5 selects 00. Before
    05 UTC the previous day's 18 UTC run is the latest one available.
    """
    now_utc = now.astimezone(timezone.utc)
    midnight = now_utc.replace(hour=0, minute=0, second=0, microsecond=0)
    for cycle_hour in reversed(MODEL_CYCLE_HOURS):
        if now_utc.hour >= cycle_hour + MODEL_PUBLICATION_LAG_HOURS:
            return midnight + timedelta(hours=cycle_hour)
    return midnight - timedelta(days=1) + timedelta(hours=MODEL_CYCLE_HOURS[-1])


def resolve_model_run(now: datetime) -> str:
    return latest_model_run_start(now).strftime("%H")


def build_time_grid(
    days: int,
    tz: ZoneInfo,
    now: datetime,
    per_day_offset: bool = False,
) -> List[TimeGridEntry]:
    """Expand the daytime window (07-21 local) over ``days`` days starting today.

    By default the UTC offset is taken from ``now`` and reused for every day in
    the horizon. A horizon spanning a DST transition is then one hour off on
    the far side; ``per_day_offset`` converts each local hour exactly instead.
    """
    local_now = now.astimezone(tz)
    today = local_now.date()
    offset_hours = 7 if local_now.dst() else 8

    entries: List[TimeGridEntry] = []
    for day_offset in range(days):
        local_date = today + timedelta(days=day_offset)
        for local_hour in range(DAYTIME_FIRST_HOUR, DAYTIME_LAST_HOUR + 1):
            if per_day_offset:
                local_dt = datetime.combine(local_date, time(local_hour), tzinfo=tz)
                utc_instant = local_dt.astimezone(timezone.utc)
            else:
                utc_hour = local_hour + offset_hours
                utc_date = local_date
                if utc_hour >= 24:
                    utc_hour -= 24
                    utc_date = local_date + timedelta(days=1)
                utc_instant = datetime.combine(utc_date, time(utc_hour), tzinfo=timezone.utc)
            entries.append(TimeGridEntry(local_date, local_hour, utc_instant))
    return entries


def build_wms_url(layer: str, lat: float, lon: float, utc_time: str, base_url: str = GEOMET_URL) -> str:
    # WMS 1.1.1 with EPSG:4326 takes the bbox in lon,lat order.
    delta = GEOMET_BBOX_HALF_WIDTH_DEG
    bbox = ",".join(str(round(v, 6)) for v in (lon - delta, lat - delta, lon + delta, lat + delta))
    params = {
        "SERVICE": "WMS",
        "VERSION": "1.1.1",
        "REQUEST": "GetFeatureInfo",
        "LAYERS": layer,
        "QUERY_LAYERS": layer,
        "INFO_FORMAT": "application/json",
        "SRS": "EPSG:4326",
        "BBOX": bbox,
        "WIDTH": "3",
        "HEIGHT": "3",
        "X": "1",
        "Y": "1",
        "TIME": utc_time,
    }
    return f"{base_url}?{urlencode(params)}"


def _finite(value: object) -> float | None:
    try:
        number = float(value)
    except (OverflowError, TypeError, ValueError):
        return None
    # NaN and Infinity survive json.loads and float("1e999"); neither is a reading.
    return number if math.isfinite(number) else None


def _as_number(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return _finite(value)
    if isinstance(value, str) and _NUMERIC_STRING.match(value):
        return _finite(value)
    return None


def parse_geomet_response(raw: str | None) -> float | None:
    """Extract the sampled value from a GeoMet GetFeatureInfo body.

    TT/NT layers report ``properties.value``; contour-rendered layers such as
    PN report ``properties.pixel``. Anything else falls back to the first
    numeric property, and non-JSON bodies are scanned as plain text.
    """
    if not raw or GEOMET_ERROR_MARKER in raw:
        return None

    try:
        data = json.loads(raw)
    except ValueError:
        for pattern in (_VALUE_PATTERN, _BARE_NUMBER_LINE):
            match = pattern.search(raw)
            if match:
                return _finite(match.group(1))
        return None

    if not isinstance(data, dict):
        return None
    features = data.get("features")
    if not isinstance(features, list) or not features or not isinstance(features[0], dict):
        return None
    props = features[0].get("properties")
    if not isinstance(props, dict):
        return None

    for key in ("value", "pixel"):
        number = _as_number(props.get(key))
        if number is not None:
            return number
    for candidate in props.values():
        number = _as_number(candidate)
        if number is not None:
            return number
    return None


def fetch_point_value(
    layer: str,
    lat: float,
    lon: float,
    utc_time: str,
    timeout: float = GEOMET_REQUEST_TIMEOUT_SECONDS,
    base_url: str = GEOMET_URL,
    http_get: Callable[..., requests.Response] | None = None,
) -> FetchResult:
    url = build_wms_url(layer, lat, lon, utc_time, base_url=base_url)
    getter = http_get or requests.get
    try:
        response = getter(url, headers=REQUEST_HEADERS, timeout=timeout)
    except requests.Timeout:
        return FetchResult(None, FetchFailure.TIMEOUT, url)
    except requests.RequestException as exc:
        LOGGER.debug("GeoMet request failed layer=%s time=%s: %s", layer, utc_time, exc)
        return FetchResult(None, FetchFailure.NETWORK, url)

    raw = response.text
    if not 200 <= response.status_code < 300:
        return FetchResult(None, FetchFailure.HTTP_STATUS, url, raw)
    if GEOMET_ERROR_MARKER in raw:
        return FetchResult(None, FetchFailure.UPSTREAM_ERROR, url, raw)
    value = parse_geomet_response(raw)
    if value is None:
        return FetchResult(None, FetchFailure.UNPARSEABLE, url, raw)
    return FetchResult(value, None, url, raw)


def round_half_up(value: float, places: int) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def normalize_value(variable_id: str, raw: float) -> float | int:
    """Convert a raw GeoMet sample to its display unit.

    The thresholds reconcile the unit conventions GeoMet has been seen to use
    (Pa vs hPa, K vs degC, fraction vs percent); they are policy, not physics.
    """
    if variable_id == "pressure":
        return round_half_up(raw / 100.0 if raw > 10000 else raw, 1)
    if variable_id == "temperature":
        return round_half_up(raw - 273.15 if raw > 100 else raw, 1)
    if variable_id == "cloud":
        return int(round_half_up(raw * 100.0 if raw <= 1.0 else raw, 0))
    return raw


@dataclass(frozen=True)
class _FetchTask:
    location: Location
    variable: Variable
    grid_index: int
    entry: TimeGridEntry


class ForecastAggregator:
    """HRDPS point-forecast pipeline for the fixed Howe Sound locations."""

    def __init__(
        self,
        locations: Tuple[Location, ...] = LOCATIONS,
        variables: Tuple[Variable, ...] = VARIABLES,
        tz_name: str = REFERENCE_TIMEZONE,
        fetch: Callable[..., FetchResult] = fetch_point_value,
        batch_size: int = FETCH_BATCH_SIZE,
        clock: Callable[[], datetime] = utc_now,
        per_day_offset: bool = False,
    ) -> None:
        self._locations = tuple(locations)
        self._variables = tuple(variables)
        self._tz = ZoneInfo(tz_name)
        self._fetch = fetch
        self._batch_size = max(1, int(batch_size))
        self._clock = clock
        self._per_day_offset = per_day_offset

    @property
    def locations(self) -> Tuple[Location, ...]:
        return self._locations

    @property
    def variables(self) -> Tuple[Variable, ...]:
        return self._variables

    def time_grid(self, days: int) -> List[TimeGridEntry]:
        return build_time_grid(days, self._tz, self._clock(), per_day_offset=self._per_day_offset)

    def build_document(self, days: int = FORECAST_DEFAULT_DAYS) -> Dict[str, object]:
        now = self._clock()
        model_run = resolve_model_run(now)
        grid = self.time_grid(days)
        tasks = [
            _FetchTask(location, variable, index, entry)
            for location in self._locations
            for variable in self._variables
            for index, entry in enumerate(grid)
        ]

        # Every slot exists before any request goes out; results fill them by identity.
        slots: Dict[str, Dict[str, List[Dict[str, object]]]] = {
            location.location_id: {
                variable.variable_id: [
                    {"hour": entry.local_hour, "value": None, "date": entry.local_date.isoformat()}
                    for entry in grid
                ]
                for variable in self._variables
            }
            for location in self._locations
        }

        errors = 0
        failure_counts: Dict[str, int] = {}
        with ThreadPoolExecutor(max_workers=self._batch_size, thread_name_prefix="geomet-fetch") as executor:
            for start in range(0, len(tasks), self._batch_size):
                batch = tasks[start : start + self._batch_size]
                for task, result in zip(batch, executor.map(self._run_task, batch)):
                    slot = slots[task.location.location_id][task.variable.variable_id][task.grid_index]
                    value = None if result.value is None else _finite(result.value)
                    if value is None:
                        errors += 1
                        reason = result.failure.value if result.failure else FetchFailure.UNPARSEABLE.value
                        failure_counts[reason] = failure_counts.get(reason, 0) + 1
                        continue
                    slot["value"] = normalize_value(task.variable.variable_id, value)

        LOGGER.info(
            "Forecast pass model_run=%s days=%d total=%d errors=%d failures=%s",
            model_run,
            days,
            len(tasks),
            errors,
            failure_counts or "none",
        )
        dates: List[str] = []
        for entry in grid:
            iso = entry.local_date.isoformat()
            if iso not in dates:
                dates.append(iso)
        return {
            "forecast": slots,
            "dates": dates,
            "model_run": model_run,
            "generated_at": self._clock().replace(microsecond=0).isoformat(),
            "locations": self._locations_payload(),
            "fetch_stats": {"total": len(tasks), "errors": errors},
        }

    def _run_task(self, task: _FetchTask) -> FetchResult:
        try:
            return self._fetch(task.variable.layer, task.location.lat, task.location.lon, task.entry.utc_iso)
        except Exception:
            LOGGER.exception(
                "Point fetch crashed loc=%s var=%s time=%s",
                task.location.location_id,
                task.variable.variable_id,
                task.entry.utc_iso,
            )
            return FetchResult(None, FetchFailure.NETWORK)

    def _locations_payload(self) -> Dict[str, Dict[str, object]]:
        return {
            location.location_id: {"name": location.display_name, "lat": location.lat, "lon": location.lon}
            for location in self._locations
        }

    def _debug_target(self) -> Tuple[Location, TimeGridEntry]:
        location = next(
            (loc for loc in self._locations if loc.location_id == DEBUG_LOCATION_ID),
            self._locations[0],
        )
        grid = self.time_grid(1)
        entry = grid[DEBUG_GRID_INDEX] if len(grid) > DEBUG_GRID_INDEX else grid[0]
        return location, entry

    def debug_probe(self) -> Dict[str, object]:
        """One raw request per variable at a single location, for troubleshooting."""
        location, entry = self._debug_target()
        requests_info: Dict[str, object] = {}
        for variable in self._variables:
            result = self._fetch(variable.layer, location.lat, location.lon, entry.utc_iso)
            requests_info[variable.variable_id] = {
                "url": result.url,
                "layer": variable.layer,
                "raw_response": result.raw if result.raw is not None else "REQUEST FAILED",
                "raw_length": len(result.raw) if result.raw is not None else 0,
                "parsed_value": result.value,
                "failure": result.failure.value if result.failure else None,
            }
        return {
            "model_run": resolve_model_run(self._clock()),
            "test_time_utc": entry.utc_iso,
            "test_time_local": f"{entry.local_hour}:00 {self._tz.key}",
            "test_location": f"{location.display_name} ({location.lat}, {location.lon})",
            "requests": requests_info,
        }

    def probe_layers(self, candidates: Tuple[str, ...] = PRESSURE_LAYER_CANDIDATES) -> Dict[str, object]:
        location, entry = self._debug_target()
        results: Dict[str, object] = {}
        for layer in candidates:
            result = self._fetch(layer, location.lat, location.lon, entry.utc_iso)
            results[layer] = {
                "works": result.ok,
                "parsed_value": result.value,
                "response_snippet": result.raw[:600] if result.raw is not None else "REQUEST FAILED",
            }
        return {
            "test_time": entry.utc_iso,
            "test_location": location.display_name,
            "candidates": results,
        }
