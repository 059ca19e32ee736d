from __future__ import annotations

import csv
import logging
import math
import os
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List
from zoneinfo import ZoneInfo

from weather_data import (
    DAYTIME_FIRST_HOUR,
    DAYTIME_LAST_HOUR,
    FORECAST_DEFAULT_DAYS,
    REFERENCE_TIMEZONE,
    ForecastProxyError,
    round_half_up,
    utc_now,
)

TIDE_CSV_PATH = os.getenv("TIDE_CSV_PATH", "07811_data.csv")
TIDE_STATION = "Squamish Inner (07811)"
TIDE_UNIT = "m"
TIDE_HEADER_ROWS = 7
LOGGER = logging.getLogger("howe_forecast.tide")


class TideDataError(ForecastProxyError):
    """Raised when the tide prediction file is missing or unreadable."""


def _in_daytime_window(hour: int, minute: int) -> bool:
    if hour < DAYTIME_FIRST_HOUR or hour > DAYTIME_LAST_HOUR:
        return False
    return not (hour == DAYTIME_LAST_HOUR and minute > 0)


def read_tide_data(
    csv_path: Path | str = TIDE_CSV_PATH,
    days: int = FORECAST_DEFAULT_DAYS,
    tz_name: str = REFERENCE_TIMEZONE,
    clock: Callable[[], datetime] = utc_now,
    debug: bool = False,
) -> Dict[str, object]:
    """Daytime tide heights for today and the following ``days - 1`` local days.

    The CHS export has a fixed preamble followed by ``YYYY/MM/DD HH:MM,value``
    rows; only rows between 07:00 and 21:00 inclusive are returned.
    """
    path = Path(csv_path)
    today = clock().astimezone(ZoneInfo(tz_name)).date()
    requested_dates = [(today + timedelta(days=d)).strftime("%Y/%m/%d") for d in range(days)]
    wanted = set(requested_dates)

    if not path.exists():
        raise TideDataError("Tide data file not found")

    data: List[Dict[str, object]] = []
    matched_dates: List[str] = []
    try:
        with path.open(newline="", encoding="utf-8-sig") as handle:
            reader = csv.reader(handle)
            for line_no, row in enumerate(reader):
                if line_no < TIDE_HEADER_ROWS or len(row) < 2:
                    continue
                stamp = row[0].strip()
                row_date = stamp[:10]
                if row_date not in wanted:
                    continue
                try:
                    hour = int(stamp[11:13])
                    minute = int(stamp[14:16])
                    value = float(row[1].strip())
                    if not math.isfinite(value):
                        raise ValueError(row[1])
                except ValueError:
                    LOGGER.debug("Skipping malformed tide row line=%d", line_no + 1)
                    continue
                if not _in_daytime_window(hour, minute):
                    continue
                iso_date = row_date.replace("/", "-")
                if iso_date not in matched_dates:
                    matched_dates.append(iso_date)
                data.append(
                    {
                        "time": f"{hour:02d}:{minute:02d}",
                        "hour": hour + minute / 60,
                        "value": round_half_up(value, 2),
                        "date": iso_date,
                    }
                )
    except (OSError, UnicodeDecodeError, csv.Error) as exc:
        raise TideDataError("Could not open tide data file") from exc

    payload: Dict[str, object] = {
        "station": TIDE_STATION,
        "unit": TIDE_UNIT,
        "dates": matched_dates,
        "data": data,
        "generated_at": clock().replace(microsecond=0).isoformat(),
    }
    if debug:
        payload["debug"] = {
            "csv_file": str(path),
            "file_exists": True,
            "requested_dates": requested_dates,
            "total_points": len(data),
        }
    return payload
