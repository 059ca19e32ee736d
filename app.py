from __future__ import annotations

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, List, Tuple

from fastapi import FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from fastapi.staticfiles import StaticFiles
import uvicorn

from forecast_cache import (
    FORECAST_CACHE_DIR,
    FORECAST_CACHE_TTL_SECONDS,
    MARINE_CACHE_TTL_SECONDS,
    CacheRefresher,
    JsonFileCache,
    forecast_cache_key,
    read_through,
    serialize_document,
)
from marine_data import MarineFeedError, load_marine_forecast
from tide_data import TIDE_CSV_PATH, TideDataError, read_tide_data
from weather_data import FORECAST_DEFAULT_DAYS, ForecastAggregator, clamp_days

MARINE_CACHE_KEY = "marine"
FORECAST_CACHE_CONTROL = "public, max-age=1800"
MARINE_CACHE_CONTROL = "public, max-age=1800"
TIDE_CACHE_CONTROL = "public, max-age=3600"
FORECAST_PREFETCH_ENABLED = os.getenv("FORECAST_PREFETCH_ENABLED", "1").strip() == "1"
FORECAST_PREFETCH_INTERVAL_SECONDS = float(os.getenv("FORECAST_PREFETCH_INTERVAL_SECONDS", "21600"))
MARINE_PREFETCH_INTERVAL_SECONDS = float(os.getenv("MARINE_PREFETCH_INTERVAL_SECONDS", "10800"))
STATIC_DIR = Path(os.getenv("HOWE_STATIC_DIR", "static"))
SERVER_HOST = os.getenv("HOWE_HOST", "127.0.0.1")
SERVER_PORT = int(os.getenv("HOWE_PORT", "8000"))

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
LOG_FILE_MAX_BYTES = 5_000_000
LOG_FILE_BACKUPS = 3
SERVER_LOGGERS = ("uvicorn.error", "uvicorn.access")


def _log_level() -> int:
    level = logging.getLevelName(os.getenv("LOG_LEVEL", os.getenv("HOWE_LOG_LEVEL", "INFO")).strip().upper())
    return level if isinstance(level, int) else logging.INFO


def _configure_logging(
    name: str = "howe_forecast",
    log_file: str | None = None,
    server_loggers: Tuple[str, ...] = SERVER_LOGGERS,
) -> logging.Logger:
    """Attach stderr and rotating-file handlers to the ``name`` hierarchy once.

    The file handler is shared with ``server_loggers`` so uvicorn's request
    log lands next to the refresh and fetch summaries.
    """
    level = _log_level()
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    if log_file is None:
        log_file = os.getenv("HOWE_LOG_FILE", "logs/howe_forecast.log").strip()
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS)
        handlers.append(file_handler)
        for server_name in server_loggers:
            logging.getLogger(server_name).addHandler(file_handler)

    formatter = logging.Formatter(os.getenv("HOWE_LOG_FORMAT", LOG_FORMAT))
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(level)
        logger.addHandler(handler)
    logger.propagate = False
    logger.info("Logging at %s to stderr%s", logging.getLevelName(level), f" and {log_file}" if log_file else "")
    return logger


LOGGER = _configure_logging()


app = FastAPI(title="Howe Sound Forecast Proxy")


def _allowed_cors_origins() -> List[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw and os.getenv("HOWE_ALLOW_ALL_CORS", "").strip() != "1":
        return [v.strip() for v in raw.split(",") if v.strip()]
    # The charting front-end is served from arbitrary static hosts.
    return ["*"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_cors_origins(),
    allow_methods=["GET"],
    allow_headers=["*"],
)

aggregator = ForecastAggregator()
cache = JsonFileCache(FORECAST_CACHE_DIR)
refresher = CacheRefresher()
tide_csv_path = Path(TIDE_CSV_PATH)


def _query_text(value: object) -> str:
    # Endpoint functions are also called directly, where defaults are Query objects.
    if value is not None and not isinstance(value, (str, int)):
        value = getattr(value, "default", None)
    if value is None:
        return ""
    return str(value).strip()


def _json_response(payload: Dict[str, object], cache_control: str | None = None, status_code: int = 200) -> Response:
    headers = {"Cache-Control": cache_control} if cache_control else {}
    body = json.dumps(payload, indent=2, ensure_ascii=False)
    return Response(content=body, media_type="application/json", status_code=status_code, headers=headers)


def _error_response(message: str, status_code: int = 200) -> Response:
    return _json_response({"error": message}, status_code=status_code)


def _refresh_forecast_cache() -> None:
    document = aggregator.build_document(FORECAST_DEFAULT_DAYS)
    cache.write(forecast_cache_key(FORECAST_DEFAULT_DAYS), serialize_document(document))
    stats = document["fetch_stats"]
    LOGGER.info("Prefetched forecast total=%s errors=%s", stats["total"], stats["errors"])


def _refresh_marine_cache() -> None:
    document = load_marine_forecast()
    cache.write(MARINE_CACHE_KEY, serialize_document(document))
    LOGGER.info("Prefetched marine forecast sections=%s", sorted(document["sections"]))


@app.on_event("startup")
def _startup() -> None:
    LOGGER.info("App startup")
    if not FORECAST_PREFETCH_ENABLED:
        LOGGER.info("Background prefetch disabled by FORECAST_PREFETCH_ENABLED")
        return
    refresher.add_job("forecast", FORECAST_PREFETCH_INTERVAL_SECONDS, _refresh_forecast_cache)
    refresher.add_job("marine", MARINE_PREFETCH_INTERVAL_SECONDS, _refresh_marine_cache)
    refresher.start()


@app.on_event("shutdown")
def _shutdown() -> None:
    LOGGER.info("App shutdown")
    refresher.stop()


@app.get("/api/forecast")
def forecast(
    days: str | None = Query(None),
    debug: str | None = Query(None),
) -> Response:
    horizon = clamp_days(_query_text(days) or FORECAST_DEFAULT_DAYS)
    debug_mode = _query_text(debug)
    try:
        if debug_mode == "layers":
            return _json_response(aggregator.probe_layers())
        if debug_mode:
            return _json_response(aggregator.debug_probe())
        cached = read_through(
            cache,
            forecast_cache_key(horizon),
            FORECAST_CACHE_TTL_SECONDS,
            lambda: aggregator.build_document(horizon),
        )
    except Exception as exc:
        LOGGER.exception("Forecast request failed days=%s debug=%s", horizon, debug_mode or "-")
        return _error_response(str(exc) or "Forecast unavailable", status_code=500)

    LOGGER.debug("Forecast served days=%d source=%s", horizon, cached.source)
    return Response(
        content=cached.payload,
        media_type="application/json",
        headers={"Cache-Control": FORECAST_CACHE_CONTROL, "X-Cache": cached.source},
    )


@app.get("/api/marine")
def marine(debug: str | None = Query(None)) -> Response:
    debug_mode = _query_text(debug)
    try:
        if debug_mode:
            return _json_response(load_marine_forecast(debug=True))
        cached = read_through(
            cache,
            MARINE_CACHE_KEY,
            MARINE_CACHE_TTL_SECONDS,
            load_marine_forecast,
            stale_on=(MarineFeedError,),
        )
    except MarineFeedError as exc:
        LOGGER.warning("Marine feed unavailable and no cached copy: %s", exc)
        return _error_response(str(exc))
    except Exception as exc:
        LOGGER.exception("Marine request failed")
        return _error_response(str(exc) or "Marine forecast unavailable", status_code=500)

    LOGGER.debug("Marine served source=%s", cached.source)
    return Response(
        content=cached.payload,
        media_type="application/json",
        headers={"Cache-Control": MARINE_CACHE_CONTROL, "X-Cache": cached.source},
    )


@app.get("/api/tide")
def tide(
    days: str | None = Query(None),
    debug: str | None = Query(None),
) -> Response:
    horizon = clamp_days(_query_text(days) or FORECAST_DEFAULT_DAYS)
    try:
        payload = read_tide_data(tide_csv_path, days=horizon, debug=bool(_query_text(debug)))
    except TideDataError as exc:
        LOGGER.warning("Tide request failed path=%s: %s", tide_csv_path, exc)
        return _error_response(str(exc))
    except Exception as exc:
        LOGGER.exception("Tide request failed")
        return _error_response(str(exc) or "Tide data unavailable", status_code=500)
    return _json_response(payload, cache_control=TIDE_CACHE_CONTROL)


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


if STATIC_DIR.is_dir():
    app.mount("/", StaticFiles(directory=str(STATIC_DIR), html=True), name="static")


def main() -> None:
    uvicorn.run(app, host=SERVER_HOST, port=SERVER_PORT, log_level=logging.getLevelName(_log_level()).lower())


if __name__ == "__main__":
    main()
