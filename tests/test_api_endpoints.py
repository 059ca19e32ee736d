import json
import logging
import os
import tempfile
import unittest
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest.mock import patch
from zoneinfo import ZoneInfo

try:
    import app as app_module
    from forecast_cache import JsonFileCache
    from marine_data import MarineFeedError
except ModuleNotFoundError:
    app_module = None
    JsonFileCache = None
    MarineFeedError = None


def _document(days):
    return {
        "forecast": {"squamish": {"pressure": [{"hour": 7, "value": 1013.3, "date": "2026-07-15"}]}},
        "dates": ["2026-07-15"],
        "model_run": "12",
        "generated_at": "2026-07-15T18:00:00+00:00",
        "locations": {"squamish": {"name": "Squamish", "lat": 49.7016, "lon": -123.1558}},
        "fetch_stats": {"total": 180 * days, "errors": 3},
    }


class _FakeAggregator:
    def __init__(self) -> None:
        self.build_calls = []
        self.probe_calls = 0

    def build_document(self, days=2):
        self.build_calls.append(days)
        return _document(days)

    def debug_probe(self):
        self.probe_calls += 1
        return {"model_run": "12", "requests": {}}

    def probe_layers(self):
        self.probe_calls += 1
        return {"candidates": {"HRDPS.CONTINENTAL_PN": {"works": True}}}


class _BrokenAggregator(_FakeAggregator):
    def build_document(self, days=2):
        raise RuntimeError("GeoMet pipeline exploded")


@unittest.skipIf(app_module is None, "fastapi dependencies not available")
class ApiEndpointTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.cache = JsonFileCache(Path(self._tmp.name) / "cache")
        patcher = patch.object(app_module, "cache", self.cache)
        patcher.start()
        self.addCleanup(patcher.stop)

    @staticmethod
    def _body(response):
        return json.loads(response.body)

    def test_forecast_builds_once_then_serves_cache(self):
        fake = _FakeAggregator()
        with patch.object(app_module, "aggregator", fake):
            first = app_module.forecast(days=None, debug=None)
            second = app_module.forecast(days=None, debug=None)

        self.assertEqual(fake.build_calls, [2])
        self.assertEqual(first.headers["x-cache"], "rebuilt")
        self.assertEqual(second.headers["x-cache"], "fresh")
        self.assertEqual(first.body, second.body)
        payload = self._body(second)
        for field in ("forecast", "dates", "model_run", "generated_at", "locations", "fetch_stats"):
            self.assertIn(field, payload)
        self.assertEqual(second.headers["cache-control"], "public, max-age=1800")

    def test_forecast_days_are_clamped_and_cached_per_horizon(self):
        fake = _FakeAggregator()
        with patch.object(app_module, "aggregator", fake):
            app_module.forecast(days="12", debug=None)
            app_module.forecast(days="0", debug=None)
            app_module.forecast(days="junk", debug=None)

        self.assertEqual(fake.build_calls, [7, 1, 2])
        self.assertIsNotNone(self.cache.read("forecast_7d"))
        self.assertIsNotNone(self.cache.read("forecast_1d"))

    def test_forecast_pipeline_failure_returns_error_document(self):
        with patch.object(app_module, "aggregator", _BrokenAggregator()):
            response = app_module.forecast(days=None, debug=None)
        self.assertEqual(response.status_code, 500)
        self.assertEqual(self._body(response), {"error": "GeoMet pipeline exploded"})

    def test_forecast_debug_modes_bypass_cache(self):
        fake = _FakeAggregator()
        with patch.object(app_module, "aggregator", fake):
            layers = app_module.forecast(days=None, debug="layers")
            probe = app_module.forecast(days=None, debug="1")

        self.assertIn("candidates", self._body(layers))
        self.assertEqual(self._body(probe)["model_run"], "12")
        self.assertEqual(fake.probe_calls, 2)
        self.assertEqual(fake.build_calls, [])
        self.assertFalse(self.cache.cache_dir.exists())

    def test_marine_serves_stale_cache_when_feed_unavailable(self):
        self.cache.write("marine", '{"title": "cached marine"}')

        def unavailable(*args, **kwargs):
            raise MarineFeedError("Failed to fetch marine forecast feed")

        with patch.object(app_module, "MARINE_CACHE_TTL_SECONDS", 0), patch.object(
            app_module, "load_marine_forecast", unavailable
        ):
            response = app_module.marine(debug=None)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.headers["x-cache"], "stale")
        self.assertEqual(response.body, b'{"title": "cached marine"}')
        self.assertEqual(self.cache.read("marine").payload, '{"title": "cached marine"}')

    def test_marine_without_cache_returns_error_document(self):
        def unavailable(*args, **kwargs):
            raise MarineFeedError("Failed to fetch marine forecast feed")

        with patch.object(app_module, "load_marine_forecast", unavailable):
            response = app_module.marine(debug=None)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self._body(response), {"error": "Failed to fetch marine forecast feed"})

    def test_marine_refresh_is_cached(self):
        calls = []

        def loader(*args, **kwargs):
            calls.append(kwargs)
            return {"title": "Howe Sound", "updated": "", "sections": {}, "generated_at": "2026-07-15T18:00:00+00:00"}

        with patch.object(app_module, "load_marine_forecast", loader):
            app_module.marine(debug=None)
            app_module.marine(debug=None)
            app_module.marine(debug="1")

        self.assertEqual(calls, [{}, {"debug": True}])
        self.assertEqual(self.cache.read("marine").document()["title"], "Howe Sound")

    def test_tide_missing_file_returns_error_document(self):
        with patch.object(app_module, "tide_csv_path", Path(self._tmp.name) / "missing.csv"):
            response = app_module.tide(days=None, debug=None)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(self._body(response), {"error": "Tide data file not found"})

    def test_tide_returns_todays_daytime_rows(self):
        today = datetime.now(timezone.utc).astimezone(ZoneInfo("America/Vancouver")).date()
        csv_path = Path(self._tmp.name) / "tide.csv"
        header = "".join(f"header {i}\n" for i in range(7))
        stamp = today.strftime("%Y/%m/%d")
        csv_path.write_text(header + f"{stamp} 06:59,0.50\n{stamp} 14:30,1.23\n", encoding="utf-8")

        with patch.object(app_module, "tide_csv_path", csv_path):
            response = app_module.tide(days="1", debug=None)

        payload = self._body(response)
        self.assertEqual(payload["dates"], [today.isoformat()])
        self.assertEqual(payload["data"], [{"time": "14:30", "hour": 14.5, "value": 1.23, "date": today.isoformat()}])
        self.assertEqual(response.headers["cache-control"], "public, max-age=3600")

    def test_routes_through_http_client(self):
        from fastapi.testclient import TestClient

        client = TestClient(app_module.app)
        self.assertEqual(client.get("/health").json(), {"status": "ok"})
        with patch.object(app_module, "tide_csv_path", Path(self._tmp.name) / "missing.csv"):
            response = client.get("/api/tide", params={"days": "abc"})
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"error": "Tide data file not found"})

    def test_logging_configured_once_with_shared_rotating_file(self):
        log_file = Path(self._tmp.name) / "logs" / "howe.log"
        server = logging.getLogger("howe_forecast_test.server")
        with patch.dict(os.environ, {"HOWE_LOG_LEVEL": "INFO"}):
            os.environ.pop("LOG_LEVEL", None)
            os.environ.pop("HOWE_LOG_FORMAT", None)
            logger = app_module._configure_logging(
                "howe_forecast_test", log_file=str(log_file), server_loggers=(server.name,)
            )
            again = app_module._configure_logging("howe_forecast_test", log_file=str(log_file))

        def detach():
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                server.removeHandler(handler)
                handler.close()

        self.addCleanup(detach)
        self.assertIs(again, logger)
        self.assertEqual(len(logger.handlers), 2)
        self.assertFalse(logger.propagate)
        file_handlers = [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]
        self.assertEqual(len(file_handlers), 1)
        self.assertEqual(server.handlers, file_handlers)

        logger.getChild("cache").warning("Refresh failed")
        file_handlers[0].flush()
        self.assertIn("WARNING [howe_forecast_test.cache] Refresh failed", log_file.read_text(encoding="utf-8"))

    def test_main_serves_app_with_uvicorn(self):
        with patch.object(app_module.uvicorn, "run") as run:
            app_module.main()
        run.assert_called_once()
        args, kwargs = run.call_args
        self.assertIs(args[0], app_module.app)
        self.assertEqual((kwargs["host"], kwargs["port"]), (app_module.SERVER_HOST, app_module.SERVER_PORT))


if __name__ == "__main__":
    unittest.main()
