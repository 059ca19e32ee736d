#!/usr/bin/env python3
from __future__ import annotations

import json

from weather_data import PRESSURE_LAYER_CANDIDATES, ForecastAggregator


def main() -> None:
    aggregator = ForecastAggregator()

    rows = []
    configured = tuple(var.layer for var in aggregator.variables)
    probe = aggregator.probe_layers(configured + tuple(c for c in PRESSURE_LAYER_CANDIDATES if c not in configured))
    for layer, info in probe["candidates"].items():
        rows.append(
            {
                "layer": layer,
                "configured": layer in configured,
                "status": "ok" if info["works"] else "missing",
                "parsed_value": info["parsed_value"],
            }
        )

    missing = [r for r in rows if r["configured"] and r["status"] == "missing"]
    print(f"time={probe['test_time']} location={probe['test_location']} total={len(rows)} configured_missing={len(missing)}")
    for row in rows:
        print(json.dumps(row, ensure_ascii=False))


if __name__ == "__main__":
    main()
