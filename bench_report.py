# bench_report.py

import csv
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Tuple, Union

from bench_runner import BenchmarkResult

logger = logging.getLogger("ApiBench.report")

CSV_COLUMNS = [
    ("endpoint_name", "Endpoint Name"),
    ("url", "URL"),
    ("total_requests", "Total Requests"),
    ("successful_requests", "Successful Requests"),
    ("failed_requests", "Failed Requests"),
    ("average_response_time_ms", "Avg Response Time (ms)"),
    ("min_response_time_ms", "Min Response Time (ms)"),
    ("max_response_time_ms", "Max Response Time (ms)"),
    ("requests_per_second", "Requests/Second"),
    ("error_count", "Error Count"),
]


def save_json(result: BenchmarkResult, path: Union[str, Path]) -> Path:
    out = Path(path)
    out.write_text(result.model_dump_json(by_alias=True, indent=2), encoding="utf-8")
    logger.debug(f"JSON results written to {out}")
    return out


def save_csv(result: BenchmarkResult, path: Union[str, Path]) -> Path:
    """One row per endpoint; times rounded to whole ms, throughput to 2 decimals."""
    out = Path(path)
    with out.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow([title for _, title in CSV_COLUMNS])
        for r in result.results:
            writer.writerow([
                r.name,
                r.url,
                r.total_requests,
                r.successful_requests,
                r.failed_requests,
                round(r.average_response_time),
                round(r.min_response_time),
                round(r.max_response_time),
                round(r.requests_per_second, 2),
                len(r.errors),
            ])
    logger.debug(f"CSV results written to {out}")
    return out


def save_results(result: BenchmarkResult, output_dir: Union[str, Path] = ".") -> Tuple[Path, Path]:
    """Writes benchmark-<timestamp>.json and .csv into output_dir, creating it if needed."""
    out_dir = Path(output_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S-%fZ")
    json_path = save_json(result, out_dir / f"benchmark-{stamp}.json")
    csv_path = save_csv(result, out_dir / f"benchmark-{stamp}.csv")
    logger.info(f"Results saved to: {out_dir / f'benchmark-{stamp}.{{json,csv}}'}")
    return json_path, csv_path
