import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from bench_config import ConfigValidationError, load_config, write_example_config
from bench_observer import LoggingObserver
from bench_report import save_results
from bench_runner import BenchRunner, BenchmarkResult, logger


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="restbench", description="Benchmark REST APIs with request chaining")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Run a benchmark from a configuration file")
    run.add_argument("-c", "--config", default="benchmark.json", help="Configuration file path (JSON or YAML)")
    run.add_argument("-o", "--output", default=".", help="Output directory for results (used with --save)")
    run.add_argument("--save", action="store_true", help="Save JSON and CSV results")
    run.add_argument(
        "--no-progress",
        dest="progress",
        action="store_false",
        help="Do not log per-request progress",
    )
    run.add_argument(
        "-d", "--delay",
        dest="delay_ms",
        type=int,
        default=0,
        help="Minimum delay between request starts in milliseconds",
    )
    run.add_argument("--log-level", default="INFO", help="Logging level (DEBUG, INFO, WARNING)")

    example = sub.add_parser("example", help="Generate an example configuration file")
    example.add_argument("-o", "--output", default="benchmark.json", help="Output file path")
    return parser.parse_args(argv)


def print_summary(result: BenchmarkResult) -> None:
    summary = result.summary
    print("\nBenchmark Summary:")
    print(f"   Total Requests: {summary.total_requests}")
    print(f"   Successful: {summary.total_successful}")
    print(f"   Failed: {summary.total_failed}")
    print(f"   Total Duration: {summary.total_duration / 1000:.2f}s")
    print(f"   Requests/Second: {summary.overall_requests_per_second:.2f}")
    print(f"   Avg. Response Time: {summary.average_response_time:.2f}ms")


def run_command(args: argparse.Namespace) -> int:
    level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        config = load_config(args.config)
    except ConfigValidationError as e:
        logger.error(f"Configuration validation failed: {e}")
        logger.info('Use "restbench example" to generate a valid configuration template.')
        return 1

    logger.info(f"Configuration loaded: {len(config.endpoints)} endpoints")
    if args.delay_ms > 0:
        logger.info(f"Adding {args.delay_ms}ms delay between requests")

    runner = BenchRunner(request_delay_ms=args.delay_ms, debug=level == logging.DEBUG)
    if level > logging.DEBUG:
        runner.configure_logging(False)
        logger.setLevel(level)
    observer = LoggingObserver(request_progress=args.progress)

    try:
        result = asyncio.run(runner.run(config, observer))
    except KeyboardInterrupt:
        logger.warning("Benchmark interrupted.")
        return 1
    except Exception as e:
        logger.critical(f"Error running benchmark: {e}", exc_info=True)
        return 1

    if args.save:
        save_results(result, args.output)
    else:
        logger.info("Results not saved (use --save to save results)")

    print_summary(result)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if args.command == "run":
        return run_command(args)
    if args.command == "example":
        out = write_example_config(args.output)
        print(f"Example configuration saved to: {out}")
        return 0
    parse_args(["--help"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
