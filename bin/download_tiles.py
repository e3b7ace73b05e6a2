#!/usr/bin/env python3
"""
tileman - download a sequence of weather radar tiles

Fetches the radar images for a time range from the kachelmannwetter.com
image cache and stores them in a fresh output directory, either under
their remote names (prefixed with the sequence index) or as a numbered
frame sequence ready for a video encoder.

Key Points:
- Tile names are generated from the time range (tile_sequence.py)
- One fetch task per tile on a thread pool
- TileLimiter caps the number of requests in flight
- Failed tiles are reported and skipped; there are no retries

Usage:
    python download_tiles.py --region bavaria --res 10 --last_hours 3 --frames
    python download_tiles.py --config files/config/tileman.json
"""

from __future__ import annotations

import argparse
import contextlib
import dataclasses
import json
import os
import sys
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence, Tuple

from tqdm import tqdm

from single_download import download_via_http_get, save_tile, tile_filename
from tile_errors import ConfigError, FatalError, SetupError
from tile_sequence import RadarSource, SequenceItem, generate, lookup_region, validate_resolution


# (url, timeout) -> (content, status_code, error)
Fetcher = Callable[[str, Optional[float]], Tuple[Optional[bytes], Optional[int], Optional[str]]]

DATE_FORMAT = "%Y-%m-%d"
TIME_FORMAT = "%H:%M"


def _monotonic() -> float:
    return time.monotonic()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class Config:
    """Main application configuration."""
    output_folder: str = "./tileman_out"
    region: str = "germany"
    resolution: int = 5
    start_date: Optional[str] = None
    start_time: Optional[str] = None
    end_date: Optional[str] = None
    end_time: Optional[str] = None
    last_hours: Optional[float] = None
    frame_naming: bool = False
    max_requests: int = 8
    timeout_sec: Optional[float] = None
    create_overview: bool = False
    show_progress: bool = True


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="tileman - download a sequence of weather radar images from kachelmannwetter.com",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
All dates and times are UTC.

Examples:
  python download_tiles.py --start_time 12:00 --end_time 14:00 --dir radar_noon
  python download_tiles.py --region bavaria --res 10 --last_hours 3 --frames
""",
    )
    p.add_argument("--config", type=str, help="Path to JSON config file")
    p.add_argument("--start_date", type=str, default=None,
                   help='Start date in the form "2006-01-20", default is today.')
    p.add_argument("--start_time", type=str, default=None,
                   help='Start time in the form "15:04", default is 2 hours ago.')
    p.add_argument("--end_date", type=str, default=None,
                   help='End date in the form "2006-01-20", default is today.')
    p.add_argument("--end_time", type=str, default=None,
                   help='End time in the form "15:04", default is 15 minutes ago.')
    p.add_argument("--last_hours", type=float, default=None,
                   help="Download the N hours before the end time (overrides the start).")
    p.add_argument("--dir", dest="output_folder", type=str, default="./tileman_out",
                   help="Directory for saving the results (must not exist).")
    p.add_argument("--region", type=str, default="germany", help="Which region map to use?")
    p.add_argument("--res", dest="resolution", type=int, default=5,
                   help="Time resolution. Use a multiple of 5, minimum 5!")
    p.add_argument("--frames", dest="frame_naming", action="store_true",
                   help="Name files 00000.png, 00001.png, ... for frame encoders.")
    p.add_argument("--max_requests", type=int, default=8, help="Maximum concurrent requests.")
    p.add_argument("--timeout", dest="timeout_sec", type=float, default=None,
                   help="Per-request timeout in seconds (default: none).")
    p.add_argument("--overview", dest="create_overview", action="store_true",
                   help="Write <dir>_overview.json after the run.")
    p.add_argument("--no_progress", action="store_true", help="Disable the progress bar.")
    return p


def parse_args(argv: Optional[Sequence[str]] = None) -> Config:
    """Parse command line arguments or JSON config file."""
    args = _build_parser().parse_args(argv)

    values = {f.name: getattr(args, f.name) for f in dataclasses.fields(Config) if f.name != "show_progress"}
    values["show_progress"] = not args.no_progress

    # Load from JSON if provided; file values win over command line defaults
    if args.config:
        try:
            with open(args.config) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config file {args.config}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {args.config} must hold a JSON object")
        unknown = sorted(set(data) - set(values))
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(unknown)}")
        values.update(data)

    return Config(**values)


# (field, accepted types, may be None)
_CONFIG_TYPES = (
    ("output_folder", (str,), False),
    ("region", (str,), False),
    ("resolution", (int,), False),
    ("start_date", (str,), True),
    ("start_time", (str,), True),
    ("end_date", (str,), True),
    ("end_time", (str,), True),
    ("last_hours", (int, float), True),
    ("frame_naming", (bool,), False),
    ("max_requests", (int,), False),
    ("timeout_sec", (int, float), True),
    ("create_overview", (bool,), False),
    ("show_progress", (bool,), False),
)


def validate_config(cfg: Config, source: RadarSource) -> int:
    """
    Check every configuration value that can fail before touching the network.

    Returns:
        The numeric region id for cfg.region

    Raises:
        ConfigError: On the first invalid value
    """
    for name, expected, optional in _CONFIG_TYPES:
        value = getattr(cfg, name)
        if value is None and optional:
            continue
        # bool is an int subclass; only the toggles accept it
        if isinstance(value, bool) and bool not in expected:
            raise ConfigError(f"{name} has the wrong type: {value!r}")
        if not isinstance(value, expected):
            raise ConfigError(f"{name} has the wrong type: {value!r}")

    validate_resolution(cfg.resolution)
    region_id = lookup_region(cfg.region, source.regions)
    if isinstance(cfg.max_requests, bool) or not isinstance(cfg.max_requests, int) or cfg.max_requests < 1:
        raise ConfigError(f"max_requests must be a positive integer, got {cfg.max_requests!r}")
    if cfg.timeout_sec is not None and cfg.timeout_sec <= 0:
        raise ConfigError(f"timeout must be positive, got {cfg.timeout_sec}")
    if cfg.last_hours is not None and cfg.last_hours <= 0:
        raise ConfigError(f"last_hours must be positive, got {cfg.last_hours}")
    return region_id


def _parse_utc(date_str: str, time_str: str) -> datetime:
    try:
        ts = datetime.strptime(f"{date_str} {time_str}", f"{DATE_FORMAT} {TIME_FORMAT}")
    except ValueError as e:
        raise ConfigError(f"Cannot parse date/time {date_str!r} {time_str!r}: {e}") from e
    return ts.replace(tzinfo=timezone.utc)


def build_time_range(cfg: Config, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    Resolve the configured time range to a pair of UTC datetimes.

    Missing date or time parts fall back to the defaults (start two hours
    ago, end 15 minutes ago). With last_hours set the start is always
    end - last_hours.
    """
    if now is None:
        now = _utcnow()
    default_start = now - timedelta(hours=2)
    default_end = now - timedelta(minutes=15)

    end = _parse_utc(
        cfg.end_date or default_end.strftime(DATE_FORMAT),
        cfg.end_time or default_end.strftime(TIME_FORMAT),
    )
    if cfg.last_hours is not None:
        return end - timedelta(hours=cfg.last_hours), end

    start = _parse_utc(
        cfg.start_date or default_start.strftime(DATE_FORMAT),
        cfg.start_time or default_start.strftime(TIME_FORMAT),
    )
    return start, end


# =============================================================================
# CONCURRENCY LIMITER
# =============================================================================

class TileLimiter:
    """Counting semaphore for in-flight tile requests."""

    def __init__(self, limit: int):
        if limit < 1:
            raise ValueError(f"limit must be >= 1, got {limit}")
        self._limit = limit
        self._inflight = 0
        self._peak = 0
        self._cond = threading.Condition()

    def acquire(self, n: int = 1) -> None:
        """Acquire n slots, blocking until all of them are free at once."""
        if n < 1:
            raise ValueError(f"cannot acquire {n} slots")
        if n > self._limit:
            raise ValueError(f"cannot acquire {n} slots from a limiter of {self._limit}")
        with self._cond:
            while self._inflight + n > self._limit:
                self._cond.wait()
            self._inflight += n
            self._peak = max(self._peak, self._inflight)

    def release(self, n: int = 1) -> None:
        with self._cond:
            if n > self._inflight:
                raise ValueError(f"releasing {n} slots but only {self._inflight} in flight")
            self._inflight -= n
            self._cond.notify(n)

    @contextlib.contextmanager
    def slot(self) -> Iterator[None]:
        self.acquire()
        try:
            yield
        finally:
            self.release()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def inflight(self) -> int:
        with self._cond:
            return self._inflight

    @property
    def peak(self) -> int:
        """Highest number of slots ever held at the same time."""
        with self._cond:
            return self._peak


# =============================================================================
# FETCH OUTCOME
# =============================================================================

@dataclass(frozen=True)
class FetchOutcome:
    """Result of fetching (and saving) a single tile."""
    item: SequenceItem
    success: bool
    payload: Optional[bytes] = None
    status_code: Optional[int] = None
    error: Optional[str] = None
    file_path: Optional[str] = None
    bytes_written: int = 0


@dataclass
class RunReport:
    """Everything the collector gathered during one scheduler run."""
    outcomes: list[FetchOutcome]
    elapsed_sec: float

    @property
    def successes(self) -> list[FetchOutcome]:
        return [o for o in self.outcomes if o.success]

    @property
    def failures(self) -> list[FetchOutcome]:
        return [o for o in self.outcomes if not o.success]

    @property
    def bytes_written(self) -> int:
        return sum(o.bytes_written for o in self.outcomes)


# =============================================================================
# PER-TILE TASK
# =============================================================================

def fetch_tile(
    item: SequenceItem,
    source: RadarSource,
    fetcher: Fetcher,
    timeout_sec: Optional[float],
) -> FetchOutcome:
    """GET one tile. Never raises for network problems."""
    content, status_code, error = fetcher(source.url_for(item.remote_filename), timeout_sec)
    if error is not None or content is None:
        return FetchOutcome(item=item, success=False, status_code=status_code, error=error or "Empty response")
    return FetchOutcome(item=item, success=True, payload=content, status_code=status_code)


def persist_tile(outcome: FetchOutcome, output_dir: str, frame_naming: bool) -> FetchOutcome:
    """Write a fetched payload to disk and drop it from the outcome."""
    if not outcome.success:
        return outcome

    file_path = os.path.join(output_dir, tile_filename(outcome.item, frame_naming))
    bytes_written, error = save_tile(outcome.payload, file_path)
    if error is not None:
        return dataclasses.replace(outcome, success=False, payload=None, error=error)
    return dataclasses.replace(outcome, payload=None, file_path=file_path, bytes_written=bytes_written)


def download_one(
    item: SequenceItem,
    output_dir: str,
    frame_naming: bool,
    limiter: TileLimiter,
    source: RadarSource,
    fetcher: Fetcher,
    timeout_sec: Optional[float] = None,
) -> FetchOutcome:
    """Fetch and persist one tile while holding a limiter slot."""
    with limiter.slot():
        outcome = fetch_tile(item, source, fetcher, timeout_sec)
        return persist_tile(outcome, output_dir, frame_naming)


# =============================================================================
# SCHEDULER
# =============================================================================

def create_output_dir(output_dir: str) -> None:
    """Create the output directory; it must not exist yet."""
    try:
        os.mkdir(output_dir, 0o775)
    except OSError as e:
        raise SetupError(f"Cannot create output directory {output_dir}: {e}") from e


def describe_failure(outcome: FetchOutcome) -> str:
    name = outcome.item.remote_filename
    if outcome.status_code is not None and outcome.status_code != 200:
        return f"[Warning] Bad http response: {outcome.error} ({name})"
    return f"[Error] {name}: {outcome.error}"


def run(
    items: Sequence[SequenceItem],
    output_dir: str,
    max_requests: int,
    frame_naming: bool = False,
    fetcher: Fetcher = download_via_http_get,
    source: Optional[RadarSource] = None,
    timeout_sec: Optional[float] = None,
    show_progress: bool = False,
    workers: Optional[int] = None,
) -> RunReport:
    """
    Download every tile in `items` into a new directory.

    Returns once all tasks have finished. Per-tile failures are reported
    and collected in the RunReport; they never stop the run. `workers`
    sizes the thread pool (default max_requests); the limiter holds the
    in-flight cap whatever the pool size.

    Raises:
        SetupError: If output_dir cannot be created (nothing is fetched)
        ValueError: If max_requests < 1
    """
    if source is None:
        source = RadarSource()
    limiter = TileLimiter(max_requests)
    create_output_dir(output_dir)

    start = _monotonic()
    outcomes: list[FetchOutcome] = []

    if items:
        num_workers = min(workers or max_requests, len(items))
        pbar = tqdm(total=len(items), desc="Downloading", unit="tile", disable=not show_progress)
        try:
            with ThreadPoolExecutor(max_workers=num_workers, thread_name_prefix="tile") as pool:
                futures = [
                    pool.submit(download_one, item, output_dir, frame_naming, limiter, source, fetcher, timeout_sec)
                    for item in items
                ]
                for fut in as_completed(futures):
                    outcome = fut.result()
                    if not outcome.success:
                        tqdm.write(describe_failure(outcome))
                    outcomes.append(outcome)
                    pbar.update(1)
        finally:
            pbar.close()

    outcomes.sort(key=lambda o: o.item.index)
    return RunReport(outcomes=outcomes, elapsed_sec=_monotonic() - start)


# =============================================================================
# OVERVIEW
# =============================================================================

def write_overview(cfg: Config, report: RunReport, start: datetime, end: datetime) -> str:
    """Write JSON overview report next to the output folder."""
    total = len(report.outcomes)
    successes = report.successes
    failures = report.failures
    err_counter = Counter((o.status_code, o.error) for o in failures)

    overview = {
        "script_inputs": {
            "output_folder": cfg.output_folder,
            "region": cfg.region,
            "resolution_min": cfg.resolution,
            "start_utc": start.isoformat(),
            "end_utc": end.isoformat(),
            "frame_naming": cfg.frame_naming,
            "max_requests": cfg.max_requests,
        },
        "summary": {
            "total_tiles": total,
            "written_tiles": len(successes),
            "failed_tiles": len(failures),
            "success_rate_percent": round((len(successes) / total) * 100.0, 2) if total else 0.0,
            "downloaded_mb": round(report.bytes_written / 1e6, 3),
            "elapsed_sec": round(report.elapsed_sec, 3),
        },
        "error_breakdown": [
            {"status_code": sc, "error": err, "count": cnt}
            for (sc, err), cnt in err_counter.most_common()
        ],
        "missing_tiles": [
            {"index": o.item.index, "timestamp": o.item.timestamp.isoformat(), "remote_filename": o.item.remote_filename}
            for o in failures
        ],
        "timestamp_utc": _utcnow().strftime("%Y-%m-%d %H:%M:%S"),
    }

    out = Path(cfg.output_folder)
    overview_path = out.with_name(out.name + "_overview.json")
    with overview_path.open("w") as f:
        json.dump(overview, f, indent=2)

    return str(overview_path.resolve())


def print_summary(report: RunReport) -> None:
    total = len(report.outcomes)
    print("\n" + "=" * 72)
    print("FINAL SUMMARY")
    print("=" * 72)
    print(f"Total tiles:           {total}")
    print(f"Written tiles:         {len(report.successes)}")
    print(f"Failed tiles:          {len(report.failures)}")
    print(f"Elapsed time:          {report.elapsed_sec:.2f}s")
    if total > 0:
        print(f"Success rate:          {(len(report.successes) / total) * 100:.2f}%")
    print(f"Total downloaded:      {report.bytes_written / 1e6:.2f} MB")


# =============================================================================
# MAIN
# =============================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    source = RadarSource()
    try:
        cfg = parse_args(argv)
        region_id = validate_config(cfg, source)
        start, end = build_time_range(cfg)
    except FatalError as e:
        print(f"[Fatal] {e}", file=sys.stderr)
        return 1

    print("=" * 72)
    print("tileman - radar tile downloader")
    print("=" * 72)

    items = generate(start, end, region_id, cfg.resolution)
    print(f"[Load] {len(items)} tiles | region={cfg.region} ({region_id}) | "
          f"{start:%Y-%m-%d %H:%M} → {end:%Y-%m-%d %H:%M} UTC | res={cfg.resolution}min")
    if not items:
        print("[Load] End time rounds to before start time; nothing to download")

    try:
        report = run(
            items,
            cfg.output_folder,
            cfg.max_requests,
            frame_naming=cfg.frame_naming,
            source=source,
            timeout_sec=cfg.timeout_sec,
            show_progress=cfg.show_progress,
        )
    except FatalError as e:
        print(f"[Fatal] {e}", file=sys.stderr)
        return 1

    print_summary(report)

    if cfg.create_overview:
        try:
            overview = write_overview(cfg, report, start, end)
            print(f"[Report] Overview: {overview}")
        except OSError as e:
            print(f"[Report] Failed: {e}")

    print("=" * 72)
    return 0


if __name__ == "__main__":
    sys.exit(main())
