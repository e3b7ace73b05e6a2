#!/usr/bin/env python3
"""
tileman Sequence Module

Builds the ordered list of radar tiles to request from the image cache.

This module is used by download_tiles.py and provides:
- RadarSource: immutable base URL + region table
- lookup_region() / validate_resolution(): configuration checks
- round_to_resolution(): snap a timestamp onto the resolution grid
- generate(): the tile sequence for a time range
- parse_remote_filename(): recover the fields embedded in a tile name
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Mapping, Tuple

from tile_errors import ConfigError


BASE_URL = "http://kachelmannwetter.com/images/data/cache/"

REGIONS: Mapping[str, int] = MappingProxyType({
    "germany": 2,
    "bavaria": 38,
})

_GRID_ORIGIN = datetime.min
_FILENAME_RE = re.compile(
    r"^download_px250_(?P<date>\d{4}_\d{2}_\d{2})_(?P<region>\d+)_(?P<hhmm>\d{4})\.png$"
)


@dataclass(frozen=True)
class RadarSource:
    """Where tiles come from: the cache base URL and the known regions."""
    base_url: str = BASE_URL
    regions: Mapping[str, int] = field(default_factory=lambda: REGIONS)

    def url_for(self, remote_filename: str) -> str:
        return self.base_url + remote_filename


@dataclass(frozen=True)
class SequenceItem:
    """One tile of the sequence; index is its 0-based position."""
    index: int
    timestamp: datetime
    remote_filename: str


def lookup_region(name: str, regions: Mapping[str, int] = REGIONS) -> int:
    """
    Resolve a region name to the numeric id used in tile filenames.

    Raises:
        ConfigError: If the region is not in the table
    """
    if not isinstance(name, str):
        raise ConfigError(f"Region must be a name, got {name!r}")
    try:
        return regions[name]
    except (KeyError, TypeError):
        known = ", ".join(sorted(regions))
        raise ConfigError(f"Region not (yet) defined: {name} (known: {known})") from None


def validate_resolution(resolution: int) -> int:
    """Resolution must be a positive multiple of 5 minutes."""
    if isinstance(resolution, bool) or not isinstance(resolution, int):
        raise ConfigError(f"Invalid resolution value: {resolution!r}")
    if resolution < 5 or resolution % 5 != 0:
        raise ConfigError(f"Invalid resolution value: {resolution} (use a multiple of 5, minimum 5)")
    return resolution


def round_to_resolution(ts: datetime, resolution: int) -> datetime:
    """
    Round a timestamp to the nearest multiple of `resolution` minutes.

    The grid counts from 0001-01-01 00:00 UTC for every resolution.
    Aware timestamps are rounded on UTC and converted back to their own
    zone; naive ones are taken as UTC. Halves round up.

    Args:
        ts: Timestamp to round (naive or aware)
        resolution: Grain in minutes

    Returns:
        Rounded timestamp with the same tzinfo
    """
    grain = timedelta(minutes=resolution)
    aware = ts.tzinfo is not None and ts.utcoffset() is not None
    wall = ts.astimezone(timezone.utc).replace(tzinfo=None) if aware else ts
    steps, rest = divmod(wall - _GRID_ORIGIN, grain)
    if rest * 2 >= grain:
        steps += 1
    rounded = _GRID_ORIGIN + grain * steps
    if aware:
        return rounded.replace(tzinfo=timezone.utc).astimezone(ts.tzinfo)
    return rounded


def remote_filename(ts: datetime, region_id: int) -> str:
    """Tile name on the server, e.g. download_px250_2020_01_01_2_0005.png."""
    return f"download_px250_{ts:%Y_%m_%d}_{region_id}_{ts:%H%M}.png"


def generate(start: datetime, end: datetime, region_id: int, resolution: int) -> list[SequenceItem]:
    """
    Generate the ordered tile sequence for a time range.

    Both ends are rounded to the resolution grid first. The result holds one
    item per grid step from start to end inclusive; an end that rounds to
    before the start gives an empty list.

    Args:
        start: First timestamp of the range
        end: Last timestamp of the range
        region_id: Numeric region id (see lookup_region)
        resolution: Minutes between consecutive tiles

    Returns:
        List of SequenceItem ordered by timestamp
    """
    start = round_to_resolution(start, resolution)
    end = round_to_resolution(end, resolution)
    if end < start:
        return []

    step = timedelta(minutes=resolution)
    steps = (end - start) // step

    items = []
    for i in range(steps + 1):
        ts = start + step * i
        items.append(SequenceItem(index=i, timestamp=ts, remote_filename=remote_filename(ts, region_id)))
    return items


def parse_remote_filename(name: str) -> Tuple[str, int, str]:
    """
    Split a tile name into its embedded fields.

    Returns:
        Tuple of (date "YYYY_MM_DD", region_id, time "HHMM")

    Raises:
        ValueError: If the name is not a tile filename
    """
    m = _FILENAME_RE.match(name)
    if m is None:
        raise ValueError(f"Not a tile filename: {name}")
    return m.group("date"), int(m.group("region")), m.group("hhmm")
