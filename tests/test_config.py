"""
Configuration and command line entry point.

Invariant:
Every configuration error (bad resolution, unknown region, unparseable
time, bad limits) is reported before any network or filesystem work, and
all times are read as UTC.
"""

from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Optional

import pytest

import download_tiles
from download_tiles import Config, build_time_range, main, parse_args, validate_config
from tile_errors import ConfigError
from tile_sequence import RadarSource

NOW = datetime(2020, 5, 17, 10, 42, tzinfo=timezone.utc)


def test_defaults() -> None:
    cfg = parse_args([])

    assert cfg.output_folder == "./tileman_out"
    assert cfg.region == "germany"
    assert cfg.resolution == 5
    assert cfg.max_requests == 8
    assert cfg.frame_naming is False
    assert cfg.timeout_sec is None
    assert cfg.show_progress is True


def test_command_line_options() -> None:
    cfg = parse_args([
        "--dir", "radar", "--region", "bavaria", "--res", "10", "--frames",
        "--max_requests", "3", "--timeout", "20", "--last_hours", "1.5", "--no_progress",
    ])

    assert cfg == Config(
        output_folder="radar",
        region="bavaria",
        resolution=10,
        last_hours=1.5,
        frame_naming=True,
        max_requests=3,
        timeout_sec=20.0,
        show_progress=False,
    )


def test_json_config_overrides_defaults(tmp_path) -> None:
    path = tmp_path / "tileman.json"
    path.write_text(json.dumps({"region": "bavaria", "resolution": 15, "output_folder": "x"}))

    cfg = parse_args(["--config", str(path)])

    assert (cfg.region, cfg.resolution, cfg.output_folder) == ("bavaria", 15, "x")


def test_json_config_unknown_key(tmp_path) -> None:
    path = tmp_path / "tileman.json"
    path.write_text(json.dumps({"regoin": "bavaria"}))

    with pytest.raises(ConfigError, match="regoin"):
        parse_args(["--config", str(path)])


def test_json_config_unreadable(tmp_path) -> None:
    path = tmp_path / "broken.json"
    path.write_text("{not json")

    with pytest.raises(ConfigError):
        parse_args(["--config", str(path)])


def test_validate_returns_region_id() -> None:
    assert validate_config(Config(region="bavaria"), RadarSource()) == 38


@pytest.mark.parametrize(
    "cfg",
    [
        Config(resolution=7),
        Config(region="atlantis"),
        Config(max_requests=0),
        Config(timeout_sec=0),
        Config(last_hours=-1),
    ],
)
def test_validate_rejects(cfg: Config) -> None:
    with pytest.raises(ConfigError):
        validate_config(cfg, RadarSource())


def test_default_time_range() -> None:
    start, end = build_time_range(Config(), now=NOW)

    assert start == datetime(2020, 5, 17, 8, 42, tzinfo=timezone.utc)
    assert end == datetime(2020, 5, 17, 10, 27, tzinfo=timezone.utc)


def test_default_time_range_across_midnight() -> None:
    start, end = build_time_range(Config(), now=datetime(2020, 5, 17, 0, 5, tzinfo=timezone.utc))

    assert start == datetime(2020, 5, 16, 22, 5, tzinfo=timezone.utc)
    assert end == datetime(2020, 5, 16, 23, 50, tzinfo=timezone.utc)


def test_explicit_time_range_is_utc() -> None:
    cfg = Config(start_date="2020-01-01", start_time="00:00", end_date="2020-01-01", end_time="00:10")

    start, end = build_time_range(cfg, now=NOW)

    assert start == datetime(2020, 1, 1, 0, 0, tzinfo=timezone.utc)
    assert end == datetime(2020, 1, 1, 0, 10, tzinfo=timezone.utc)


def test_last_hours_overrides_start() -> None:
    cfg = Config(start_date="1999-01-01", start_time="00:00", end_date="2020-01-01", end_time="06:00", last_hours=3)

    start, end = build_time_range(cfg, now=NOW)

    assert start == datetime(2020, 1, 1, 3, 0, tzinfo=timezone.utc)
    assert end == datetime(2020, 1, 1, 6, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("field, value", [("start_time", "25:00"), ("end_date", "2020/01/01"), ("start_date", "yesterday")])
def test_unparseable_time_is_config_error(field: str, value: str) -> None:
    with pytest.raises(ConfigError):
        build_time_range(Config(**{field: value}), now=NOW)


def _patch_run(monkeypatch, fetcher) -> list:
    calls = []
    real_run = download_tiles.run

    def fake_run(*args, **kwargs):
        calls.append((args, kwargs))
        return real_run(*args, fetcher=fetcher, **kwargs)

    monkeypatch.setattr(download_tiles, "run", fake_run)
    return calls


def test_unknown_region_stops_before_network(tmp_path, monkeypatch, capsys) -> None:
    def fetcher(url: str, timeout: Optional[float]):
        raise AssertionError("network must not be touched")

    calls = _patch_run(monkeypatch, fetcher)
    out = tmp_path / "out"

    assert main(["--region", "atlantis", "--dir", str(out)]) == 1

    assert calls == []
    assert not out.exists()
    assert "[Fatal] Region not (yet) defined: atlantis" in capsys.readouterr().err


def test_bad_resolution_stops_before_network(tmp_path, monkeypatch, capsys) -> None:
    calls = _patch_run(monkeypatch, lambda url, timeout: (b"", 200, None))

    assert main(["--res", "7", "--dir", str(tmp_path / "out")]) == 1

    assert calls == []
    assert "Invalid resolution value: 7" in capsys.readouterr().err


def test_main_downloads_and_writes_overview(tmp_path, monkeypatch, capsys) -> None:
    def fetcher(url: str, timeout: Optional[float]):
        if url.endswith("_0005.png"):
            return None, 404, "HTTP 404: Not Found"
        return b"png", 200, None

    _patch_run(monkeypatch, fetcher)
    out = tmp_path / "radar"

    code = main([
        "--start_date", "2020-01-01", "--start_time", "00:00",
        "--end_date", "2020-01-01", "--end_time", "00:10",
        "--dir", str(out), "--overview", "--no_progress",
    ])

    assert code == 0
    assert sorted(os.listdir(out)) == [
        "0_download_px250_2020_01_01_2_0000.png",
        "2_download_px250_2020_01_01_2_0010.png",
    ]
    overview = json.loads((tmp_path / "radar_overview.json").read_text())
    assert overview["summary"]["total_tiles"] == 3
    assert overview["summary"]["written_tiles"] == 2
    assert overview["error_breakdown"] == [{"status_code": 404, "error": "HTTP 404: Not Found", "count": 1}]
    assert overview["missing_tiles"][0]["remote_filename"] == "download_px250_2020_01_01_2_0005.png"

    captured = capsys.readouterr().out
    assert "FINAL SUMMARY" in captured
    assert "[Warning] Bad http response: HTTP 404" in captured


def test_main_existing_dir_is_fatal(tmp_path, monkeypatch, capsys) -> None:
    def fetcher(url: str, timeout: Optional[float]):
        raise AssertionError("network must not be touched")

    _patch_run(monkeypatch, fetcher)
    out = tmp_path / "out"
    out.mkdir()

    assert main(["--dir", str(out), "--no_progress"]) == 1
    assert "[Fatal] Cannot create output directory" in capsys.readouterr().err


@pytest.mark.parametrize(
    "payload",
    [
        {"timeout_sec": "3"},
        {"last_hours": "2"},
        {"region": ["germany"]},
        {"frame_naming": "false"},
        {"create_overview": 1},
        {"max_requests": 2.5},
        {"resolution": "5"},
        {"output_folder": 7},
        {"start_date": 20200101},
        {"last_hours": True},
    ],
)
def test_json_config_wrong_types_are_fatal(tmp_path, monkeypatch, capsys, payload: dict) -> None:
    def fetcher(url: str, timeout: Optional[float]):
        raise AssertionError("network must not be touched")

    calls = _patch_run(monkeypatch, fetcher)
    path = tmp_path / "tileman.json"
    path.write_text(json.dumps(dict(payload, output_folder=payload.get("output_folder", str(tmp_path / "out")))))

    assert main(["--config", str(path)]) == 1

    assert calls == []
    assert not (tmp_path / "out").exists()
    assert "[Fatal]" in capsys.readouterr().err


def test_json_config_numbers_are_accepted(tmp_path) -> None:
    path = tmp_path / "tileman.json"
    path.write_text(json.dumps({"timeout_sec": 3, "last_hours": 2.5, "frame_naming": True}))

    cfg = parse_args(["--config", str(path)])

    assert validate_config(cfg, RadarSource()) == 2
    assert (cfg.timeout_sec, cfg.last_hours, cfg.frame_naming) == (3, 2.5, True)
