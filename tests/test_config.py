from __future__ import annotations

from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest
import yaml

import punchclock


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for key in punchclock.ENV_OVERRIDES:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


def _base_config(**overrides: object) -> dict:
    cfg = {
        "user": "ana",
        "password": "s3cret",
        "timezone": "America/Sao_Paulo",
        "schedules": ["08:00", "12:00", "13:00", "18:00"],
        "weekdays": "1-5",
        "random_offset": 120,
        "max_retries": 2,
    }
    cfg.update(overrides)
    return cfg


def _write_config(tmp_path: Path, config: dict) -> Path:
    path = tmp_path / "punchclock.yaml"
    path.write_text(yaml.safe_dump(config, sort_keys=False), encoding="utf-8")
    return path


def test_load_yaml_config(tmp_path: Path) -> None:
    cfg = _base_config(
        vacation={"start": "2026-12-20", "end": "2027-01-05"},
        webhook_url="https://hooks.example.test/punch",
        strategy="timer",
    )
    config = punchclock.load_config(_write_config(tmp_path, cfg), environ={})

    assert [n.label for n in config.nominal_times] == ["08:00", "12:00", "13:00", "18:00"]
    assert config.weekdays.days == frozenset({1, 2, 3, 4, 5})
    assert config.timezone == ZoneInfo("America/Sao_Paulo")
    assert config.max_jitter_seconds == 120
    assert config.max_retries == 2
    assert config.vacation == punchclock.VacationRange(date(2026, 12, 20), date(2027, 1, 5))
    assert config.notify_target == "https://hooks.example.test/punch"
    assert config.strategy == "timer"
    assert config.platform.user == "ana"
    assert "s3cret" not in repr(config)


def test_env_only_config_uses_defaults() -> None:
    config = punchclock.load_config(
        None,
        environ={"PUNCH_USER": "ana", "PUNCH_PASSWORD": "pw", "SCHEDULES": "8:05,17:30"},
    )
    assert [n.label for n in config.nominal_times] == ["08:05", "17:30"]
    assert config.weekdays.all_days is True
    assert config.timezone_name == "America/Sao_Paulo"
    assert config.max_jitter_seconds == 300
    assert config.max_retries == 3
    assert config.vacation is None
    assert config.notify_target is None
    assert config.strategy == "poll"


def test_env_overrides_file(tmp_path: Path) -> None:
    path = _write_config(tmp_path, _base_config())
    config = punchclock.load_config(
        path,
        environ={
            "SCHEDULES": "09:00",
            "WEEKDAYS": "0,6",
            "RANDOM_OFFSET": "0",
            "MAX_RETRIES": "5",
            "TZ": "UTC",
            "VACATION_START": "2026-07-01",
            "VACATION_END": "2026-07-15",
            "DEBUG": "true",
        },
    )
    assert [n.label for n in config.nominal_times] == ["09:00"]
    assert config.weekdays.days == frozenset({0, 6})
    assert config.max_jitter_seconds == 0
    assert config.max_retries == 5
    assert config.timezone_name == "UTC"
    assert config.vacation == punchclock.VacationRange(date(2026, 7, 1), date(2026, 7, 15))
    assert config.debug is True


def test_missing_credentials_rejected(tmp_path: Path) -> None:
    cfg = _base_config()
    del cfg["user"]
    with pytest.raises(punchclock.ConfigError, match="PUNCH_USER"):
        punchclock.load_config(_write_config(tmp_path, cfg), environ={})


@pytest.mark.parametrize(
    "schedules,message",
    [
        (["25:00"], "valid time"),
        (["12:75"], "valid time"),
        (["8h"], "HH:MM"),
        ([], "at least one"),
    ],
)
def test_invalid_schedules_rejected(tmp_path: Path, schedules: list, message: str) -> None:
    with pytest.raises(punchclock.ConfigError, match=message):
        punchclock.load_config(_write_config(tmp_path, _base_config(schedules=schedules)), environ={})


def test_unquoted_yaml_time_rejected(tmp_path: Path) -> None:
    path = tmp_path / "punchclock.yaml"
    path.write_text("user: ana\npassword: pw\nschedules:\n  - 12:00\n", encoding="utf-8")
    with pytest.raises(punchclock.ConfigError, match="quoted"):
        punchclock.load_config(path, environ={})


def test_invalid_weekdays_rejected(tmp_path: Path) -> None:
    with pytest.raises(punchclock.ConfigError, match="increasing"):
        punchclock.load_config(_write_config(tmp_path, _base_config(weekdays="5-1")), environ={})


def test_vacation_bounds_must_be_paired(tmp_path: Path) -> None:
    path = _write_config(tmp_path, _base_config())
    with pytest.raises(punchclock.ConfigError, match="together"):
        punchclock.load_config(path, environ={"VACATION_START": "2026-07-01"})
    with pytest.raises(punchclock.ConfigError, match="YYYY-MM-DD"):
        punchclock.load_config(path, environ={"VACATION_START": "01/07/2026", "VACATION_END": "2026-07-15"})


def test_inverted_vacation_is_accepted(tmp_path: Path) -> None:
    cfg = _base_config(vacation={"start": "2027-01-05", "end": "2026-12-20"})
    config = punchclock.load_config(_write_config(tmp_path, cfg), environ={})
    assert config.vacation is not None
    assert not punchclock.is_blackout(date(2026, 12, 25), config.vacation)


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"timezone": "America/NotAZone"}, "Invalid timezone"),
        ({"random_offset": -5}, "random_offset must be >= 0"),
        ({"max_retries": 0}, "max_retries must be >= 1"),
        ({"max_retries": "many"}, "max_retries must be an integer"),
        ({"poll_seconds": 120}, "poll_seconds must be <= 60"),
        ({"webhook_url": "hooks.example.test"}, "HTTP URL"),
        ({"strategy": "cron"}, "strategy"),
        ({"retries": 3}, "Unknown top-level keys"),
    ],
)
def test_invalid_values_rejected(tmp_path: Path, overrides: dict, message: str) -> None:
    with pytest.raises(punchclock.ConfigError, match=message):
        punchclock.load_config(_write_config(tmp_path, _base_config(**overrides)), environ={})


def test_explicit_missing_file_rejected(tmp_path: Path) -> None:
    with pytest.raises(punchclock.ConfigError, match="not found"):
        punchclock.load_config(tmp_path / "missing.yaml", environ={})


def test_cli_validate(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    path = _write_config(tmp_path, _base_config())
    assert punchclock.main(["--config", str(path), "validate"]) == 0
    output = capsys.readouterr().out
    assert "Config valid." in output
    assert "Times: 08:00, 12:00, 13:00, 18:00" in output


def test_cli_invalid_config_exits_nonzero(tmp_path: Path) -> None:
    path = _write_config(tmp_path, _base_config(weekdays="9"))
    assert punchclock.main(["--config", str(path), "validate"]) == 1


def test_preview_lists_nominal_times(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    cfg = _base_config(schedules=["12:00"], vacation={"start": "2026-10-22", "end": "2026-10-22"})
    path = _write_config(tmp_path, cfg)
    now = datetime(2026, 10, 21, 10, 0, tzinfo=ZoneInfo("America/Sao_Paulo"))
    assert punchclock.command_preview(path, 2, now=now) == 0
    lines = [line for line in capsys.readouterr().out.splitlines() if line.startswith("- ")]
    assert lines == [
        "- 2026-10-21T12:00:00-03:00",
        "- 2026-10-22T12:00:00-03:00 (vacation, skipped)",
    ]


def test_cli_run_punches_once(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    calls = []
    monkeypatch.setattr(punchclock.SeniorPlatformClient, "authenticate", lambda self: "tok")
    monkeypatch.setattr(
        punchclock.SeniorPlatformClient,
        "submit_punch",
        lambda self, token: calls.append(token) or {"ok": True},
    )
    path = _write_config(tmp_path, _base_config())
    assert punchclock.main(["--config", str(path), "run"]) == 0
    assert calls == ["tok"]


def test_cli_run_reports_failure(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    def fail(self: punchclock.SeniorPlatformClient) -> str:
        raise punchclock.AuthError("invalid credentials")

    monkeypatch.setattr(punchclock.SeniorPlatformClient, "authenticate", fail)
    path = _write_config(tmp_path, _base_config(max_retries=1))
    assert punchclock.main(["--config", str(path), "run"]) == 1


def test_poll_interval_cannot_skip_the_firing_window(tmp_path: Path) -> None:
    config = punchclock.load_config(_write_config(tmp_path, _base_config(poll_seconds=60)), environ={})
    assert config.poll_seconds == punchclock.MAX_POLL_SECONDS == 2 * punchclock.FIRING_WINDOW_SECONDS
    with pytest.raises(punchclock.ConfigError, match="poll_seconds must be <= 60"):
        punchclock.load_config(None, environ={"PUNCH_USER": "ana", "PUNCH_PASSWORD": "pw", "POLL_SECONDS": "61"})


def test_cli_daemon_rejects_long_poll_interval(tmp_path: Path) -> None:
    path = _write_config(tmp_path, _base_config())
    assert punchclock.main(["--config", str(path), "daemon", "--poll-seconds", "120"]) == 1
