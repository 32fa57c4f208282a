"""Tests for logging configuration and entrypoint wiring."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from types import SimpleNamespace

import loopdeck.cli as cli_module
from loopdeck.errors import LoopDeckError
from loopdeck.logging_utils import setup_logging


def _flush_root_handlers() -> None:
    for handler in logging.getLogger().handlers:
        flush = getattr(handler, "flush", None)
        if callable(flush):
            flush()


class _RootLoggerGuard:
    def __enter__(self) -> _RootLoggerGuard:
        root = logging.getLogger()
        self._handlers = list(root.handlers)
        self._level = root.level
        return self

    def __exit__(self, *exc: object) -> None:
        root = logging.getLogger()
        for handler in root.handlers:
            if handler not in self._handlers:
                handler.close()
        root.handlers.clear()
        for handler in self._handlers:
            root.addHandler(handler)
        root.setLevel(self._level)


def _args(**overrides: object) -> SimpleNamespace:
    values: dict[str, object] = {
        "command": "clips",
        "verbose": False,
        "quiet": False,
        "log_file": None,
        "backend": "fake",
        "env_file": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _patch_parser(monkeypatch, args: SimpleNamespace) -> None:
    class FakeParser:
        def parse_args(self, argv=None):
            return args

    monkeypatch.setattr(cli_module, "build_parser", lambda: FakeParser())


def test_setup_logging_default_path_writes_json_log(tmp_path) -> None:
    with _RootLoggerGuard():
        setup_logging(log_dir=tmp_path, level="INFO", console=False)
        logger = logging.getLogger("loopdeck.test")
        logger.info("default-log-path", extra={"clip_id": "abc"})
        _flush_root_handlers()
        log_path = tmp_path / "loopdeck.log"
        assert log_path.exists()
        line = log_path.read_text(encoding="utf-8").strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["message"] == "default-log-path"
        assert payload["level"] == "INFO"
        assert payload["context"] == {"clip_id": "abc"}


def test_setup_logging_custom_log_file_writes_log(tmp_path) -> None:
    custom_path = tmp_path / "custom" / "loopdeck.log"
    with _RootLoggerGuard():
        setup_logging(log_dir=tmp_path, level="DEBUG", log_file=custom_path)
        logger = logging.getLogger("loopdeck.test")
        logger.debug("custom-log-path")
        _flush_root_handlers()
        assert custom_path.exists()
        assert "custom-log-path" in custom_path.read_text(encoding="utf-8")


def test_setup_logging_console_flag_controls_stream_handler(tmp_path) -> None:
    with _RootLoggerGuard():
        setup_logging(log_dir=tmp_path, console=False)
        assert len(logging.getLogger().handlers) == 1
        setup_logging(log_dir=tmp_path, console=True)
        assert len(logging.getLogger().handlers) == 2


def test_setup_logging_redacts_secret_extras(tmp_path) -> None:
    with _RootLoggerGuard():
        setup_logging(log_dir=tmp_path, console=False)
        logging.getLogger("loopdeck.test").warning(
            "saving", extra={"access_token": "s3cret"}
        )
        _flush_root_handlers()
        text = (tmp_path / "loopdeck.log").read_text(encoding="utf-8")
        assert "s3cret" not in text
        assert '"access_token": "***"' in text


def test_setup_logging_quiets_http_loggers_unless_debug(tmp_path) -> None:
    with _RootLoggerGuard():
        setup_logging(log_dir=tmp_path, level="INFO", console=False)
        assert logging.getLogger("urllib3").level == logging.WARNING
        setup_logging(log_dir=tmp_path, level="DEBUG", console=False)
        assert logging.getLogger("urllib3").level == logging.DEBUG
    for name in ("urllib3", "spotipy", "requests"):
        logging.getLogger(name).setLevel(logging.NOTSET)


def test_cli_main_passes_effective_level_and_log_file(monkeypatch, tmp_path) -> None:
    captured: dict[str, object] = {}

    def fake_setup_logging(
        *, log_dir: Path, level: str, log_file: Path | None, console: bool
    ) -> None:
        captured["log_dir"] = log_dir
        captured["level"] = level
        captured["log_file"] = log_file
        captured["console"] = console

    _patch_parser(
        monkeypatch, _args(verbose=True, quiet=True, log_file=str(tmp_path / "cli.log"))
    )
    monkeypatch.setattr(cli_module, "setup_logging", fake_setup_logging)
    monkeypatch.setattr(cli_module, "log_dir", lambda: tmp_path / "logs")
    monkeypatch.setitem(cli_module._COMMANDS, "clips", lambda args, console: 0)

    rc = cli_module.main([])

    assert rc == 0
    assert captured["level"] == "WARNING"
    assert captured["log_file"] == tmp_path / "cli.log"
    assert captured["log_dir"] == tmp_path / "logs"
    assert captured["console"] is True


def test_cli_main_maps_domain_errors_to_usage_exit(monkeypatch, tmp_path) -> None:
    def failing_command(args, console) -> int:
        raise LoopDeckError("No clip matches 'zz'")

    _patch_parser(monkeypatch, _args())
    monkeypatch.setattr(cli_module, "setup_logging", lambda **kwargs: None)
    monkeypatch.setattr(cli_module, "log_dir", lambda: tmp_path / "logs")
    monkeypatch.setitem(cli_module._COMMANDS, "clips", failing_command)

    assert cli_module.main([]) == cli_module.EXIT_USAGE


def test_cli_main_returns_nonzero_when_logging_setup_fails(
    monkeypatch, tmp_path, capsys
) -> None:
    def fail_setup_logging(**kwargs):
        del kwargs
        raise OSError("cannot open log")

    _patch_parser(monkeypatch, _args())
    monkeypatch.setattr(cli_module, "setup_logging", fail_setup_logging)
    monkeypatch.setattr(cli_module, "log_dir", lambda: tmp_path / "logs")

    rc = cli_module.main([])
    captured = capsys.readouterr()

    assert rc == 1
    assert "Unexpected error. Re-run with --verbose for details." in captured.err
