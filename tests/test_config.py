"""
Tests for configuration loading and the per-task transcript sink.
"""

import json
import re

from loguru import logger

from pocscan.config import (
    EngineConfig, NucleiOptions, config_to_dict, get_config, load_user_config,
    resolve_nuclei_bin, save_user_config,
)
from pocscan.log import TaskTranscript


def test_nuclei_bin_from_env(monkeypatch, tmp_path):
    binary = tmp_path / "nuclei"
    binary.write_text("")
    monkeypatch.setenv("POCSCAN_NUCLEI_BIN", str(binary))
    assert resolve_nuclei_bin() == str(binary.resolve())


def test_user_config_round_trip(tmp_path):
    path = tmp_path / "config.json"
    assert load_user_config(path) == {}
    save_user_config({"nuclei_path": "/opt/nuclei"}, path)
    save_user_config({"api_port": 9000}, path)
    assert load_user_config(path) == {"nuclei_path": "/opt/nuclei", "api_port": 9000}


def test_corrupt_user_config_is_ignored(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{oops")
    assert load_user_config(path) == {}


def test_get_config_applies_overrides(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "nuclei_path": "/opt/nuclei",
        "templates_dir": str(tmp_path / "tpl"),
        "scan_timeout_s": 120,
        "staging_threshold": 50,
        "options": {"concurrency": 5, "unknown_flag": True},
        "api_port": 9100,
    }))

    cfg = get_config(path)

    assert cfg.nuclei_path == "/opt/nuclei"
    assert cfg.templates_dir == tmp_path / "tpl"
    assert cfg.scan_timeout_s == 120.0
    assert cfg.staging_threshold == 50
    assert cfg.options.concurrency == 5
    assert cfg.api.port == 9100


def test_engine_config_dirs(tmp_path):
    cfg = EngineConfig(data_dir=tmp_path / "d", templates_dir=tmp_path / "t", nuclei_path="nuclei")
    cfg.ensure_dirs()
    for d in (cfg.tasks_dir, cfg.results_dir, cfg.logs_dir, cfg.tmp_dir, cfg.templates_dir):
        assert d.is_dir()
    as_dict = config_to_dict(cfg)
    assert as_dict["data_dir"] == str(tmp_path / "d")
    assert as_dict["options"] == config_to_dict(EngineConfig(nuclei_path="x"))["options"]


def test_options_from_dict_ignores_unknown_keys():
    opts = NucleiOptions.from_dict({"rate_limit": 10, "nope": 1})
    assert opts.rate_limit == 10


def test_transcript_captures_only_its_task(tmp_path):
    first = TaskTranscript(1, tmp_path / "task_1.log")
    second = TaskTranscript(2, tmp_path / "task_2.log")
    first.open()
    second.open()
    first.write("STDOUT", "line for one")
    second.write("STDERR", "line for two")
    first.note("done")
    logger.info("engine message")
    first.close()
    second.close()

    one = (tmp_path / "task_1.log").read_text()
    two = (tmp_path / "task_2.log").read_text()
    assert "[STDOUT] line for one" in one
    assert "[ENGINE] done" in one
    assert "line for two" not in one
    assert "engine message" not in one
    assert "[STDERR] line for two" in two


def test_transcript_write_before_open_is_noop(tmp_path):
    transcript = TaskTranscript(3, tmp_path / "task_3.log")
    transcript.write("STDOUT", "ignored")
    transcript.close()
    assert not (tmp_path / "task_3.log").exists()


def test_cors_origin_patterns_become_regex(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({"cors_origins": ["https://ui.example.org", "http://10.0.0.*:8080"]}))
    cfg = get_config(path)

    pattern = re.compile(cfg.api.origin_regex())
    assert pattern.fullmatch("https://ui.example.org")
    assert pattern.fullmatch("http://10.0.0.7:8080")
    assert not pattern.fullmatch("https://ui-example.org")
    assert not pattern.fullmatch("http://localhost:3000")

    default = re.compile(EngineConfig().api.origin_regex())
    assert default.fullmatch("http://127.0.0.1:5173")
    assert not default.fullmatch("http://evil.test")
