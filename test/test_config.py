from quorum.config import load_config, stage_delays
from quorum.tools.logger import RunLogger, make_run_logger, should_log

ENV_VARS = [
    "QUORUM_API_BASE", "QUORUM_STAGE_DELAY_SCALE", "QUORUM_RUN_TIMEOUT", "QUORUM_POLL_INTERVAL",
    "QUORUM_PUSH_ENABLED", "QUORUM_MAX_RUNS", "QUORUM_LOG_LEVEL",
]


def _clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_config_file(tmp_path, monkeypatch):
    _clean_env(monkeypatch)
    monkeypatch.chdir(tmp_path)

    cfg = load_config("missing.yaml")

    assert cfg["backend"]["api_base"] is None
    assert stage_delays(cfg) == [1.2, 2.4, 2.4, 2.4, 2.4]
    assert cfg["live"]["push_enabled"] is True
    assert cfg["registry"]["max_runs"] == 500


def test_yaml_then_env_overrides(tmp_path, monkeypatch):
    _clean_env(monkeypatch)
    monkeypatch.chdir(tmp_path)
    (tmp_path / "config.yaml").write_text(
        "pipeline:\n"
        "  delay_scale: 0.5\n"
        "live:\n"
        "  poll_interval: 3\n"
        "logging:\n"
        "  level: debug\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("QUORUM_API_BASE", "http://localhost:4000/api/")
    monkeypatch.setenv("QUORUM_PUSH_ENABLED", "no")
    monkeypatch.setenv("QUORUM_MAX_RUNS", "7")

    cfg = load_config()

    assert cfg["backend"]["api_base"] == "http://localhost:4000/api"
    assert stage_delays(cfg) == [0.6, 1.2, 1.2, 1.2, 1.2]
    assert cfg["pipeline"]["roster_size"] == 4
    assert cfg["live"]["poll_interval"] == 3.0
    assert cfg["live"]["push_enabled"] is False
    assert cfg["registry"]["max_runs"] == 7
    assert cfg["logging"]["level"] == "DEBUG"


# ----------------------------
# Logger
# ----------------------------

def test_should_log_threshold(monkeypatch):
    monkeypatch.setenv("QUORUM_LOG_LEVEL", "warning")

    assert should_log("ERROR")
    assert not should_log("INFO")
    assert should_log("DEBUG", threshold="DEBUG")


def test_run_logger_writes_file(tmp_path, capsys):
    log = make_run_logger("run_abc", outdir=str(tmp_path / "logs"), level="INFO")

    log.log("stage kickoff applied")
    log.warning("publish failed")
    log.debug("hidden")

    lines = (tmp_path / "logs" / "run_abc.log").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert lines[0].endswith("[run_abc] stage kickoff applied")
    assert lines[1].endswith("[run_abc] WARNING: publish failed")
    assert "stage kickoff applied" in capsys.readouterr().out


def test_run_logger_without_file(capsys):
    RunLogger("live", level="ERROR").error("transport down")

    assert "[live] ERROR: transport down" in capsys.readouterr().out
