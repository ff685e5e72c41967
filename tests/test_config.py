from pathlib import Path

from genflow.config import Settings, load_settings


def test_missing_file_gives_defaults(tmp_path: Path):
    s = load_settings(tmp_path / "config.yaml")
    assert s.port == 8888
    assert s.worker_script == "V7ACC.py"
    assert (s.log_high_water, s.log_low_water, s.log_limit) == (1000, 500, 50)


def test_yaml_values_and_unknown_keys(tmp_path: Path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("port: '9001'\nworker_script: gen.py\nlog_limit: 20\ncolour: blue\n", encoding="utf-8")
    s = load_settings(cfg)
    assert s.port == 9001
    assert s.worker_script == "gen.py"
    assert s.log_limit == 20
    assert not hasattr(s, "colour")


def test_non_mapping_file_is_ignored(tmp_path: Path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("- just\n- a list\n", encoding="utf-8")
    assert load_settings(cfg) == Settings()


def test_override_and_resolve_paths(tmp_path: Path):
    s = Settings().override(port=1234, host=None, accounts_dir="data/KNX")
    assert s.port == 1234
    assert s.host == "127.0.0.1"
    r = s.resolve_paths(tmp_path)
    assert r.accounts_dir == str(tmp_path / "data/KNX")
    assert r.worker_script == str(tmp_path / "V7ACC.py")
    assert r.worker_cwd == str(tmp_path)
    absolute = Settings(worker_script="/opt/gen/worker.py").resolve_paths(tmp_path)
    assert absolute.worker_script == "/opt/gen/worker.py"


def test_worker_runs_beside_the_account_inventories(tmp_path: Path):
    r = Settings().resolve_paths(tmp_path)
    assert r.worker_cwd == str(tmp_path)
    assert Path(r.accounts_dir).parent == Path(r.worker_cwd)
    assert Settings(worker_cwd="jobs").resolve_paths(tmp_path).worker_cwd == str(tmp_path / "jobs")
