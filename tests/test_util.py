from pathlib import Path

from genflow.util import STATE_DIR_NAME, add_to_gitignore, ensure_state_dir, is_in_gitignore


def test_state_dir_created_under_root(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("GENFLOW_STATE_DIR", raising=False)
    state = ensure_state_dir(tmp_path)
    assert state == tmp_path / STATE_DIR_NAME
    assert state.is_dir()


def test_state_dir_env_override(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("GENFLOW_STATE_DIR", str(tmp_path / "elsewhere"))
    assert ensure_state_dir(tmp_path) == tmp_path / "elsewhere"


def test_gitignore_entry_added_once(tmp_path: Path):
    assert not is_in_gitignore(tmp_path, STATE_DIR_NAME)
    assert add_to_gitignore(tmp_path, STATE_DIR_NAME)
    assert is_in_gitignore(tmp_path, STATE_DIR_NAME)
    assert not add_to_gitignore(tmp_path, STATE_DIR_NAME)
    (tmp_path / ".gitignore").write_text("dist/\n.genflow/\n", encoding="utf-8")
    assert is_in_gitignore(tmp_path, STATE_DIR_NAME)
