import os
from pathlib import Path

STATE_DIR_NAME = ".genflow"


def project_root_from_cwd() -> Path:
    return Path(os.getcwd())


def ensure_state_dir(root: Path) -> Path:
    override = os.environ.get("GENFLOW_STATE_DIR")
    state = Path(override) if override else root / STATE_DIR_NAME
    state.mkdir(parents=True, exist_ok=True)
    return state


def is_git_repo(root: Path) -> bool:
    return (root / ".git").exists()


def is_in_gitignore(root: Path, entry: str) -> bool:
    gi = root / ".gitignore"
    if not gi.exists():
        return False
    content = gi.read_text(encoding="utf-8", errors="ignore").splitlines()
    return any(line.strip().rstrip("/") == entry for line in content)


def add_to_gitignore(root: Path, entry: str) -> bool:
    gi = root / ".gitignore"
    if gi.exists():
        if is_in_gitignore(root, entry):
            return False
        content = gi.read_text(encoding="utf-8", errors="ignore").splitlines()
        content.append(entry)
        gi.write_text("\n".join(content) + "\n", encoding="utf-8")
        return True
    else:
        gi.write_text(entry + "\n", encoding="utf-8")
        return True
