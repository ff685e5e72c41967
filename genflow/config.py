from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


logger = logging.getLogger("genflow.config")


@dataclass
class Settings:
    host: str = "127.0.0.1"
    port: int = 8888
    python: str = sys.executable
    worker_script: str = "V7ACC.py"
    worker_cwd: Optional[str] = None
    accounts_dir: str = "KNX"
    log_high_water: int = 1000
    log_low_water: int = 500
    log_limit: int = 50
    accounts_limit: int = 100
    state_dir: Optional[str] = None

    def override(self, **values: Any) -> "Settings":
        """Return a copy with every non-None value applied."""
        return replace(self, **{k: v for k, v in values.items() if v is not None})

    def resolve_paths(self, root: Path) -> "Settings":
        def _abs(p: Optional[str]) -> Optional[str]:
            if p is None:
                return None
            path = Path(p).expanduser()
            return str(path if path.is_absolute() else (root / path))

        return replace(
            self,
            worker_script=_abs(self.worker_script),
            worker_cwd=_abs(self.worker_cwd) or str(root),
            accounts_dir=_abs(self.accounts_dir),
        )


def settings_from_dict(data: Dict[str, Any]) -> Settings:
    known = {f.name: f for f in fields(Settings)}
    kwargs: Dict[str, Any] = {}
    for key, value in (data or {}).items():
        f = known.get(key)
        if f is None:
            logger.warning(f"Ignoring unknown config key: {key}")
            continue
        if f.type == "int":
            try:
                value = int(value)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-integer config value {key}={value!r}")
                continue
        kwargs[key] = value
    return Settings(**kwargs)


def load_settings(path: Optional[Path]) -> Settings:
    """Read `config.yaml`; a missing or empty file gives the defaults."""
    if not path or not path.exists():
        return Settings()
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        logger.warning(f"Ignoring {path}: expected a mapping")
        return Settings()
    return settings_from_dict(data)
