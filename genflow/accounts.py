from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List


logger = logging.getLogger("genflow.accounts")

TAB_FOLDERS: Dict[str, str] = {
    "all": "ACCOUNTS",
    "rare": "RARE_ACCOUNTS",
    "couples": "COUPLES_ACCOUNTS",
    "activated": "ACTIVATED",
}


class AccountStore:
    """Read-only view over the account inventories the worker writes.

    Each tab maps to a folder of `*.json` files holding lists of account
    records. At most `per_file` records are taken from any one file.
    """

    def __init__(self, base_dir: Path, per_file: int = 50):
        self.base_dir = Path(base_dir)
        self.per_file = per_file

    def list_accounts(self, tab: str, limit: int = 100) -> List[Any]:
        folder = TAB_FOLDERS.get(tab)
        if folder is None:
            return []
        path = self.base_dir / folder
        if not path.is_dir():
            return []
        out: List[Any] = []
        for p in sorted(path.glob("*.json")):
            if len(out) >= limit:
                break
            try:
                data = json.loads(p.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable account file {p}: {e}")
                continue
            if not isinstance(data, list):
                logger.warning(f"Skipping account file {p}: expected a list")
                continue
            out.extend(data[: self.per_file])
        return out[:limit]
