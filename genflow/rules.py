from __future__ import annotations

import logging
import re
import yaml
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional, Tuple

if TYPE_CHECKING:
    from .supervisor import Stats


logger = logging.getLogger("genflow.rules")

# Checked in order; first hit wins.
CATEGORY_MARKERS: List[Tuple[str, Tuple[str, ...]]] = [
    ("success", ("✅", "success")),
    ("error", ("❌", "error")),
    ("warning", ("⚠️", "warning")),
    ("rare", ("💎", "rare")),
    ("couple", ("💑", "couple")),
    ("activation", ("🔥", "activate")),
]

CATEGORIES = ("info",) + tuple(name for name, _ in CATEGORY_MARKERS)

COUNTER_FIELDS = ("generated", "target", "rare", "couples", "activated", "failed")


def classify(line: str) -> str:
    for category, markers in CATEGORY_MARKERS:
        if any(m in line for m in markers):
            return category
    return "info"


@dataclass
class StatsRule:
    name: str
    fields: List[str] = field(default_factory=list)
    regex: Optional[str] = None
    contains: Optional[str] = None
    mode: str = "set"  # "set" | "increment"

    def compile(self):
        self._regex = re.compile(self.regex) if self.regex else None
        return self

    def apply(self, line: str, stats: "Stats") -> bool:
        """Update `stats` in place if the line triggers this rule.

        Increment rules add one per matching line. Set rules take the last
        regex match in the line and assign its groups, in order, to `fields`.
        """
        if self.mode == "increment":
            hit = (self.contains is not None and self.contains in line) or (
                self._regex is not None and self._regex.search(line) is not None
            )
            if not hit:
                return False
            for name in self.fields:
                setattr(stats, name, getattr(stats, name) + 1)
            return True

        if self._regex is None:
            return False
        last = None
        for last in self._regex.finditer(line):
            pass
        if last is None:
            return False
        try:
            values = [int(g) for g in last.groups()]
        except (TypeError, ValueError):
            return False
        if len(values) < len(self.fields):
            return False
        for name, value in zip(self.fields, values):
            setattr(stats, name, value)
        return True


def _rule_from_item(item: dict) -> Optional[StatsRule]:
    name = item.get("name", "rule")
    fields = item.get("fields") or []
    if isinstance(fields, str):
        fields = [fields]
    mode = item.get("mode", "set")
    if mode not in ("set", "increment"):
        logger.warning(f"Skipping stats rule {name!r}: unknown mode {mode!r}")
        return None
    unknown = [f for f in fields if f not in COUNTER_FIELDS]
    if not fields or unknown:
        logger.warning(f"Skipping stats rule {name!r}: bad fields {fields!r}")
        return None
    if not item.get("regex") and not item.get("contains"):
        logger.warning(f"Skipping stats rule {name!r}: needs regex or contains")
        return None
    try:
        return StatsRule(
            name=name,
            fields=list(fields),
            regex=item.get("regex"),
            contains=item.get("contains"),
            mode=mode,
        ).compile()
    except re.error as e:
        logger.warning(f"Skipping stats rule {name!r}: {e}")
        return None


def parse_stats_rules(text: str) -> List[StatsRule]:
    data = yaml.safe_load(text) or {}
    rules = []
    for item in data.get("rules", []):
        rule = _rule_from_item(item)
        if rule is not None:
            rules.append(rule)
    return rules


def load_stats_rules(path: Path) -> List[StatsRule]:
    if not path.exists():
        return []
    return parse_stats_rules(path.read_text(encoding="utf-8"))


def default_stats_rules_yaml() -> str:
    return r"""
rules:
  - name: Registration progress
    regex: 'Registration (\d+)/(\d+)'
    fields: [generated, target]

  - name: Rare account
    contains: "RARE ACCOUNT FOUND"
    mode: increment
    fields: [rare]

  - name: Couples account
    contains: "COUPLES ACCOUNT FOUND"
    mode: increment
    fields: [couples]

  - name: Activated total
    regex: 'Activated! Total: (\d+)'
    fields: [activated]

  - name: Failed total
    regex: 'Failed! Total failed: (\d+)'
    fields: [failed]
"""


DEFAULT_STATS_RULES: List[StatsRule] = parse_stats_rules(default_stats_rules_yaml())


def extract(line: str, stats: "Stats", rules: Optional[List[StatsRule]] = None) -> "Stats":
    for r in (DEFAULT_STATS_RULES if rules is None else rules):
        r.apply(line, stats)
    return stats
