# Copyright 2026 dparv
# See LICENSE file for licensing details.

"""Node label selectors used by static target selection.

Format: comma-separated rules, all of which must hold.

- ``key``: the label is present
- ``!key``: the label is absent
- ``key=value``: the label equals value
- ``key!=value``: the label is missing or differs from value
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Mapping

from robotlb.errors import InvalidValue


class Op(enum.Enum):
    EXISTS = "exists"
    NOT_EXISTS = "not-exists"
    EQUALS = "equals"
    NOT_EQUALS = "not-equals"


@dataclass(frozen=True)
class NodeSelectorRule:
    op: Op
    key: str
    value: str | None = None

    def matches(self, labels: Mapping[str, str]) -> bool:
        if self.op is Op.EXISTS:
            return self.key in labels
        if self.op is Op.NOT_EXISTS:
            return self.key not in labels
        if self.op is Op.EQUALS:
            return labels.get(self.key) == self.value
        return labels.get(self.key) != self.value

    def __str__(self) -> str:
        if self.op is Op.EXISTS:
            return self.key
        if self.op is Op.NOT_EXISTS:
            return f"!{self.key}"
        if self.op is Op.EQUALS:
            return f"{self.key}={self.value}"
        return f"{self.key}!={self.value}"


@dataclass(frozen=True)
class LabelFilter:
    """A conjunction of rules. The empty filter matches every node."""

    rules: tuple[NodeSelectorRule, ...] = ()

    def check(self, labels: Mapping[str, str] | None) -> bool:
        labels = labels or {}
        return all(rule.matches(labels) for rule in self.rules)

    def __str__(self) -> str:
        return ",".join(str(rule) for rule in self.rules)


def _parse_rule(raw: str, key_name: str) -> NodeSelectorRule:
    def invalid() -> InvalidValue:
        return InvalidValue(
            key_name, raw, "expected 'key', '!key', 'key=value' or 'key!=value'"
        )

    parts = raw.split("=")
    if len(parts) == 1:
        key = parts[0].strip()
        if key.startswith("!"):
            key = key[1:].strip()
            if not key:
                raise invalid()
            return NodeSelectorRule(Op.NOT_EXISTS, key)
        if not key:
            raise invalid()
        return NodeSelectorRule(Op.EXISTS, key)

    if len(parts) != 2:
        raise invalid()
    key, value = parts[0].strip(), parts[1].strip()
    op = Op.EQUALS
    if key.endswith("!"):
        op = Op.NOT_EQUALS
        key = key[:-1].strip()
    if not key or key.startswith("!"):
        raise invalid()
    return NodeSelectorRule(op, key, value)


def parse_label_filter(raw: str | None, key_name: str = "node-selector") -> LabelFilter:
    """Parse a selector string.

    An unset or blank string yields the empty filter. Empty entries between
    commas are rejected rather than skipped.
    """
    if raw is None or not raw.strip():
        return LabelFilter()
    return LabelFilter(tuple(_parse_rule(part, key_name) for part in raw.split(",")))
