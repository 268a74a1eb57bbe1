"""Access rules restricting which registers, functions and stations may be injected."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from .modbus import ModbusExchange

DEFAULT_ALLOW_STATIONS = (1,)
DEFAULT_ALLOW_FUNCTIONS = (1, 2, 3, 4)


@dataclass(frozen=True)
class Rule:
    """A permitted register range; an ``end`` of 0 means the single register ``start``."""

    start: int = 0
    end: int = 0
    functions: tuple[int, ...] = ()
    stations: tuple[int, ...] = ()

    def allows(self, m: ModbusExchange) -> bool:
        """Whether the whole register span of ``m`` is permitted by this rule."""
        if m.station not in (self.stations or DEFAULT_ALLOW_STATIONS):
            return False
        first = m.base
        last = (m.base + m.count - 1) & 0xFFFF
        lower = self.start
        upper = self.end or lower
        if not (lower <= first <= upper and lower <= last <= upper):
            return False
        return m.function in (self.functions or DEFAULT_ALLOW_FUNCTIONS)


def check_rules(m: ModbusExchange, rules: Iterable[Rule]) -> bool:
    """Whether any rule allows the exchange."""
    return any(rule.allows(m) for rule in rules)