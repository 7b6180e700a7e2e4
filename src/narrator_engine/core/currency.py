from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from .errors import InsufficientFundsError

CP_PER_SP = 10
CP_PER_GP = 100


@dataclass(frozen=True)
class Currency:
    """A gp/sp/cp purse. Arithmetic always goes through total copper."""

    gp: int = 0
    sp: int = 0
    cp: int = 0

    def to_copper(self) -> int:
        return self.gp * CP_PER_GP + self.sp * CP_PER_SP + self.cp

    @classmethod
    def from_copper(cls, total_cp: int) -> "Currency":
        total_cp = int(total_cp)
        if total_cp < 0:
            raise ValueError("currency cannot be negative")
        gp, rest = divmod(total_cp, CP_PER_GP)
        sp, cp = divmod(rest, CP_PER_SP)
        return cls(gp=gp, sp=sp, cp=cp)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Currency":
        data = data or {}

        def _int(key: str) -> int:
            try:
                return max(0, int(data.get(key) or 0))
            except (TypeError, ValueError):
                return 0

        return cls(gp=_int("gp"), sp=_int("sp"), cp=_int("cp"))

    def to_dict(self) -> dict[str, int]:
        return {"gp": self.gp, "sp": self.sp, "cp": self.cp}

    def normalized(self) -> "Currency":
        return Currency.from_copper(self.to_copper())

    def earn(self, amount_cp: int) -> "Currency":
        if amount_cp < 0:
            raise ValueError("earn amount must be non-negative")
        return Currency.from_copper(self.to_copper() + amount_cp)

    def spend(self, amount_cp: int, owner: str = "character") -> "Currency":
        if amount_cp < 0:
            raise ValueError("spend amount must be non-negative")
        available = self.to_copper()
        if amount_cp > available:
            raise InsufficientFundsError(amount_cp, available, owner=owner)
        return Currency.from_copper(available - amount_cp)

    def spend_clamped(self, amount_cp: int) -> "Currency":
        return Currency.from_copper(max(0, self.to_copper() - max(0, amount_cp)))

    def __str__(self) -> str:
        parts = [f"{value} {label}" for value, label in ((self.gp, "gp"), (self.sp, "sp"), (self.cp, "cp")) if value]
        return ", ".join(parts) or "0 cp"


def purse_of(holder: Any) -> Currency:
    return Currency(gp=holder.gold_gp or 0, sp=holder.gold_sp or 0, cp=holder.gold_cp or 0)


def store_purse(holder: Any, purse: Currency) -> None:
    purse = purse.normalized()
    holder.gold_gp = purse.gp
    holder.gold_sp = purse.sp
    holder.gold_cp = purse.cp


def gp_to_copper(value: Any) -> int:
    """Convert a possibly fractional gold amount to whole copper, rounding half up."""
    try:
        amount = float(value)
    except (TypeError, ValueError):
        return 0
    if amount <= 0:
        return 0
    return int(amount * CP_PER_GP + 0.5)
