"""Credit balance and daily usage accounting.

Both are charged only after a generation reports success. Checks happen
before the service is contacted so a rejected request leaves no trace.
"""

import logging
from datetime import date

from .errors import InvalidRequest, QuotaFailure
from .models import CreditState, DailyLimits, DailyUsage

logger = logging.getLogger(__name__)


class CreditLedger:
    """Balance in the base currency with a display-currency conversion."""

    def __init__(
        self,
        state: CreditState | None = None,
        rates: dict[str, float] | None = None,
    ) -> None:
        self._state = state or CreditState()
        self._rates = {"USD": 1.0, **(rates or {})}

    @property
    def state(self) -> CreditState:
        return self._state

    @property
    def balance(self) -> float:
        return self._state.balance

    def can_afford(self, estimated_cost: float) -> bool:
        return estimated_cost <= self._state.balance

    def require(self, estimated_cost: float) -> None:
        """Raise ``QuotaFailure`` if the balance cannot cover ``estimated_cost``."""
        if not self.can_afford(estimated_cost):
            msg = (
                f"Insufficient credit: {self.format(estimated_cost)} needed, "
                f"{self.format(self.balance)} available."
            )
            raise QuotaFailure(msg)

    def debit(self, amount: float) -> CreditState:
        """Charge ``amount``; the balance bottoms out at zero."""
        if amount < 0:
            msg = "Debit amount must not be negative"
            raise InvalidRequest(msg)
        balance = max(0.0, self._state.balance - amount)
        self._state = self._state.model_copy(update={"balance": balance})
        logger.debug("Debited %.4f, balance %.4f", amount, balance)
        return self._state

    def top_up(self, amount: float) -> CreditState:
        if amount <= 0:
            msg = "Top-up amount must be positive"
            raise InvalidRequest(msg)
        balance = self._state.balance + amount
        self._state = self._state.model_copy(update={"balance": balance})
        return self._state

    def set_currency(self, currency: str) -> CreditState:
        code = currency.upper()
        if code not in self._rates:
            msg = f"Unknown currency: {currency}"
            raise InvalidRequest(msg)
        self._state = self._state.model_copy(
            update={"currency": code, "rate": self._rates[code]},
        )
        return self._state

    def to_display(self, amount: float) -> float:
        return amount * self._state.rate

    def format(self, amount: float) -> str:
        return f"{self.to_display(amount):,.2f} {self._state.currency}"


class UsageTracker:
    """Counts successful image and video generations per calendar day."""

    def __init__(
        self,
        usage: DailyUsage | None = None,
        limits: DailyLimits | None = None,
        today=date.today,
    ) -> None:
        self._today = today
        self._usage = usage or DailyUsage()
        self.limits = limits or DailyLimits()
        self._roll_over()

    @property
    def usage(self) -> DailyUsage:
        self._roll_over()
        return self._usage

    def _roll_over(self) -> None:
        day = self._today().isoformat()
        if self._usage.day != day:
            self._usage = DailyUsage(day=day)

    def check(self, kind: str, requested: int = 1) -> None:
        """Raise ``QuotaFailure`` when limits are on and ``requested`` would exceed them."""
        if not self.limits.enabled:
            return
        usage = self.usage
        if kind == "images":
            current, limit, label = usage.images, self.limits.max_images, "image"
        else:
            current, limit, label = usage.videos, self.limits.max_videos, "video"
        if current + requested > limit:
            msg = f"Daily {label} limit reached! Check your usage settings."
            raise QuotaFailure(msg)

    def record(self, kind: str, amount: int = 1) -> DailyUsage:
        if amount <= 0:
            return self.usage
        usage = self.usage
        field = "images" if kind == "images" else "videos"
        self._usage = usage.model_copy(update={field: getattr(usage, field) + amount})
        return self._usage

    def set_limits(self, **fields) -> DailyLimits:
        self.limits = self.limits.model_copy(update=fields)
        return self.limits
