"""
Credit admission control.

The ledger never debits: the generation backend charges on accepted dispatch
and refunds on failure. Here we only estimate what a dispatch will cost and
check the account can cover it, failing closed when the balance is unknown.
"""

import logging
import math
import time
from decimal import Decimal, ROUND_CEILING
from typing import Optional

from pydantic import BaseModel

from .errors import StoreError, ValidationError

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


# ── Rate Card ────────────────────────────────────────────────────────────────

class RateCard(BaseModel):
    # talking head / lip sync first frame
    frame: float = 0.10
    frame_4k: float = 0.15
    # clips, b-roll and motion graphics frames
    b_roll_frame: float = 0.25
    b_roll_last_frame: float = 0.25
    b_roll_last_frame_4k: float = 0.50
    script: float = 0.25
    voice_per_1000_chars: float = 0.25
    video_per_second: float = 0.20
    lip_sync_per_second: float = 0.15
    b_roll_video_per_second: float = 0.20
    animate_per_second: float = 0.15


DEFAULT_RATES = RateCard()


def _per_second(rate: float, seconds: float) -> Decimal:
    return Decimal(str(rate)) * Decimal(str(seconds))


def estimate_cost(kind: str, params: dict, rates: RateCard = DEFAULT_RATES) -> float:
    """
    Pure cost estimate for one dispatch of `kind`, rounded up to the cent.

    Args:
        kind:   Dispatch kind declared by the stage (e.g. "pipeline_voice").
        params: The payload fields the price depends on.
    """
    is_4k = params.get("resolution") == "4K"
    if kind == "pipeline_first_frame":
        cost = Decimal(str(rates.frame_4k if is_4k else rates.frame))
    elif kind == "pipeline_first_frame_b_roll":
        cost = Decimal(str(rates.b_roll_frame))
    elif kind == "pipeline_last_frame_b_roll":
        cost = Decimal(str(rates.b_roll_last_frame_4k if is_4k else rates.b_roll_last_frame))
    elif kind == "pipeline_script":
        cost = Decimal(str(rates.script))
    elif kind == "pipeline_voice":
        chars = params.get("char_count")
        if chars is None:
            chars = len(params.get("script_text") or "")
        units = math.ceil(chars / 1000)
        cost = Decimal(units) * Decimal(str(rates.voice_per_1000_chars))
    elif kind == "pipeline_final_video":
        seconds = params.get("audio_duration_seconds") or 0
        cost = _per_second(rates.video_per_second, seconds)
    elif kind == "pipeline_lip_sync":
        seconds = params.get("audio_duration_seconds") or 0
        cost = _per_second(rates.lip_sync_per_second, seconds)
    elif kind == "pipeline_final_video_b_roll":
        seconds = params.get("duration") or 0
        cost = _per_second(rates.b_roll_video_per_second, seconds)
    elif kind == "animate":
        seconds = params.get("duration") or 0
        cost = _per_second(rates.animate_per_second, seconds)
    else:
        raise ValidationError(f"Unknown generation kind for cost estimate: {kind}")

    return float(cost.quantize(CENT, rounding=ROUND_CEILING))


# ── Ledger ───────────────────────────────────────────────────────────────────

class CreditLedger:
    """
    Read-only view of one account's credit balance.

    Shared by every open stage of a session, so admission always re-reads
    the balance instead of trusting a value cached earlier in the session.
    """

    def __init__(
        self,
        store,
        user_id: str,
        rates: RateCard = DEFAULT_RATES,
        max_age_seconds: float = 30.0,
    ):
        self._store = store
        self.user_id = user_id
        self.rates = rates
        self.max_age_seconds = max_age_seconds
        self._balance: Optional[float] = None
        self._fetched_at: Optional[float] = None

    @property
    def balance(self) -> Optional[float]:
        """Last-known balance, or None when it has never been read or the last read failed."""
        return self._balance

    @property
    def is_stale(self) -> bool:
        if self._balance is None or self._fetched_at is None:
            return True
        return (time.monotonic() - self._fetched_at) > self.max_age_seconds

    def estimate_cost(self, kind: str, params: dict) -> float:
        return estimate_cost(kind, params, self.rates)

    async def refresh(self) -> Optional[float]:
        try:
            balance = await self._store.fetch_balance(self.user_id)
        except StoreError as e:
            logger.warning(f"Balance read failed for user {self.user_id}: {e}")
            balance = None

        if balance is None:
            self._balance = None
            self._fetched_at = None
        else:
            self._balance = float(balance)
            self._fetched_at = time.monotonic()
        return self._balance

    async def can_afford(self, cost: float) -> bool:
        balance = await self.refresh()
        if balance is None:
            logger.warning(f"Balance unknown for user {self.user_id}, refusing dispatch")
            return False
        allowed = Decimal(str(balance)) >= Decimal(str(cost))
        if not allowed:
            logger.info(f"Admission denied for user {self.user_id}: cost={cost:.2f}, balance={balance:.2f}")
        return allowed

    def affordable(self, cost: float) -> bool:
        """Display-only check against the last-known balance."""
        if self.is_stale:
            return False
        return Decimal(str(self._balance)) >= Decimal(str(cost))
