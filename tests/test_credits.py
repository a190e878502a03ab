"""Tests for cost estimates and credit admission."""

import pytest

from studio.pipeline.credits import CreditLedger, RateCard, estimate_cost
from studio.pipeline.errors import StoreError, ValidationError


class TestEstimateCost:
    @pytest.mark.parametrize(
        "kind, params, expected",
        [
            ("pipeline_first_frame", {"resolution": "2K"}, 0.10),
            ("pipeline_first_frame", {"resolution": "4K"}, 0.15),
            ("pipeline_first_frame_b_roll", {"resolution": "4K"}, 0.25),
            ("pipeline_last_frame_b_roll", {}, 0.25),
            ("pipeline_last_frame_b_roll", {"resolution": "4K"}, 0.50),
            ("pipeline_script", {}, 0.25),
            ("pipeline_voice", {"char_count": 1000}, 0.25),
            ("pipeline_voice", {"char_count": 1001}, 0.50),
            ("pipeline_voice", {"script_text": "x" * 2500}, 0.75),
            ("pipeline_final_video", {"audio_duration_seconds": 10}, 2.00),
            ("pipeline_final_video", {"audio_duration_seconds": 7.33}, 1.47),
            ("pipeline_lip_sync", {"audio_duration_seconds": 10}, 1.50),
            ("animate", {"duration": 8}, 1.20),
            ("pipeline_final_video_b_roll", {"duration": 8}, 1.60),
        ],
    )
    def test_rate_card(self, kind, params, expected):
        assert estimate_cost(kind, params) == expected

    def test_custom_rates(self):
        assert estimate_cost("pipeline_script", {}, RateCard(script=0.5)) == 0.5

    def test_unknown_kind(self):
        with pytest.raises(ValidationError):
            estimate_cost("pipeline_hologram", {})


class BalanceStore:
    def __init__(self, balance=None, error=False):
        self.balance = balance
        self.error = error
        self.reads = 0

    async def fetch_balance(self, user_id):
        self.reads += 1
        if self.error:
            raise StoreError("profiles unavailable")
        return self.balance


class TestCreditLedger:
    @pytest.mark.asyncio
    async def test_can_afford_rereads_balance_every_time(self):
        store = BalanceStore(balance=1.0)
        ledger = CreditLedger(store, "user-1")

        assert await ledger.can_afford(0.5) is True
        store.balance = 0.2
        assert await ledger.can_afford(0.5) is False
        assert store.reads == 2

    @pytest.mark.asyncio
    async def test_exact_balance_is_enough(self):
        ledger = CreditLedger(BalanceStore(balance=0.3), "user-1")
        assert await ledger.can_afford(0.3) is True

    @pytest.mark.asyncio
    async def test_fails_closed_on_read_error(self):
        ledger = CreditLedger(BalanceStore(error=True), "user-1")
        assert await ledger.can_afford(0.01) is False
        assert ledger.balance is None

    @pytest.mark.asyncio
    async def test_fails_closed_on_missing_profile(self):
        ledger = CreditLedger(BalanceStore(balance=None), "user-1")
        assert await ledger.can_afford(0.0) is False

    @pytest.mark.asyncio
    async def test_affordable_uses_last_known_balance(self):
        ledger = CreditLedger(BalanceStore(balance=1.0), "user-1")
        assert ledger.affordable(0.1) is False  # never read

        await ledger.refresh()
        assert ledger.affordable(0.1) is True
        assert ledger.affordable(1.5) is False

    @pytest.mark.asyncio
    async def test_affordable_fails_closed_when_stale(self):
        ledger = CreditLedger(BalanceStore(balance=1.0), "user-1", max_age_seconds=30)
        await ledger.refresh()
        ledger._fetched_at -= 31
        assert ledger.is_stale
        assert ledger.affordable(0.1) is False
