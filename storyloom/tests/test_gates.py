"""
Unit tests for gate enforcement.

Tests cover:
- The tier table for every known tier
- Unknown tiers resolving to the most restrictive tier
- Intensity downgrade to the highest allowed level
"""

import pytest

from storyloom.core.gates import (
    GATE_TABLE,
    enforce_gates,
    is_intensity_entitled,
    parse_intensity,
    resolve_tier,
)
from storyloom.models import AccessTier, IntensityLevel, LengthLimit


class TestTierTable:
    """Tests for the tier -> gate record mapping."""

    def test_free_tier_record(self):
        """The free tier forbids completion, requires a cliffhanger and is limited to taste."""
        gate = enforce_gates("free")

        assert gate.completion_allowed is False
        assert gate.cliffhanger_required is True
        assert gate.length_limit == LengthLimit.TASTE
        assert gate.gate_code == "TEASE"

    def test_pass_tier_record(self):
        """The pass tier allows completion up to Steamy."""
        gate = enforce_gates("pass")

        assert gate.completion_allowed is True
        assert gate.cliffhanger_required is False
        assert gate.length_limit == LengthLimit.FLING
        assert gate.allowed_intensities[-1] == IntensityLevel.STEAMY

    def test_sub_tier_record(self):
        """The subscription tier allows every intensity."""
        gate = enforce_gates("sub")

        assert gate.gate_code == "SUBSCRIPTION"
        assert gate.length_limit == LengthLimit.SOULMATES
        assert IntensityLevel.PASSIONATE in gate.allowed_intensities

    @pytest.mark.parametrize("tier", list(AccessTier))
    def test_record_matches_table(self, tier):
        """Every known tier yields exactly its table entry."""
        gate = enforce_gates(tier.value)
        entry = GATE_TABLE[tier]

        assert gate.tier == tier
        assert gate.gate_code == entry["gate_code"]
        assert gate.completion_allowed == entry["completion_allowed"]
        assert gate.cliffhanger_required == entry["cliffhanger_required"]
        assert gate.length_limit == entry["length_limit"]

    @pytest.mark.parametrize("tier", ["", "gold", "premium", None, "  "])
    def test_unknown_tier_is_most_restrictive(self, tier):
        """Unknown tiers behave exactly like the free tier."""
        assert enforce_gates(tier) == enforce_gates("free")

    def test_tier_is_case_insensitive(self):
        """Tier names are matched without regard to case or padding."""
        assert resolve_tier(" SUB ") == AccessTier.SUB


class TestIntensityDowngrade:
    """Tests for requested intensity handling."""

    def test_no_request_uses_ceiling(self):
        """Without a request the tier's highest level is effective."""
        gate = enforce_gates("pass")

        assert gate.effective_intensity == IntensityLevel.STEAMY
        assert gate.was_downgraded is False

    def test_request_above_ceiling_is_downgraded(self):
        """A request above the ceiling drops to the highest allowed level."""
        gate = enforce_gates("free", "Passionate")

        assert gate.effective_intensity == IntensityLevel.NAUGHTY
        assert gate.requested_intensity == IntensityLevel.PASSIONATE
        assert gate.was_downgraded is True

    def test_allowed_request_is_kept(self):
        """A request inside the tier's set is used unchanged."""
        gate = enforce_gates("sub", "steamy")

        assert gate.effective_intensity == IntensityLevel.STEAMY
        assert gate.was_downgraded is False

    def test_unknown_intensity_is_lowest(self):
        """An unrecognised intensity name parses as Clean."""
        assert parse_intensity("scorching") == IntensityLevel.CLEAN

    def test_entitlement(self):
        """Entitlement follows the tier's allowed set."""
        gate = enforce_gates("pass")

        assert is_intensity_entitled(gate, IntensityLevel.STEAMY)
        assert not is_intensity_entitled(gate, IntensityLevel.PASSIONATE)
        assert not is_intensity_entitled(gate, None)
