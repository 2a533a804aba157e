"""Unit tests for TrifectaState.

Tests cover:
- Enabling and disabling flags
- Rejection of the third flag (lethal trifecta)
- Frozen state handling
- Snapshots and status strings
"""

import itertools

import pytest

from trifecta_guard.security.errors import (
    FrozenStateError,
    PolicyViolation,
    UnknownFlagError,
)
from trifecta_guard.security.trifecta import TrifectaFlag, TrifectaState


class TestTrifectaFlag:
    """Test flag coercion."""

    def test_coerce_accepts_enum_and_string(self) -> None:
        """Test both enum members and string values resolve."""
        assert TrifectaFlag.coerce(TrifectaFlag.EGRESS) is TrifectaFlag.EGRESS
        assert TrifectaFlag.coerce("private_data") is TrifectaFlag.PRIVATE_DATA

    def test_coerce_rejects_unknown(self) -> None:
        """Test unknown names raise UnknownFlagError."""
        with pytest.raises(UnknownFlagError):
            TrifectaFlag.coerce("root_access")


class TestTrifectaState:
    """Test TrifectaState transitions."""

    @pytest.fixture
    def state(self) -> TrifectaState:
        """Create a fresh state."""
        return TrifectaState("u1")

    def test_initial_state(self, state: TrifectaState) -> None:
        """Test a new state has no flags enabled."""
        assert state.work_unit_id == "u1"
        assert state.enabled_count == 0
        assert not state.untrusted_input
        assert not state.private_data
        assert not state.egress
        assert state.status_string == "No flags enabled"

    def test_generates_work_unit_id(self) -> None:
        """Test an id is generated when none is given."""
        state = TrifectaState()
        assert state.work_unit_id.startswith("wu_")
        assert TrifectaState().work_unit_id != state.work_unit_id

    def test_enable_records_source_and_chains(self, state: TrifectaState) -> None:
        """Test enable sets the flag, records the source and returns self."""
        result = state.enable("untrusted_input", source="github_issue")

        assert result is state
        assert state.untrusted_input
        assert state.source_for(TrifectaFlag.UNTRUSTED_INPUT) == "github_issue"

        state.enable(TrifectaFlag.PRIVATE_DATA, source="env_var").disable("private_data")
        assert not state.private_data

    def test_third_flag_rejected(self, state: TrifectaState) -> None:
        """Test enabling the third flag raises and leaves it unset."""
        state.enable("untrusted_input", source="github_issue")
        state.enable("private_data", source="env_var")

        assert state.would_create_trifecta("egress") is True

        with pytest.raises(PolicyViolation) as exc_info:
            state.enable("egress", source="git_push")

        violation = exc_info.value
        assert violation.flag == TrifectaFlag.EGRESS
        assert violation.source == "git_push"
        assert violation.current_state["untrusted_input_source"] == "github_issue"
        assert violation.current_state["private_data_source"] == "env_var"
        assert violation.current_state["egress"] is False

        assert not state.egress
        assert state.enabled_count == 2
        assert state.violation_count == 1

    def test_already_enabled_flag_never_creates_trifecta(self, state: TrifectaState) -> None:
        """Test a flag that is already on does not count as the third."""
        state.enable("untrusted_input").enable("private_data")

        assert state.would_create_trifecta("untrusted_input") is False
        assert state.would_create_trifecta("private_data") is False
        state.enable("private_data", source="again")
        assert state.source_for("private_data") == "again"

    def test_disable_then_enable_other(self, state: TrifectaState) -> None:
        """Test disabling a flag frees room for another one."""
        state.enable("untrusted_input").enable("private_data")
        state.disable("private_data")
        state.enable("egress", source="git_push")

        assert state.egress
        assert state.source_for("private_data") is None

    def test_disable_is_noop_when_clear(self, state: TrifectaState) -> None:
        """Test disabling a clear flag does nothing."""
        state.disable("egress")
        assert state.enabled_count == 0

    def test_unknown_flag(self, state: TrifectaState) -> None:
        """Test unknown flags are rejected for every operation."""
        with pytest.raises(UnknownFlagError):
            state.enable("filesystem", source="x")
        with pytest.raises(UnknownFlagError):
            state.disable("filesystem")
        with pytest.raises(ValueError):
            state.would_create_trifecta("filesystem")

    def test_frozen_state_rejects_mutation(self, state: TrifectaState) -> None:
        """Test freeze makes the state immutable."""
        state.enable("egress", source="git_push")
        state.freeze()

        assert state.frozen
        with pytest.raises(FrozenStateError):
            state.enable("private_data")
        with pytest.raises(FrozenStateError):
            state.disable("egress")
        assert state.egress

    def test_lethal_trifecta_detected_when_enable_bypassed(self, state: TrifectaState) -> None:
        """Test the lethal predicate catches flags set behind enable's back."""
        assert not state.is_lethal_trifecta
        for flag in TrifectaFlag:
            state._flags[flag] = True

        assert state.is_lethal_trifecta
        assert state.lethal_trifecta_reached
        assert state.to_dict()["lethal_trifecta"] is True

    def test_status_string_lists_flags(self, state: TrifectaState) -> None:
        """Test status string reports the enabled count."""
        state.enable("egress", source="git_push")
        assert state.status_string.startswith("1 of 3 flags enabled")
        assert "egress" in state.status_string

        state.enable("private_data")
        assert state.status_string.startswith("2 of 3 flags enabled")

    def test_to_dict_snapshot(self, state: TrifectaState) -> None:
        """Test to_dict flattens flags and sources."""
        state.enable("untrusted_input", source="github_pr")
        snapshot = state.to_dict()

        assert snapshot == {
            "work_unit_id": "u1",
            "untrusted_input": True,
            "untrusted_input_source": "github_pr",
            "private_data": False,
            "private_data_source": None,
            "egress": False,
            "egress_source": None,
            "enabled_count": 1,
            "lethal_trifecta": False,
            "frozen": False,
        }

    def test_no_enable_sequence_reaches_three(self) -> None:
        """Test that no sequence of enables ever enables all three flags."""
        flags = list(TrifectaFlag)
        for sequence in itertools.product(flags, repeat=4):
            state = TrifectaState()
            for flag in sequence:
                try:
                    state.enable(flag, source="test")
                except PolicyViolation:
                    assert not state.is_enabled(flag)
                assert state.enabled_count <= 2
            assert not state.lethal_trifecta_reached

    def test_lethal_flag_follows_current_flags(self, state: TrifectaState) -> None:
        """Test lethal_trifecta_reached reflects the flags it is asked about."""
        state.enable("untrusted_input").enable("private_data")
        assert not state.lethal_trifecta_reached

        state._flags[TrifectaFlag.EGRESS] = True
        assert state.lethal_trifecta_reached

        state._flags[TrifectaFlag.EGRESS] = False
        assert not state.lethal_trifecta_reached
        assert not hasattr(state, "_lethal_observed")
