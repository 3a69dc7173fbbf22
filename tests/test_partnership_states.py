"""Tests for the step table and the status projection."""

import pytest

from app.core.partnership_states import (
    FINAL_STEP,
    PORTAL_ADVANCE_STEPS,
    STEP_CONFIG,
    STEP_FIELDS,
    InfluencerStatus,
    WorkflowStatus,
    get_step_config,
    influencer_status_for,
)


def test_steps_are_chained_in_order():
    for number, config in STEP_CONFIG.items():
        assert config.number == number
        if number < FINAL_STEP:
            assert config.next_step == number + 1
        else:
            assert config.next_step is None


def test_next_status_matches_status_of_next_step():
    for config in STEP_CONFIG.values():
        if config.next_step is None:
            assert config.next_status == InfluencerStatus.COMPLETED
        else:
            assert config.next_status == STEP_CONFIG[config.next_step].status


def test_required_fields_are_editable_on_their_step():
    for number, config in STEP_CONFIG.items():
        assert set(config.required_fields) <= set(STEP_FIELDS[number])


def test_step_table_is_read_only():
    with pytest.raises(TypeError):
        STEP_CONFIG[6] = STEP_CONFIG[5]


def test_unknown_step_has_no_config():
    assert get_step_config(0) is None
    assert get_step_config(6) is None


def test_portal_steps():
    assert PORTAL_ADVANCE_STEPS == {1, 2, 4}


@pytest.mark.parametrize(
    "status, step, expected",
    [
        (WorkflowStatus.ACTIVE, 1, InfluencerStatus.ANALYZING),
        (WorkflowStatus.ACTIVE, 2, InfluencerStatus.AGREED),
        (WorkflowStatus.ACTIVE, 3, InfluencerStatus.PRODUCT_SELECTION),
        (WorkflowStatus.ACTIVE, 4, InfluencerStatus.CONTRACT_PENDING),
        (WorkflowStatus.ACTIVE, 5, InfluencerStatus.SHIPPED),
        (WorkflowStatus.COMPLETED, 5, InfluencerStatus.COMPLETED),
        (WorkflowStatus.CANCELLED, 3, InfluencerStatus.CANCELLED),
        ("RESTARTED", 5, InfluencerStatus.ANALYZING),
    ],
)
def test_influencer_status_projection(status, step, expected):
    assert influencer_status_for(status, step) == expected
