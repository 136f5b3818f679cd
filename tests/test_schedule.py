import math
import os
import sys
from datetime import date, timedelta

# Ensure project root is on sys.path so tests can import local modules
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest

from peptide_schedule import (
    MAX_SIMULATION_WEEKS,
    BacWaterItem,
    ContainerTracker,
    ProtocolStep,
    SyringeBoxItem,
    SyringeConfig,
    SyringeTracker,
    Vial,
    dose_for_week,
    mixing_protocol,
    next_reorder_date,
    protocol_week_for,
    reorder_date,
    simulate,
    summarize,
)

START = date(2026, 1, 4)


def single_vial_run(discount_percent=0.0, on_hand=True):
    return simulate(
        vials=[Vial(id="1", name="Peptide 1", cost=109.0, mg=30.0, water_added_ml=1.2, on_hand=on_hand)],
        bac_water=[BacWaterItem(id="1", name="Bac Water 1", size_ml=3.0, cost=7.0, on_hand=on_hand)],
        syringe_config=SyringeConfig(size_ml=1.0),
        syringe_boxes=[SyringeBoxItem(id="1", name="Syringe Box 1", cost=20.0, count_per_box=100,
                                      size_ml=1.0, on_hand=on_hand)],
        protocol_steps=[ProtocolStep(id="1", start_week=1, end_week=None, dosage_mg=2.5)],
        start_date=START,
        start_protocol_week=1,
        discount_percent=discount_percent,
        reorder_lead_weeks=2,
    )


def test_dose_for_week_picks_matching_step():
    steps = [
        ProtocolStep(id="1", start_week=1, end_week=4, dosage_mg=2.5),
        ProtocolStep(id="2", start_week=5, end_week=8, dosage_mg=5.0),
        ProtocolStep(id="3", start_week=9, end_week=None, dosage_mg=7.5),
    ]
    assert dose_for_week(1, steps) == 2.5
    assert dose_for_week(4, steps) == 2.5
    assert dose_for_week(5, steps) == 5.0
    assert dose_for_week(200, steps) == 7.5


def test_dose_for_week_fallbacks():
    # Past the last step's start the last dose carries on, even for a closed step
    closed = [ProtocolStep(id="1", start_week=1, end_week=4, dosage_mg=2.5)]
    assert dose_for_week(10, closed) == 2.5
    # Before the first step, or in a gap, nothing is prescribed
    late_start = [ProtocolStep(id="1", start_week=3, end_week=None, dosage_mg=2.5)]
    assert dose_for_week(1, late_start) == 0
    gap = [ProtocolStep(id="1", start_week=1, end_week=2, dosage_mg=5.0),
           ProtocolStep(id="2", start_week=5, end_week=None, dosage_mg=5.0)]
    assert dose_for_week(3, gap) == 0
    assert dose_for_week(1, []) == 0


def test_container_tracker_opens_as_many_as_needed():
    bottles = [BacWaterItem(id="1", name="A", size_ml=3.0, cost=7.0, on_hand=True),
               BacWaterItem(id="2", name="B", size_ml=3.0, cost=9.0, on_hand=False)]
    tracker = ContainerTracker(bottles, "size_ml", None)
    report = tracker.ensure(5.0)
    assert report.opened == 2
    assert report.purchased
    assert math.isclose(report.cash, 9.0)
    assert math.isclose(tracker.remaining, 1.0)
    assert tracker.active.name == "B"

    # Only 1 mL left; the list is exhausted so the last bottle is bought again
    report = tracker.ensure(2.0)
    assert report.opened == 1
    assert math.isclose(report.cash, 9.0)
    assert report.notes == ["Auto-reordered B"]
    assert math.isclose(tracker.remaining, 2.0)


def test_container_tracker_uses_fallback_for_empty_list():
    fallback = BacWaterItem(id="default", name="Default Water", size_ml=10.0, cost=0.0)
    tracker = ContainerTracker([], "size_ml", fallback)
    report = tracker.ensure(1.2)
    assert report.opened == 1
    assert report.cash == 0.0
    assert math.isclose(tracker.cost_per_unit(), 0.0)


def test_container_tracker_rejects_reordering_zero_capacity():
    tracker = ContainerTracker([BacWaterItem(id="1", name="Empty", size_ml=0.0, cost=1.0)], "size_ml", None)
    with pytest.raises(ValueError, match="Empty must have size_ml > 0"):
        tracker.ensure(1.0)


def test_container_tracker_skips_zero_capacity_item():
    bottles = [BacWaterItem(id="1", name="Empty", size_ml=0.0, cost=1.0),
               BacWaterItem(id="2", name="Full", size_ml=10.0, cost=7.0)]
    tracker = ContainerTracker(bottles, "size_ml", None)
    report = tracker.ensure(1.0)
    assert report.opened == 2
    assert report.notes == []
    assert math.isclose(tracker.remaining, 9.0)
    assert tracker.active.name == "Full"


def test_syringe_tracker_uses_one_per_call():
    boxes = [SyringeBoxItem(id="1", name="Box", cost=10.0, count_per_box=2, on_hand=False)]
    tracker = SyringeTracker(boxes, default_size_ml=1.0)
    first = tracker.use_one()
    second = tracker.use_one()
    third = tracker.use_one()
    assert first.opened == 1 and math.isclose(first.cash, 10.0)
    assert second.opened == 0
    assert third.opened == 1 and third.notes == ["Auto-reordered Box"]
    assert math.isclose(tracker.cost_per_unit(), 5.0)


def test_single_vial_scenario():
    result = single_vial_run()
    schedule = result.schedule
    assert len(schedule) == 12
    assert result.weeks_covered == 12

    for i, row in enumerate(schedule, start=1):
        assert row.week == i
        assert row.protocol_week == i
        assert row.date == START + timedelta(weeks=i - 1)
        assert math.isclose(row.dose_ml, 0.1)
        assert row.dose_units == 10
        assert math.isclose(row.vial_mg_remaining_after, 30.0 - 2.5 * i, abs_tol=1e-9)
        assert row.cumulative_cost == 0.0
        assert not row.warnings

    # Everything owned: value is consumed but no cash is spent
    expected_weekly = 2.5 * 109.0 / 30.0 + 20.0 / 100 + (2.5 / 30.0) * (1.2 * 7.0 / 3.0)
    assert math.isclose(schedule[0].weekly_amortized_cost, expected_weekly)
    assert math.isclose(result.avg_weekly_cost, expected_weekly)
    assert result.total_cash_cost == 0.0

    assert schedule[0].is_new_vial and schedule[0].is_new_baw and schedule[0].is_new_syringe_box
    assert not any(r.did_purchase_vial or r.did_purchase_baw or r.did_purchase_syringes for r in schedule)
    assert "Finished Peptide 1" in schedule[-1].notes
    assert schedule[-1].vial_mg_remaining_after == 0.0
    assert result.runout_date == START + timedelta(weeks=12)


def test_reorder_warning_fires_once_when_stock_runs_low():
    result = single_vial_run()
    flagged = [row.week for row in result.schedule if row.is_reorder_warning]
    # After week 11 only 2.5 mg is left against 5 mg needed in the next two weeks
    assert flagged == [11]
    assert reorder_date(result) == START + timedelta(weeks=10)


def test_purchases_count_as_cash_when_opened():
    result = single_vial_run(on_hand=False)
    first = result.schedule[0]
    assert first.did_purchase_vial and first.did_purchase_baw and first.did_purchase_syringes
    assert math.isclose(first.cumulative_cost, 109.0 + 7.0 + 20.0)
    assert math.isclose(result.total_cash_cost, 136.0)
    assert result.schedule[1].cumulative_cost == first.cumulative_cost


def test_discount_halves_costs_but_not_quantities():
    full = single_vial_run(on_hand=False)
    half = single_vial_run(discount_percent=50, on_hand=False)
    assert len(full.schedule) == len(half.schedule)
    for a, b in zip(full.schedule, half.schedule):
        assert math.isclose(b.cumulative_cost, a.cumulative_cost / 2)
        assert math.isclose(b.weekly_amortized_cost, a.weekly_amortized_cost / 2)
        assert b.dose_mg == a.dose_mg
        assert b.dose_ml == a.dose_ml
        assert b.vial_mg_remaining_after == a.vial_mg_remaining_after


def test_discount_is_clamped_at_free():
    result = single_vial_run(discount_percent=150, on_hand=False)
    assert result.total_cash_cost == 0.0
    assert result.avg_weekly_cost == 0.0


def test_dose_split_across_two_vials():
    vials = [
        Vial(id="a", name="V1", cost=100.0, mg=10.0, water_added_ml=1.0, on_hand=True),
        Vial(id="b", name="V2", cost=200.0, mg=20.0, water_added_ml=1.0, on_hand=False),
    ]
    result = simulate(
        vials=vials,
        bac_water=[BacWaterItem(id="1", name="Water", size_ml=10.0, cost=10.0)],
        syringe_config=SyringeConfig(),
        syringe_boxes=[SyringeBoxItem(id="1", name="Box", cost=0.0, count_per_box=100)],
        protocol_steps=[ProtocolStep(id="1", start_week=1, end_week=None, dosage_mg=4.0)],
        start_date=START,
    )
    schedule = result.schedule
    # 30 mg total at 4 mg/week, the final 2 mg cannot start a dose
    assert len(schedule) == 7

    split = schedule[2]
    assert split.vial_name == "V2"
    assert split.vial_mg_remaining_before == 2.0
    assert math.isclose(split.vial_mg_remaining_after, 18.0)
    assert math.isclose(split.dose_ml, 2.0 / 10.0 + 2.0 / 20.0)
    assert split.dose_units == 30
    assert split.is_new_vial and split.did_purchase_vial
    assert not split.is_new_baw
    assert "Finished V1" in split.notes and "Started V2" in split.notes
    assert math.isclose(split.cumulative_cost, 200.0)
    assert math.isclose(result.total_cash_cost, 200.0)

    # Unowned V2 does not count as stock until it is bought
    assert [row.week for row in schedule if row.is_reorder_warning] == [1, 6]


def one_step_run(vials, dosage_mg, bac_water=None):
    return simulate(
        vials=vials,
        bac_water=bac_water or [BacWaterItem(id="1", name="Water", size_ml=10.0, cost=5.0)],
        syringe_config=SyringeConfig(),
        syringe_boxes=[],
        protocol_steps=[ProtocolStep(id="1", start_week=1, end_week=None, dosage_mg=dosage_mg)],
        start_date=START,
    )


def test_exactly_divisible_vial_gives_every_dose():
    result = one_step_run([Vial(id="a", name="V", cost=60.0, mg=6.0, water_added_ml=1.0)], 1.2)
    assert len(result.schedule) == 5
    last = result.schedule[-1]
    assert last.vial_name == "V"
    assert last.vial_mg_remaining_after == 0.0
    assert "Finished V" in last.notes
    assert not any("Started" in note for row in result.schedule for note in row.notes)

    for mg, dose, weeks in [(2.0, 0.1, 20), (3.0, 0.6, 5), (5.0, 0.2, 25), (0.3, 0.1, 3), (15.0, 0.3, 50)]:
        result = one_step_run([Vial(id="a", name="V", cost=1.0, mg=mg, water_added_ml=1.0)], dose)
        assert len(result.schedule) == weeks, (mg, dose)


def test_next_vial_not_bought_early_after_exact_finish():
    vials = [
        Vial(id="a", name="V1", cost=60.0, mg=6.0, water_added_ml=1.0, on_hand=True),
        Vial(id="b", name="V2", cost=60.0, mg=6.0, water_added_ml=1.0, on_hand=False),
    ]
    schedule = one_step_run(vials, 1.2).schedule
    assert len(schedule) == 10
    assert [row.vial_name for row in schedule[:5]] == ["V1"] * 5
    assert not any(row.did_purchase_vial for row in schedule[:5])
    assert "Finished V1" in schedule[4].notes and "Started V2" not in schedule[4].notes
    assert schedule[4].cumulative_cost == 0.0
    sixth = schedule[5]
    assert sixth.vial_name == "V2"
    assert sixth.is_new_vial and sixth.did_purchase_vial
    assert math.isclose(sixth.vial_mg_remaining_after, 4.8)
    assert math.isclose(sixth.cumulative_cost, 60.0)
    assert schedule[-1].vial_mg_remaining_after == 0.0


def test_zero_size_bac_water_is_skipped():
    water = [BacWaterItem(id="1", name="Bad", size_ml=0.0, cost=3.0),
             BacWaterItem(id="2", name="Good", size_ml=10.0, cost=7.0)]
    result = one_step_run([Vial(id="a", name="V", cost=10.0, mg=10.0, water_added_ml=1.0)], 1.0, bac_water=water)
    assert len(result.schedule) == 10
    assert result.schedule[0].is_new_baw
    assert result.total_cash_cost == 0.0


def test_bac_water_auto_reorder_and_syringe_warning():
    vials = [
        Vial(id="a", name="A", cost=30.0, mg=3.0, water_added_ml=1.5),
        Vial(id="b", name="B", cost=30.0, mg=3.0, water_added_ml=1.5),
    ]
    result = simulate(
        vials=vials,
        bac_water=[BacWaterItem(id="1", name="Bac Water 1", size_ml=2.0, cost=7.0)],
        syringe_config=SyringeConfig(),
        syringe_boxes=[SyringeBoxItem(id="1", name="Box", cost=20.0, count_per_box=100, size_ml=1.0)],
        protocol_steps=[ProtocolStep(id="1", start_week=1, end_week=None, dosage_mg=3.0)],
        start_date=START,
    )
    assert len(result.schedule) == 2
    first, second = result.schedule
    assert first.notes.count("Finished A") == 1
    assert "Finished A" not in second.notes
    assert second.is_new_baw and second.did_purchase_baw
    assert "Auto-reordered Bac Water 1" in second.notes
    assert math.isclose(second.cumulative_cost, 7.0)
    assert math.isclose(second.dose_ml, 1.5)
    assert second.warnings == ["Dose (1.50mL) exceeds syringe (1.0mL)"]
    assert first.warnings == second.warnings


def test_mid_dose_depletion_keeps_row_and_stops():
    vials = [
        Vial(id="a", name="Big", cost=10.0, mg=5.0, water_added_ml=1.0),
        Vial(id="b", name="Tiny", cost=10.0, mg=1.0, water_added_ml=1.0),
    ]
    result = simulate(
        vials=vials,
        bac_water=[BacWaterItem(id="1", name="Water", size_ml=10.0, cost=5.0)],
        syringe_config=SyringeConfig(),
        syringe_boxes=[],
        protocol_steps=[ProtocolStep(id="1", start_week=1, end_week=None, dosage_mg=4.0)],
        start_date=START,
    )
    assert len(result.schedule) == 2
    last = result.schedule[-1]
    assert "Stock depleted mid-dose" in last.notes
    assert last.vial_name == "Tiny"
    assert last.vial_mg_remaining_after == 0.0
    assert not last.is_reorder_warning


def test_empty_protocol_gives_empty_result():
    result = simulate(
        vials=[Vial(id="1", name="P", cost=1.0, mg=10.0, water_added_ml=1.0)],
        bac_water=[],
        syringe_config=SyringeConfig(),
        syringe_boxes=[],
        protocol_steps=[],
        start_date=START,
    )
    assert result.schedule == []
    assert result.weeks_covered == 0
    assert result.total_cash_cost == 0.0
    assert result.avg_weekly_cost == 0.0
    assert result.runout_date is None


def test_gap_in_protocol_stops_simulation():
    steps = [ProtocolStep(id="1", start_week=1, end_week=2, dosage_mg=1.0),
             ProtocolStep(id="2", start_week=5, end_week=None, dosage_mg=1.0)]
    result = simulate(
        vials=[Vial(id="1", name="P", cost=1.0, mg=100.0, water_added_ml=1.0)],
        bac_water=[],
        syringe_config=SyringeConfig(),
        syringe_boxes=[],
        protocol_steps=steps,
        start_date=START,
    )
    assert [row.protocol_week for row in result.schedule] == [1, 2]


def test_start_protocol_week_offsets_doses():
    steps = [ProtocolStep(id="1", start_week=1, end_week=4, dosage_mg=2.5),
             ProtocolStep(id="2", start_week=5, end_week=None, dosage_mg=5.0)]
    result = simulate(
        vials=[Vial(id="1", name="P", cost=1.0, mg=100.0, water_added_ml=2.0)],
        bac_water=[],
        syringe_config=SyringeConfig(),
        syringe_boxes=[],
        protocol_steps=steps,
        start_date=START,
        start_protocol_week=5,
    )
    first = result.schedule[0]
    assert first.week == 1
    assert first.protocol_week == 5
    assert first.dose_mg == 5.0
    assert first.date == START


def test_simulation_is_capped():
    result = simulate(
        vials=[Vial(id="1", name="Huge", cost=1.0, mg=10000.0, water_added_ml=10.0)],
        bac_water=[BacWaterItem(id="1", name="Water", size_ml=30.0, cost=1.0)],
        syringe_config=SyringeConfig(),
        syringe_boxes=[SyringeBoxItem(id="1", name="Box", cost=1.0, count_per_box=10)],
        protocol_steps=[ProtocolStep(id="1", start_week=1, end_week=None, dosage_mg=1.0)],
        start_date=START,
    )
    assert result.weeks_covered == MAX_SIMULATION_WEEKS
    opened = [row.week for row in result.schedule if row.is_new_syringe_box]
    assert opened[:3] == [1, 11, 21]


def test_simulation_is_repeatable_and_leaves_inputs_alone():
    vials = [Vial(id="1", name="P", cost=50.0, mg=10.0, water_added_ml=1.0, on_hand=False)]
    water = [BacWaterItem(id="1", name="W", size_ml=3.0, cost=5.0, on_hand=False)]
    boxes = [SyringeBoxItem(id="1", name="S", cost=20.0, count_per_box=100, on_hand=False)]
    steps = [ProtocolStep(id="1", start_week=1, end_week=None, dosage_mg=2.0)]

    first = simulate(vials, water, SyringeConfig(), boxes, steps, START, discount_percent=10)
    second = simulate(vials, water, SyringeConfig(), boxes, steps, START, discount_percent=10)
    assert first == second

    assert vials[0].current_mg == 10.0 and not vials[0].on_hand and vials[0].cost == 50.0
    assert not water[0].on_hand and water[0].cost == 5.0
    assert not boxes[0].on_hand


def test_cash_never_decreases_and_remaining_stays_in_range():
    vials = [
        Vial(id="1", name="Peptide 1", cost=109.0, mg=30.0, water_added_ml=1.2, on_hand=True),
        Vial(id="2", name="Peptide 2", cost=225.0, mg=60.0, water_added_ml=2.4, on_hand=False),
        Vial(id="3", name="Peptide 3", cost=225.0, mg=60.0, water_added_ml=2.4, on_hand=False),
    ]
    steps = [
        ProtocolStep(id="1", start_week=1, end_week=4, dosage_mg=2.5),
        ProtocolStep(id="2", start_week=5, end_week=8, dosage_mg=5.0),
        ProtocolStep(id="3", start_week=9, end_week=12, dosage_mg=7.5),
        ProtocolStep(id="4", start_week=13, end_week=None, dosage_mg=10.0),
    ]
    result = simulate(
        vials=vials,
        bac_water=[BacWaterItem(id="1", name="Bac Water 1", size_ml=3.0, cost=7.0),
                   BacWaterItem(id="2", name="Bac Water 2", size_ml=10.0, cost=15.0, on_hand=False)],
        syringe_config=SyringeConfig(),
        syringe_boxes=[SyringeBoxItem(id="1", name="Syringe Box 1", cost=20.0, count_per_box=100)],
        protocol_steps=steps,
        start_date=START,
    )
    assert result.weeks_covered > 12
    by_id = {v.id: v for v in vials}
    previous = 0.0
    for row in result.schedule:
        assert row.cumulative_cost >= previous
        previous = row.cumulative_cost
        assert 0.0 <= row.vial_mg_remaining_after <= by_id[row.vial_id].mg
    assert result.runout_date == result.schedule[-1].date + timedelta(weeks=1)
    assert result.weeks_covered == len(result.schedule)


def test_summarize_empty():
    result = summarize([])
    assert result.weeks_covered == 0
    assert result.runout_date is None


def test_next_reorder_date_ignores_past_rows():
    result = single_vial_run(on_hand=False)
    # Week 1 is a purchase; once it is behind us the week 11 reorder warning is next
    assert next_reorder_date(result, START) == START
    assert next_reorder_date(result, START + timedelta(days=1)) == START + timedelta(weeks=10)
    assert next_reorder_date(result, START + timedelta(weeks=11)) is None


def test_protocol_week_for_counts_calendar_weeks():
    # 2026-01-04 is a Sunday
    assert protocol_week_for(START, START) == 1
    assert protocol_week_for(START, date(2026, 1, 10)) == 1
    assert protocol_week_for(START, date(2026, 1, 11)) == 2
    assert protocol_week_for(date(2026, 1, 10), date(2026, 1, 11)) == 2
    assert protocol_week_for(START, date(2025, 12, 1)) == 1


def test_mixing_protocol_volumes():
    vials = [Vial(id="1", name="P", cost=1.0, mg=30.0, water_added_ml=1.2)]
    steps = [ProtocolStep(id="1", start_week=1, end_week=4, dosage_mg=2.5),
             ProtocolStep(id="2", start_week=5, end_week=None, dosage_mg=30.0)]
    mixing = mixing_protocol(vials, steps, syringe_size_ml=1.0)
    assert len(mixing) == 1
    entry = mixing[0]
    assert math.isclose(entry["concentration"], 25.0)
    low, high = entry["steps"]
    assert math.isclose(low["dose_ml"], 0.1)
    assert low["dose_units"] == 10
    assert not low["exceeds_syringe"]
    assert high["exceeds_syringe"]
    assert mixing_protocol([], steps, 1.0) == []
