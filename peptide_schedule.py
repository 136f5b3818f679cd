"""Core projection logic for peptide supply planning.

This module defines the dataclasses describing a peptide regimen and its
consumables (vials, bacteriostatic water, syringe boxes) and the weekly
simulation that walks the regimen forward. The main public function used by
the Streamlit app is `simulate`, which returns a `SimulationResult` holding
one `ScheduleRow` per simulated week plus summary figures.

The simulation never mutates the objects it is given: every run works on its
own copies, so it is safe to call on every settings change.
"""
import copy
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

SYRINGE_UNITS_PER_ML = 100  # U-100 insulin syringe markings
MAX_SIMULATION_WEEKS = 104  # two years
_EMPTY_MG = 1e-9  # remaining potency below this counts as an empty vial


@dataclass
class Vial:
    id: str
    name: str
    cost: float
    mg: float                # total peptide in the vial
    water_added_ml: float    # bac water used to reconstitute it
    on_hand: bool = True     # False means it is bought when first opened
    finished: bool = False
    current_mg: Optional[float] = None  # remaining peptide, None means untouched

    def __post_init__(self) -> None:
        if self.current_mg is None:
            self.current_mg = self.mg

    @property
    def concentration(self) -> float:
        """mg per mL once reconstituted."""
        return self.mg / self.water_added_ml


@dataclass
class BacWaterItem:
    id: str
    name: str
    size_ml: float
    cost: float
    on_hand: bool = True


@dataclass
class SyringeConfig:
    size_ml: float = 1.0  # draw capacity used when no syringe box says otherwise


@dataclass
class SyringeBoxItem:
    id: str
    name: str
    cost: float
    count_per_box: int
    size_ml: float = 1.0
    on_hand: bool = True


@dataclass
class ProtocolStep:
    id: str
    start_week: int
    end_week: Optional[int]  # None means ongoing
    dosage_mg: float


@dataclass
class ScheduleRow:
    week: int
    protocol_week: int
    date: date
    dose_mg: float
    dose_ml: float
    dose_units: int
    vial_id: str
    vial_name: str
    vial_mg_remaining_before: float
    vial_mg_remaining_after: float
    vial_ml_remaining_after: float
    cumulative_cost: float        # cash actually spent so far
    weekly_amortized_cost: float  # value consumed this week
    is_new_vial: bool = False
    is_new_baw: bool = False
    is_new_syringe_box: bool = False
    is_reorder_warning: bool = False
    did_purchase_vial: bool = False
    did_purchase_baw: bool = False
    did_purchase_syringes: bool = False
    warnings: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)


@dataclass
class SimulationResult:
    schedule: List[ScheduleRow]
    total_cash_cost: float
    avg_weekly_cost: float
    runout_date: Optional[date]
    weeks_covered: int


def dose_for_week(protocol_week: int, steps: Sequence[ProtocolStep]) -> float:
    """Return the prescribed dose (mg) for `protocol_week`.

    The first step covering the week wins. Weeks past the last step's start
    keep using the last step's dose; anything else returns 0, which callers
    treat as "no protocol defined".
    """
    for step in steps:
        if step.start_week <= protocol_week and (step.end_week is None or protocol_week <= step.end_week):
            return step.dosage_mg

    if steps and protocol_week > steps[-1].start_week:
        return steps[-1].dosage_mg
    return 0.0


@dataclass
class DrawReport:
    """What happened while serving a draw from a `ContainerTracker`."""
    opened: int = 0
    purchased: bool = False
    cash: float = 0.0
    notes: List[str] = field(default_factory=list)


class ContainerTracker:
    """Serve draws against an ordered list of fixed-capacity containers.

    Only one container is open at a time; its remaining quantity is carried
    between draws. When the configured list runs out the last container is
    re-bought as often as needed (noted as an auto-reorder).
    """

    def __init__(self, items: Sequence, capacity_attr: str, fallback) -> None:
        self.items = list(items) if items else [fallback]
        self.capacity_attr = capacity_attr
        self.cursor = 0
        self.remaining = 0.0
        self.active = None

    def _open_next(self, report: DrawReport):
        if self.cursor < len(self.items):
            item = self.items[self.cursor]
            self.cursor += 1
        else:
            item = copy.copy(self.items[-1])
            item.on_hand = False
            report.notes.append(f"Auto-reordered {item.name}")

        self.remaining += getattr(item, self.capacity_attr)
        if not item.on_hand:
            report.cash += item.cost
            report.purchased = True
            item.on_hand = True
        report.opened += 1
        self.active = item
        logger.debug("opened %s (%s=%s)", item.name, self.capacity_attr, getattr(item, self.capacity_attr))
        return item

    def ensure(self, quantity: float) -> DrawReport:
        """Open containers until `quantity` is available, then draw it."""
        report = DrawReport()
        while self.remaining < quantity:
            reordering = self.cursor >= len(self.items)
            item = self._open_next(report)
            # Re-buying an empty container would never cover the draw
            if reordering and getattr(item, self.capacity_attr) <= 0:
                raise ValueError(f"{item.name} must have {self.capacity_attr} > 0 (got {getattr(item, self.capacity_attr)}).")
        self.remaining -= quantity
        return report

    @property
    def current(self):
        return self.active if self.active is not None else self.items[0]

    def cost_per_unit(self) -> float:
        item = self.current
        capacity = getattr(item, self.capacity_attr)
        return item.cost / capacity if capacity else 0.0


class SyringeTracker(ContainerTracker):
    """Syringe boxes: one syringe is used per weekly dose, whatever its size."""

    def __init__(self, boxes: Sequence[SyringeBoxItem], default_size_ml: float) -> None:
        fallback = SyringeBoxItem(id="default", name="Default Syringes", cost=0.0,
                                  count_per_box=100, size_ml=default_size_ml)
        super().__init__(boxes, "count_per_box", fallback)

    def use_one(self) -> DrawReport:
        report = DrawReport()
        if self.remaining <= 0:
            self._open_next(report)
        self.remaining -= 1
        return report

    @property
    def size_ml(self) -> float:
        return self.current.size_ml


@dataclass
class _Week:
    """Events collected while simulating a single week."""
    notes: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    new_vial: bool = False
    new_baw: bool = False
    new_syringe_box: bool = False
    purchased_vial: bool = False
    purchased_baw: bool = False
    purchased_syringes: bool = False


def _open_vial(vial: Vial, water: ContainerTracker, events: _Week) -> float:
    """Reconstitute `vial` and return the cash spent doing so."""
    report = water.ensure(vial.water_added_ml)
    events.notes.extend(report.notes)
    if report.opened:
        events.new_baw = True
        events.purchased_baw = events.purchased_baw or report.purchased
        if "Opened new Bac Water" not in events.notes:
            events.notes.append("Opened new Bac Water")

    cash = report.cash
    if not vial.on_hand:
        cash += vial.cost
        vial.on_hand = True
        events.purchased_vial = True
    events.new_vial = True
    return cash


def _discounted_copies(items: Sequence, factor: float) -> list:
    copies = copy.deepcopy(list(items))
    for item in copies:
        item.cost = item.cost * factor
    return copies


def simulate(
    vials: Sequence[Vial],
    bac_water: Sequence[BacWaterItem],
    syringe_config: SyringeConfig,
    syringe_boxes: Sequence[SyringeBoxItem],
    protocol_steps: Sequence[ProtocolStep],
    start_date: date,
    start_protocol_week: int = 1,
    discount_percent: float = 0.0,
    reorder_lead_weeks: int = 2,
) -> SimulationResult:
    """Project the regimen week by week until supplies or protocol run out.

    Each simulated week uses one syringe, opens (and reconstitutes) vials as
    needed, and splits a dose across two vials when the active one runs dry.
    Costs are tracked two ways: `cumulative_cost` is cash spent when a
    container that was not on hand gets opened, `weekly_amortized_cost` is
    the value of what was consumed that week.

    Simulation stops when no dose is defined for the protocol week, when no
    vial is left, when a dose cannot be started, or after
    `MAX_SIMULATION_WEEKS`. A week whose dose could not be drawn at all
    produces no row; a week that drained the last vial mid-dose is kept.
    """
    factor = max(0.0, (100 - discount_percent) / 100.0)
    stock = _discounted_copies(vials, factor)
    for vial in stock:
        vial.current_mg = vial.mg
        vial.finished = False
    steps = copy.deepcopy(list(protocol_steps))

    water = ContainerTracker(
        _discounted_copies(bac_water, factor),
        "size_ml",
        BacWaterItem(id="default", name="Default Water", size_ml=10.0, cost=0.0),
    )
    syringes = SyringeTracker(_discounted_copies(syringe_boxes, factor), syringe_config.size_ml)

    schedule: List[ScheduleRow] = []
    cumulative_cash = 0.0
    vial_index = 0
    week = 1
    protocol_week = start_protocol_week
    was_low = False
    running = True
    stop_reason = f"reached {MAX_SIMULATION_WEEKS} week limit"

    while running and week <= MAX_SIMULATION_WEEKS:
        if vial_index >= len(stock):
            stop_reason = "no vials left"
            break

        vial = stock[vial_index]
        dose_mg = dose_for_week(protocol_week, steps)
        if dose_mg <= 0:
            stop_reason = f"no dose defined for protocol week {protocol_week}"
            break

        events = _Week()

        # --- Syringes ---
        syringe_report = syringes.use_one()
        cumulative_cash += syringe_report.cash
        events.notes.extend(syringe_report.notes)
        if syringe_report.opened:
            events.new_syringe_box = True
            events.purchased_syringes = syringe_report.purchased
            events.notes.append("Opened new box of syringes")
        syringe_cost = syringes.cost_per_unit()

        # --- Vial & water ---
        mg_before = vial.current_mg
        if vial.current_mg == vial.mg:
            cumulative_cash += _open_vial(vial, water, events)

        peptide_value = dose_mg * (vial.cost / vial.mg)
        water_value = (dose_mg / vial.mg) * (vial.water_added_ml * water.cost_per_unit())
        weekly_amortized = peptide_value + syringe_cost + water_value

        # --- Deduct peptide ---
        dose_ml = dose_mg / vial.concentration
        if vial.current_mg + _EMPTY_MG >= dose_mg:
            vial.current_mg -= dose_mg
            if vial.current_mg < _EMPTY_MG:
                vial.current_mg = 0.0
                vial.finished = True
                events.notes.append(f"Finished {vial.name}")
        else:
            partial_mg = vial.current_mg
            shortfall = dose_mg - partial_mg
            vial.current_mg = 0.0
            if not vial.finished:
                vial.finished = True
                events.notes.append(f"Finished {vial.name}")

            vial_index += 1
            if vial_index >= len(stock):
                stop_reason = f"stock depleted at protocol week {protocol_week}"
                break

            next_vial = stock[vial_index]
            cumulative_cash += _open_vial(next_vial, water, events)
            events.notes.append(f"Started {next_vial.name}")
            if next_vial.current_mg + _EMPTY_MG >= shortfall:
                next_vial.current_mg -= shortfall
                if next_vial.current_mg < _EMPTY_MG:
                    next_vial.current_mg = 0.0
                    next_vial.finished = True
                    events.notes.append(f"Finished {next_vial.name}")
            else:
                next_vial.current_mg = 0.0
                next_vial.finished = True
                events.notes.append("Stock depleted mid-dose")
                stop_reason = f"stock depleted mid-dose at protocol week {protocol_week}"
                running = False
            # Drawn from two vials in one syringe.
            dose_ml = partial_mg / vial.concentration + shortfall / next_vial.concentration

        active = stock[vial_index]
        ml_after = active.current_mg / active.concentration

        if dose_ml > syringes.size_ml:
            events.warnings.append(f"Dose ({dose_ml:.2f}mL) exceeds syringe ({syringes.size_ml}mL)")

        # --- Reorder check ---
        owned_mg = sum(v.current_mg for v in stock[vial_index:] if v.on_hand)
        upcoming_mg = sum(dose_for_week(protocol_week + k, steps) for k in range(1, reorder_lead_weeks + 1))
        is_low = 0 < owned_mg < upcoming_mg

        schedule.append(ScheduleRow(
            week=week,
            protocol_week=protocol_week,
            date=start_date + timedelta(weeks=week - 1),
            dose_mg=dose_mg,
            dose_ml=dose_ml,
            dose_units=int(round(dose_ml * SYRINGE_UNITS_PER_ML)),
            vial_id=active.id,
            vial_name=active.name,
            vial_mg_remaining_before=mg_before,
            vial_mg_remaining_after=active.current_mg,
            vial_ml_remaining_after=ml_after,
            cumulative_cost=cumulative_cash,
            weekly_amortized_cost=weekly_amortized,
            is_new_vial=events.new_vial,
            is_new_baw=events.new_baw,
            is_new_syringe_box=events.new_syringe_box,
            is_reorder_warning=is_low and not was_low,
            did_purchase_vial=events.purchased_vial,
            did_purchase_baw=events.purchased_baw,
            did_purchase_syringes=events.purchased_syringes,
            warnings=events.warnings,
            notes=events.notes,
        ))
        was_low = is_low
        week += 1
        protocol_week += 1

    logger.debug("simulation stopped after %d weeks: %s", len(schedule), stop_reason)
    return summarize(schedule)


def summarize(schedule: List[ScheduleRow]) -> SimulationResult:
    """Reduce a list of schedule rows into a `SimulationResult`."""
    if not schedule:
        return SimulationResult(schedule=[], total_cash_cost=0.0, avg_weekly_cost=0.0,
                                runout_date=None, weeks_covered=0)

    total_amortized = sum(row.weekly_amortized_cost for row in schedule)
    return SimulationResult(
        schedule=schedule,
        total_cash_cost=schedule[-1].cumulative_cost,
        avg_weekly_cost=total_amortized / len(schedule),
        runout_date=schedule[-1].date + timedelta(weeks=1),
        weeks_covered=len(schedule),
    )


def reorder_date(result: SimulationResult) -> Optional[date]:
    """Date of the week the reorder warning fires, if it ever does."""
    for row in result.schedule:
        if row.is_reorder_warning:
            return row.date
    return None


def next_reorder_date(result: SimulationResult, today: date) -> Optional[date]:
    """Earliest date from `today` on that needs a reorder or a purchase."""
    dates = [
        row.date for row in result.schedule
        if (row.is_reorder_warning or row.did_purchase_vial or row.did_purchase_baw or row.did_purchase_syringes)
        and row.date >= today
    ]
    return min(dates) if dates else None


def _week_start(d: date) -> date:
    # Weeks start on Sunday.
    return d - timedelta(days=(d.weekday() + 1) % 7)


def protocol_week_for(start_date: date, current_date: date) -> int:
    """Protocol week that `current_date` falls in for a regimen begun on `start_date`."""
    weeks = (_week_start(current_date) - _week_start(start_date)).days // 7
    return max(1, weeks + 1)


def mixing_protocol(vials: Sequence[Vial], steps: Sequence[ProtocolStep], syringe_size_ml: float) -> List[Dict[str, object]]:
    """Return reconstitution and per-step draw volumes for each vial.

    Returns list of dicts: {"vial": Vial, "concentration": float, "steps": [...]}
    where each step entry holds the step, its draw volume in mL, the syringe
    units and whether the draw exceeds `syringe_size_ml`.
    """
    if not vials or not steps:
        return []

    mixing = []
    for vial in vials:
        concentration = vial.concentration
        per_step = []
        for step in steps:
            dose_ml = step.dosage_mg / concentration
            per_step.append({
                "step": step,
                "dose_ml": dose_ml,
                "dose_units": int(round(dose_ml * SYRINGE_UNITS_PER_ML)),
                "exceeds_syringe": dose_ml > syringe_size_ml,
            })
        mixing.append({"vial": vial, "concentration": concentration, "steps": per_step})
    return mixing


if __name__ == "__main__":
    # Quick self-check
    result = simulate(
        vials=[Vial(id="1", name="Peptide 1", cost=109.0, mg=30.0, water_added_ml=1.2)],
        bac_water=[BacWaterItem(id="1", name="Bac Water 1", size_ml=3.0, cost=7.0)],
        syringe_config=SyringeConfig(),
        syringe_boxes=[SyringeBoxItem(id="1", name="Syringe Box 1", cost=20.0, count_per_box=100)],
        protocol_steps=[ProtocolStep(id="1", start_week=1, end_week=None, dosage_mg=2.5)],
        start_date=date.today(),
    )
    print(result.weeks_covered, result.total_cash_cost, result.runout_date)
