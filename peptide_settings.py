"""Settings persistence for the peptide planner.

Settings are kept as a single JSON document on disk. Loading is forgiving:
older or hand-edited files with missing optional fields are filled in with
defaults, and an unreadable file simply means "start from defaults".
"""
from dataclasses import dataclass, field
from datetime import date, timedelta
import json
import logging
import os
from typing import List, Optional

from peptide_schedule import (
    BacWaterItem,
    ProtocolStep,
    SimulationResult,
    SyringeBoxItem,
    SyringeConfig,
    Vial,
    protocol_week_for,
    simulate,
)

logger = logging.getLogger(__name__)

SETTINGS_ENV_VAR = "PEPTIDE_SETTINGS_PATH"
DEFAULT_SETTINGS_PATH = os.path.join("settings", "peptide_settings.json")

VIAL_FIELDS = ("id", "name", "cost", "mg", "water_added_ml", "on_hand")
BAC_WATER_FIELDS = ("id", "name", "size_ml", "cost", "on_hand")
SYRINGE_BOX_FIELDS = ("id", "name", "cost", "count_per_box", "size_ml", "on_hand")
PROTOCOL_FIELDS = ("id", "start_week", "end_week", "dosage_mg")


def default_vials() -> List[Vial]:
    return [
        Vial(id="1", name="Peptide 1", cost=109.0, mg=30.0, water_added_ml=1.2, on_hand=True),
        Vial(id="2", name="Peptide 2", cost=225.0, mg=60.0, water_added_ml=2.4, on_hand=False),
        Vial(id="3", name="Peptide 3", cost=225.0, mg=60.0, water_added_ml=2.4, on_hand=False),
    ]


def default_bac_water() -> List[BacWaterItem]:
    return [
        BacWaterItem(id="1", name="Bac Water 1", size_ml=3.0, cost=7.0, on_hand=True),
        BacWaterItem(id="2", name="Bac Water 2", size_ml=10.0, cost=15.0, on_hand=False),
    ]


def default_syringe_boxes() -> List[SyringeBoxItem]:
    return [
        SyringeBoxItem(id="1", name="Syringe Box 1", cost=20.0, count_per_box=100, size_ml=1.0, on_hand=True),
        SyringeBoxItem(id="2", name="Syringe Box 2", cost=20.0, count_per_box=100, size_ml=1.0, on_hand=False),
    ]


def default_protocol() -> List[ProtocolStep]:
    return [
        ProtocolStep(id="1", start_week=1, end_week=4, dosage_mg=2.5),
        ProtocolStep(id="2", start_week=5, end_week=8, dosage_mg=5.0),
        ProtocolStep(id="3", start_week=9, end_week=12, dosage_mg=7.5),
        ProtocolStep(id="4", start_week=13, end_week=None, dosage_mg=10.0),
    ]


@dataclass
class PlannerSettings:
    vials: List[Vial] = field(default_factory=default_vials)
    bac_water: List[BacWaterItem] = field(default_factory=default_bac_water)
    syringe_config: SyringeConfig = field(default_factory=SyringeConfig)
    syringe_boxes: List[SyringeBoxItem] = field(default_factory=default_syringe_boxes)
    protocol_steps: List[ProtocolStep] = field(default_factory=default_protocol)
    start_date: date = field(default_factory=date.today)
    current_date: date = field(default_factory=date.today)
    discount_percent: float = 0.0
    reorder_lead_weeks: int = 2

    @property
    def start_protocol_week(self) -> int:
        return protocol_week_for(self.start_date, self.current_date)

    @property
    def active_syringe_size(self) -> float:
        """Size of the first owned syringe box, falling back to the syringe config."""
        for box in self.syringe_boxes:
            if box.on_hand:
                return box.size_ml
        if self.syringe_boxes:
            return self.syringe_boxes[0].size_ml
        return self.syringe_config.size_ml


def simulate_settings(settings: PlannerSettings) -> SimulationResult:
    return simulate(
        vials=settings.vials,
        bac_water=settings.bac_water,
        syringe_config=settings.syringe_config,
        syringe_boxes=settings.syringe_boxes,
        protocol_steps=settings.protocol_steps,
        start_date=settings.start_date,
        start_protocol_week=settings.start_protocol_week,
        discount_percent=settings.discount_percent,
        reorder_lead_weeks=settings.reorder_lead_weeks,
    )


def settings_path() -> str:
    return os.environ.get(SETTINGS_ENV_VAR) or DEFAULT_SETTINGS_PATH


def _pick(item, fields) -> dict:
    return {name: getattr(item, name) for name in fields}


def to_payload(settings: PlannerSettings) -> dict:
    """Return a JSON-ready dict for `settings`."""
    return {
        "vials": [_pick(v, VIAL_FIELDS) for v in settings.vials],
        "bac_water": [_pick(b, BAC_WATER_FIELDS) for b in settings.bac_water],
        "syringe_config": {"size_ml": settings.syringe_config.size_ml},
        "syringe_boxes": [_pick(s, SYRINGE_BOX_FIELDS) for s in settings.syringe_boxes],
        "protocol_steps": [_pick(p, PROTOCOL_FIELDS) for p in settings.protocol_steps],
        "start_date": settings.start_date.isoformat(),
        "current_date": settings.current_date.isoformat(),
        "discount_percent": settings.discount_percent,
        "reorder_lead_weeks": settings.reorder_lead_weeks,
    }


def _build(cls, data: dict, fields, **defaults):
    values = dict(defaults)
    values.update({k: data[k] for k in fields if data.get(k) is not None})
    return cls(**values)


def from_payload(payload: dict, today: Optional[date] = None) -> Optional[PlannerSettings]:
    """Build settings from a stored payload, or None if it is unusable.

    Absent `on_hand` flags count as owned, absent syringe boxes fall back to
    the defaults, and a legacy `start_week` is turned into a current date.
    """
    today = today or date.today()
    if not isinstance(payload, dict):
        return None
    required = ("vials", "bac_water", "syringe_config", "protocol_steps")
    if any(payload.get(key) is None for key in required):
        return None

    try:
        syringe_config = _build(SyringeConfig, payload["syringe_config"], ("size_ml",))
        vials = [_build(Vial, v, VIAL_FIELDS, on_hand=True) for v in payload["vials"]]
        bac_water = [_build(BacWaterItem, b, BAC_WATER_FIELDS, on_hand=True) for b in payload["bac_water"]]
        if payload.get("syringe_boxes") is None:
            syringe_boxes = default_syringe_boxes()
        else:
            syringe_boxes = [
                _build(SyringeBoxItem, s, SYRINGE_BOX_FIELDS, on_hand=True, size_ml=syringe_config.size_ml or 1.0)
                for s in payload["syringe_boxes"]
            ]
        steps = [_build(ProtocolStep, p, PROTOCOL_FIELDS, end_week=None) for p in payload["protocol_steps"]]

        start_date = date.fromisoformat(payload["start_date"]) if payload.get("start_date") else today
        if payload.get("current_date"):
            current_date = date.fromisoformat(payload["current_date"])
        elif payload.get("start_week") and int(payload["start_week"]) > 1 and payload.get("start_date"):
            current_date = start_date + timedelta(weeks=int(payload["start_week"]) - 1)
        else:
            current_date = today

        return PlannerSettings(
            vials=vials,
            bac_water=bac_water,
            syringe_config=syringe_config,
            syringe_boxes=syringe_boxes,
            protocol_steps=steps,
            start_date=start_date,
            current_date=current_date,
            discount_percent=float(payload.get("discount_percent", 0.0)),
            reorder_lead_weeks=int(payload.get("reorder_lead_weeks", 2)),
        )
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.warning("ignoring malformed settings payload: %s", e)
        return None


def load_settings(path: Optional[str] = None) -> Optional[PlannerSettings]:
    """Load settings from `path` (or the configured location).

    Returns None when nothing usable is stored, so callers fall back to defaults.
    """
    path = path or settings_path()
    if not os.path.isfile(path):
        return None
    try:
        with open(path, "r", encoding="utf-8") as fh:
            payload = json.load(fh)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("could not read settings from %s: %s", path, e)
        return None
    return from_payload(payload)


def save_settings(settings: PlannerSettings, path: Optional[str] = None) -> str:
    """Write settings as JSON and return the file path."""
    path = path or settings_path()
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(to_payload(settings), fh, indent=2)
    logger.info("saved settings to %s", path)
    return path


def reset_settings(path: Optional[str] = None) -> None:
    path = path or settings_path()
    if os.path.exists(path):
        os.remove(path)
        logger.info("removed stored settings %s", path)


# --------------------------
# Configuration validators
# --------------------------
def validate_settings(settings: PlannerSettings) -> None:
    """Raise ValueError if the settings would make the simulation meaningless.

    The simulation itself does not validate its inputs; this is the check the
    front-end runs before calling it.
    """
    for v in settings.vials:
        _validate_positive(f"{v.name} mg", v.mg)
        _validate_positive(f"{v.name} water_added_ml", v.water_added_ml)
        _validate_non_negative(f"{v.name} cost", v.cost)
    for b in settings.bac_water:
        _validate_positive(f"{b.name} size_ml", b.size_ml)
        _validate_non_negative(f"{b.name} cost", b.cost)
    for s in settings.syringe_boxes:
        _validate_positive_int(f"{s.name} count_per_box", s.count_per_box)
        _validate_positive(f"{s.name} size_ml", s.size_ml)
        _validate_non_negative(f"{s.name} cost", s.cost)
    _validate_positive("syringe size_ml", settings.syringe_config.size_ml)
    for p in settings.protocol_steps:
        _validate_positive_int(f"step {p.id} start_week", p.start_week)
        _validate_non_negative(f"step {p.id} dosage_mg", p.dosage_mg)
        if p.end_week is not None and p.end_week < p.start_week:
            raise ValueError(f"step {p.id} end_week must be >= start_week (got {p.end_week}).")
    if not (0 <= settings.discount_percent <= 100):
        raise ValueError(f"discount_percent must be between 0 and 100 (got {settings.discount_percent}).")
    _validate_positive_int("reorder_lead_weeks", settings.reorder_lead_weeks)


def _validate_positive(name: str, x: float) -> None:
    if not (x > 0):
        raise ValueError(f"{name} must be > 0 (got {x}).")

def _validate_non_negative(name: str, x: float) -> None:
    if x < 0:
        raise ValueError(f"{name} must be >= 0 (got {x}).")

def _validate_positive_int(name: str, x: int) -> None:
    if not (isinstance(x, int) and x > 0):
        raise ValueError(f"{name} must be a positive integer (got {x}).")
