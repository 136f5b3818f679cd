"""Streamlit front-end for the Peptide Supply Planner.

Lets a user describe their vials, bac water, syringes and dosing protocol,
then shows the mixing instructions and the projected weekly schedule. It
leverages `peptide_schedule.simulate` through `peptide_settings.simulate_settings`.
"""
# Standard library imports first
from datetime import date, datetime
import logging
from typing import List, Optional

# Third-party imports
import pandas as pd
import streamlit as st

# Local imports
from peptide_export import (
    clean_cell,
    format_csv,
    format_long_date,
    format_markdown,
    format_step_range,
    list_saved_exports,
    save_export,
    schedule_dataframe,
    schedule_records,
    slugify,
    summary_header,
    EXPORT_DIR,
)
from peptide_schedule import (
    BacWaterItem,
    ProtocolStep,
    SimulationResult,
    SyringeBoxItem,
    SyringeConfig,
    Vial,
    mixing_protocol,
    next_reorder_date,
)
from peptide_settings import (
    BAC_WATER_FIELDS,
    PROTOCOL_FIELDS,
    SYRINGE_BOX_FIELDS,
    VIAL_FIELDS,
    PlannerSettings,
    load_settings,
    reset_settings,
    save_settings,
    simulate_settings,
    validate_settings,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Must set page config before creating any UI elements
st.set_page_config(
    page_title="PeptideCalc",
    layout="wide",
    initial_sidebar_state="expanded",
)


def _frame(items, fields) -> pd.DataFrame:
    return pd.DataFrame([{f: getattr(item, f) for f in fields} for item in items], columns=list(fields))


def _rows(df: pd.DataFrame) -> List[dict]:
    rows = []
    for i, record in enumerate(df.to_dict("records"), start=1):
        row = {k: clean_cell(v) for k, v in record.items()}
        if not row.get("id"):
            row["id"] = str(i)
        rows.append(row)
    return rows


def inventory_editor(label: str, key: str, items, fields, build) -> list:
    st.markdown(f"#### {label}")
    edited = st.data_editor(_frame(items, fields), num_rows="dynamic", use_container_width=True, key=key)
    built = []
    for row in _rows(edited):
        # Incomplete rows (still being typed) are skipped rather than rejected.
        try:
            built.append(build(row))
        except (TypeError, ValueError):
            continue
    return built


def _text(value) -> str:
    return "" if value is None else str(value)


def _vial(row: dict) -> Vial:
    return Vial(id=str(row["id"]), name=_text(row["name"]), cost=float(row["cost"]), mg=float(row["mg"]),
                water_added_ml=float(row["water_added_ml"]), on_hand=bool(row.get("on_hand", True)))


def _bac_water(row: dict) -> BacWaterItem:
    return BacWaterItem(id=str(row["id"]), name=_text(row["name"]), size_ml=float(row["size_ml"]),
                        cost=float(row["cost"]), on_hand=bool(row.get("on_hand", True)))


def _syringe_box(row: dict) -> SyringeBoxItem:
    return SyringeBoxItem(id=str(row["id"]), name=_text(row["name"]), cost=float(row["cost"]),
                          count_per_box=int(row["count_per_box"]), size_ml=float(row["size_ml"]),
                          on_hand=bool(row.get("on_hand", True)))


def _protocol_step(row: dict) -> ProtocolStep:
    end_week = row.get("end_week")
    return ProtocolStep(id=str(row["id"]), start_week=int(row["start_week"]),
                        end_week=int(end_week) if end_week is not None else None,
                        dosage_mg=float(row["dosage_mg"]))


def settings_sidebar(saved: PlannerSettings) -> PlannerSettings:
    """Render the settings sidebar and return the settings it describes."""
    with st.sidebar:
        st.header("Settings")
        col1, col2 = st.columns(2)
        with col1:
            start_date = st.date_input("Protocol start date", value=saved.start_date, key="start_date")
        with col2:
            current_date = st.date_input("Current date", value=saved.current_date, key="current_date")

        discount = st.number_input("Discount (%)", min_value=0.0, max_value=100.0,
                                   value=float(saved.discount_percent), step=1.0, key="discount")
        lead_weeks = st.number_input("Reorder lead time (weeks)", min_value=1, max_value=26,
                                     value=int(saved.reorder_lead_weeks), step=1, key="lead_weeks")

        with st.expander("Peptides", expanded=True):
            vials = inventory_editor("Vials", "vials_editor", saved.vials, VIAL_FIELDS, _vial)
        with st.expander("Bacteriostatic water"):
            bac_water = inventory_editor("Bottles", "baw_editor", saved.bac_water, BAC_WATER_FIELDS, _bac_water)
        with st.expander("Syringes"):
            syringe_boxes = inventory_editor("Boxes", "syringe_editor", saved.syringe_boxes,
                                             SYRINGE_BOX_FIELDS, _syringe_box)
        with st.expander("Protocol", expanded=True):
            st.caption("Leave End week empty for an ongoing step.")
            steps = inventory_editor("Steps", "protocol_editor", saved.protocol_steps,
                                     PROTOCOL_FIELDS, _protocol_step)

    return PlannerSettings(
        vials=vials,
        bac_water=bac_water,
        syringe_config=SyringeConfig(size_ml=saved.syringe_config.size_ml),
        syringe_boxes=syringe_boxes,
        protocol_steps=steps,
        start_date=start_date,
        current_date=current_date,
        discount_percent=float(discount),
        reorder_lead_weeks=int(lead_weeks),
    )


def header_metrics(simulation: SimulationResult) -> None:
    reorder = next_reorder_date(simulation, date.today())
    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Planned thru", format_long_date(simulation.runout_date), f"{simulation.weeks_covered} weeks")
    col2.metric("Avg $/wk", f"${simulation.avg_weekly_cost:.2f}")
    col3.metric("Next reorder", format_long_date(reorder) if reorder else "—")
    col4.metric("Total spend", f"${simulation.total_cash_cost:,.2f}")


def mixing_view(settings: PlannerSettings) -> None:
    st.subheader("Mixing Protocol")
    syringe_size = settings.active_syringe_size
    st.caption(f"Ingredients: peptide vial(s), bacteriostatic water, and {syringe_size} mL syringes.")
    for entry in mixing_protocol(settings.vials, settings.protocol_steps, syringe_size):
        vial = entry["vial"]
        st.markdown(f"**{vial.name}**: add **{vial.water_added_ml} mL** Bac Water to **{vial.mg} mg** powder "
                    f"→ {entry['concentration']:.2f} mg/mL")
        table = pd.DataFrame([
            {
                "Protocol": format_step_range(s["step"]),
                "Dose": f"{s['step'].dosage_mg} mg",
                "Draw Volume": f"{s['dose_ml']:.2f} mL",
                "Syringe Units": f"{s['dose_units']} units" + (f" (exceeds {syringe_size} mL)" if s["exceeds_syringe"] else ""),
            }
            for s in entry["steps"]
        ])
        st.dataframe(table, hide_index=True, use_container_width=True)


def dosing_view(simulation: SimulationResult) -> None:
    st.subheader("Dosing Schedule")
    if not simulation.schedule:
        st.info("No weeks could be projected. Check the protocol and vial inventory.")
        return
    warnings = [f"Week {row.protocol_week}: {w}" for row in simulation.schedule for w in row.warnings]
    for w in warnings[:5]:
        st.warning(w)
    st.dataframe(schedule_dataframe(simulation), hide_index=True, use_container_width=True)


def export_section(settings: PlannerSettings, simulation: SimulationResult) -> None:
    st.markdown("### Export")
    markdown = format_markdown(
        simulation,
        vials=settings.vials,
        bac_water=settings.bac_water,
        syringe_boxes=settings.syringe_boxes,
        protocol_steps=settings.protocol_steps,
        start_date=settings.start_date,
        current_date=settings.current_date,
        discount_percent=settings.discount_percent,
        reorder_lead_weeks=settings.reorder_lead_weeks,
    )
    csv_content = format_csv(schedule_records(simulation), summary=summary_header(simulation, title="PeptideCalc"))

    default_name = st.session_state.get(
        "_download_name",
        f"peptide_schedule_{datetime.utcnow().strftime('%Y%m%dT%H%M%SZ')}",
    )
    download_name = st.text_input("Download filename", value=default_name,
                                  help="Enter a filename (will be sanitized)")
    base = slugify(download_name)
    st.session_state["_download_name"] = base

    col1, col2, col3 = st.columns(3)
    with col1:
        st.download_button("Download Markdown", data=markdown, file_name=f"{base}.md", mime="text/markdown")
    with col2:
        st.download_button("Download CSV", data=csv_content, file_name=f"{base}.csv", mime="text/csv")
    with col3:
        if st.button(f"Save to server ({EXPORT_DIR}/)"):
            try:
                path = save_export(csv_content, filename=f"{base}.csv")
                save_export(markdown, filename=f"{base}.md", extension="md")
                st.success(f"Saved exports to {path} (+ .md)")
            except OSError as e:
                st.error(f"Error saving export: {e}")

    with st.expander("Markdown preview"):
        st.code(markdown, language="markdown")

    saved_files = list_saved_exports()
    if saved_files:
        st.caption("Saved exports: " + ", ".join(saved_files[:10]))


def inject_custom_css(dark_mode: bool = False) -> None:
    """Inject optional dark mode overrides."""
    if not dark_mode:
        return
    css = r"""
    :root { --bg: #0b1220; --card: #0f1724; --text: #e6eef8; --accent: #2b8cff; }
    .stApp, .stApp .main, .stApp .block-container {
        background-color: var(--bg) !important;
        color: var(--text) !important;
    }
    .stMarkdown, .stMetric, .stDataFrame, .stExpander {
        color: var(--text) !important;
    }
    a { color: var(--accent) !important; }
    """
    st.markdown(f"<style>{css}</style>", unsafe_allow_html=True)


def main():
    st.title("PeptideCalc")
    st.markdown("Project how long your peptide, bac water and syringes last, and what they cost.")

    action = st.sidebar.selectbox("Actions", options=("None", "Reset to defaults"))
    if action == "Reset to defaults":
        reset_settings()
        for k in list(st.session_state.keys()):
            del st.session_state[k]
        st.rerun()

    dark_mode = st.sidebar.checkbox("Dark mode", value=False, key="dark_mode")
    inject_custom_css(dark_mode=dark_mode)

    saved: Optional[PlannerSettings] = st.session_state.get("_settings") or load_settings() or PlannerSettings()
    st.session_state["_settings"] = saved
    settings = settings_sidebar(saved)

    try:
        validate_settings(settings)
    except ValueError as e:
        st.error(f"Invalid settings: {e}")
        st.stop()

    try:
        save_settings(settings)
    except OSError as e:
        logger.warning("could not save settings: %s", e)

    simulation = simulate_settings(settings)
    header_metrics(simulation)

    mixing_tab, dosing_tab = st.tabs(["Mixing", "Dosing"])
    with mixing_tab:
        mixing_view(settings)
    with dosing_tab:
        dosing_view(simulation)

    st.markdown("---")
    export_section(settings, simulation)


if __name__ == "__main__":
    main()
