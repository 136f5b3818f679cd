from datetime import date, timedelta

from peptide_schedule import next_reorder_date
import peptide_export as export
from peptide_settings import PlannerSettings, simulate_settings

# Default inventory and protocol, started four weeks ago
today = date.today()
settings = PlannerSettings(start_date=today - timedelta(weeks=4), current_date=today)

result = simulate_settings(settings)

print(f"Protocol week today: {settings.start_protocol_week}")
print(f"Weeks covered: {result.weeks_covered}")
print(f"Total cash: ${result.total_cash_cost:,.2f}")
print(f"Avg weekly: ${result.avg_weekly_cost:.2f}")
print(f"Runout: {export.format_long_date(result.runout_date)}")
print(f"Next reorder: {export.format_long_date(next_reorder_date(result, today))}")

markdown = export.format_markdown(
    result,
    vials=settings.vials,
    bac_water=settings.bac_water,
    syringe_boxes=settings.syringe_boxes,
    protocol_steps=settings.protocol_steps,
    start_date=settings.start_date,
    current_date=settings.current_date,
    discount_percent=settings.discount_percent,
    reorder_lead_weeks=settings.reorder_lead_weeks,
)
csv_content = export.format_csv(export.schedule_records(result), summary=export.summary_header(result, title="Sample run"))

csv_path = export.save_export(csv_content, filename="sample_schedule.csv")
md_path = export.save_export(markdown, filename="sample_schedule.md", extension="md")
print(f"Wrote sample exports to: {csv_path}, {md_path}")
print("\nMarkdown head:\n")
print('\n'.join(markdown.splitlines()[:40]))
