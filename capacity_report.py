"""
Capacity Report
Reads initiative plan documents (JSON), runs them through plan_engine and
prints a workload summary per owner. Optionally writes the load table,
progress rollup and actuals variance to an Excel workbook.

Usage:
  python capacity_report.py --plan active.json --other other_a.json other_b.json
  python capacity_report.py --plan active.json --unit month --xlsx output/workload.xlsx
"""

import argparse
import json
import os
import sys
from datetime import date, timedelta

from openpyxl import Workbook
from openpyxl.formatting.rule import CellIsRule
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side

from plan_engine import (
    BASELINE_FIELD_KEYS,
    BASELINE_FIELDS,
    BUCKET_UNITS,
    OVERLOAD_THRESHOLD,
    aggregate_load,
    build_buckets,
    build_task_tree,
    diff_fields,
    is_task_new,
    load_frame,
    normalize_plan,
    parse_date,
    plan_date_range,
    plan_owners,
    plan_tasks,
    resolve_baseline,
    rollup_progress,
    validate_plan,
    value_step_variance,
    wbs_numbers,
)


# ── Constants ────────────────────────────────────────────────────────────────

_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_XLSX_OUTPUT = os.path.join(_DIR, "output", "workload.xlsx")

# Range used when no plan has a scheduled task: this week plus six more.
DEFAULT_RANGE_WEEKS = 7

STYLE = {
    "header_bg": "2E3B4E",
    "header_fg": "FFFFFF",
    "over_capacity_bg": "FFCDD2",
    "over_capacity_fg": "C62828",
    "changed_bg": "FFE0B2",
}


# ── Loading ──────────────────────────────────────────────────────────────────

def load_plan(filepath, verbose=False):
    """Load and normalize one plan document. Returns None when the file is unusable."""
    try:
        with open(filepath, encoding="utf-8") as f:
            raw = json.load(f)
    except OSError as e:
        print(f"  ERROR: Could not read plan {filepath}: {e}")
        return None
    except ValueError as e:
        print(f"  ERROR: Plan {filepath} is not valid JSON: {e}")
        return None

    errors, warnings = validate_plan(raw)
    for e in errors:
        print(f"  ERROR: {os.path.basename(filepath)}: {e}")
    if errors:
        return None
    if verbose:
        for w in warnings:
            print(f"  WARNING: {os.path.basename(filepath)}: {w}")
    elif warnings:
        print(f"  WARNING: {os.path.basename(filepath)}: {len(warnings)} field(s) repaired "
              f"(use --verbose for details)")
    return normalize_plan(raw)


def resolve_report_range(plans, date_from=None, date_to=None, today=None):
    """Date window for the report: explicit bounds win, otherwise the span of all plans."""
    spans = [span for span in (plan_date_range(p) for p in plans) if span]
    if spans:
        start = min(s[0] for s in spans)
        end = max(s[1] for s in spans)
    else:
        start = today or date.today()
        end = start + timedelta(days=7 * DEFAULT_RANGE_WEEKS - 1)
    return date_from or start, date_to or end


# ── Console Summary ──────────────────────────────────────────────────────────

def format_load(value):
    return f"{value:.0f}%"


def print_load_summary(plans, buckets, owners=None, threshold=OVERLOAD_THRESHOLD):
    """Print per-owner load, highlighting buckets above the threshold."""
    active = plans[0]
    owners = owners if owners is not None else plan_owners(active)

    print()
    print("=" * 60)
    print("  WORKLOAD SUMMARY")
    print("=" * 60)
    print(f"  Tasks:         {len(active.tasks)} in this plan, "
          f"{sum(len(p.tasks) for p in plans[1:])} in {len(plans) - 1} other plan"
          f"{'s' if len(plans) != 2 else ''}")
    if buckets:
        print(f"  Timeline:      {len(buckets)} {buckets[0].unit}"
              f"{'s' if len(buckets) != 1 else ''} "
              f"({buckets[0].start.strftime('%d %b %Y')} - {buckets[-1].end.strftime('%d %b %Y')})")
    if not owners:
        print("  NOTE: No task has a responsible owner, nothing to aggregate.")
        print("=" * 60)
        print()
        return

    overloaded_owners = 0
    for owner in owners:
        breakdown = aggregate_load(owner, plans, buckets)
        own_total = sum(breakdown.own)
        other_total = sum(breakdown.other)
        print(f"    {breakdown.owner}: peak {format_load(breakdown.peak)} "
              f"(this plan {own_total:.1f}, other plans {other_total:.1f})")
        over = breakdown.overloaded_buckets(threshold)
        if over:
            overloaded_owners += 1
            detail = [f"{breakdown.buckets[i].label} ({format_load(breakdown.total[i])})"
                      for i in over[:3]]
            suffix = f" ... +{len(over) - 3} more" if len(over) > 3 else ""
            print(f"      Above {threshold:.0f}%: {', '.join(detail)}{suffix}")
    print(f"  Over-capacity: {overloaded_owners} of {len(owners)} owner"
          f"{'s' if len(owners) != 1 else ''}")
    print("=" * 60)
    print()


def print_progress_summary(plan):
    """Print the rolled-up progress of top-level tasks."""
    tasks = plan_tasks(plan)
    if not tasks:
        return
    rollup = rollup_progress(tasks)
    numbers = wbs_numbers(tasks)
    print("  Progress:")
    for index in build_task_tree(tasks).roots:
        task = tasks[index]
        meta = rollup[task.id]
        marker = " (auto)" if meta.is_auto else ""
        print(f"    {numbers[task.id]} {task.name or 'Untitled task'}: {meta.value}%{marker}")


def print_variance_summary(plan, baseline_plan=None, today=None):
    """Print how the actuals differ from their baselines."""
    baseline_plan = baseline_plan if baseline_plan is not None else plan
    actual_tasks = plan.actuals.tasks
    if not actual_tasks:
        return
    new_ids = {t.id for t in actual_tasks if is_task_new(t, baseline_plan)}
    changed = []
    for task in actual_tasks:
        if task.id in new_ids:
            continue
        fields = diff_fields(task, resolve_baseline(task, baseline_plan))
        if fields:
            changed.append((task, fields))
    print()
    print(f"  Actuals:       {len(actual_tasks)} task{'s' if len(actual_tasks) != 1 else ''} "
          f"({len(changed)} changed, {len(new_ids)} new)")
    for task, fields in changed:
        print(f"    {task.name or task.id}: {', '.join(sorted(fields))}")
    metrics = value_step_variance(actual_tasks, baseline_plan, today=today)
    if metrics and metrics["deviation_days"] is not None:
        slip = metrics["deviation_days"]
        direction = "late" if slip > 0 else "early" if slip < 0 else "on plan"
        print(f"  Value Step:    {abs(slip)} day{'s' if abs(slip) != 1 else ''} {direction} "
              f"(planned {metrics['planned_end'].strftime('%d %b %Y')}, "
              f"actual {metrics['actual_end'].strftime('%d %b %Y')})")


# ── Excel Export ─────────────────────────────────────────────────────────────

def write_workbook(output_path, frame, plan, baseline_plan=None, threshold=OVERLOAD_THRESHOLD):
    """Write Load, Progress and (when present) Actuals sheets to an xlsx file."""
    wb = Workbook()

    header_font = Font(bold=True, color=STYLE["header_fg"], size=11)
    header_fill = PatternFill(start_color=STYLE["header_bg"], end_color=STYLE["header_bg"],
                              fill_type="solid")
    header_alignment = Alignment(horizontal="center", vertical="center")
    thin_border = Border(
        left=Side(style="thin"), right=Side(style="thin"),
        top=Side(style="thin"), bottom=Side(style="thin"),
    )

    def style_header(ws, row=1):
        for cell in ws[row]:
            cell.font = header_font
            cell.fill = header_fill
            cell.alignment = header_alignment
            cell.border = thin_border

    def style_data_rows(ws, start_row=2):
        for row in ws.iter_rows(min_row=start_row, max_row=ws.max_row):
            for cell in row:
                cell.border = thin_border
                cell.alignment = Alignment(vertical="center")

    # ── Sheet 1: Load ──
    ws_load = wb.active
    ws_load.title = "Load"
    ws_load.append(["Owner", "Bucket", "Start", "End", "This Plan %", "Other Plans %", "Total %"])
    for row in frame.itertuples(index=False):
        ws_load.append([row.owner, row.bucket, row.start, row.end,
                        round(row.own, 2), round(row.other, 2), round(row.total, 2)])
    for col, width in zip("ABCDEFG", (20, 20, 12, 12, 14, 15, 12)):
        ws_load.column_dimensions[col].width = width
    for row_idx in range(2, ws_load.max_row + 1):
        for col in (3, 4):
            ws_load.cell(row=row_idx, column=col).number_format = "yyyy-mm-dd"
    style_header(ws_load)
    style_data_rows(ws_load)
    ws_load.freeze_panes = "A2"
    if ws_load.max_row > 1:
        ws_load.conditional_formatting.add(
            f"G2:G{ws_load.max_row}",
            CellIsRule(operator="greaterThan", formula=[str(threshold)],
                       font=Font(bold=True, color=STYLE["over_capacity_fg"]),
                       fill=PatternFill(bgColor=STYLE["over_capacity_bg"])))

    # ── Sheet 2: Progress ──
    ws_progress = wb.create_sheet("Progress")
    ws_progress.append(["WBS", "Task", "Responsible", "Start", "End", "Progress %", "Derived"])
    tasks = plan_tasks(plan)
    rollup = rollup_progress(tasks)
    numbers = wbs_numbers(tasks)
    for task in tasks:
        meta = rollup[task.id]
        ws_progress.append([
            numbers[task.id],
            "    " * task.indent + (task.name or "Untitled task"),
            task.responsible,
            task.start_date,
            task.end_date,
            meta.value,
            "Yes" if meta.is_auto else "",
        ])
    for col, width in zip("ABCDEFG", (8, 40, 20, 12, 12, 12, 10)):
        ws_progress.column_dimensions[col].width = width
    style_header(ws_progress)
    style_data_rows(ws_progress)
    ws_progress.freeze_panes = "A2"

    # ── Sheet 3: Actuals ──
    actual_tasks = plan.actuals.tasks
    if actual_tasks:
        baseline_plan = baseline_plan if baseline_plan is not None else plan
        ws_actuals = wb.create_sheet("Actuals")
        headers = ["Task", "New"] + [name.replace("_", " ").title() for name in BASELINE_FIELDS]
        ws_actuals.append(headers)
        changed_fill = PatternFill(start_color=STYLE["changed_bg"], end_color=STYLE["changed_bg"],
                                   fill_type="solid")
        for task in actual_tasks:
            baseline = resolve_baseline(task, baseline_plan)
            fields = diff_fields(task, baseline)
            ws_actuals.append(
                [task.name or task.id, "Yes" if is_task_new(task, baseline_plan) else ""]
                + ["changed" if BASELINE_FIELD_KEYS[name] in fields else "" for name in BASELINE_FIELDS]
            )
            row_idx = ws_actuals.max_row
            for offset, name in enumerate(BASELINE_FIELDS):
                if BASELINE_FIELD_KEYS[name] in fields:
                    ws_actuals.cell(row=row_idx, column=3 + offset).fill = changed_fill
        ws_actuals.column_dimensions["A"].width = 40
        style_header(ws_actuals)
        style_data_rows(ws_actuals)
        ws_actuals.freeze_panes = "B2"

    os.makedirs(os.path.dirname(os.path.abspath(output_path)), exist_ok=True)
    wb.save(output_path)
    return output_path


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Capacity Report: per-owner workload across initiative plans"
    )
    parser.add_argument(
        "--plan", required=True,
        help="Path to the active plan document (JSON)"
    )
    parser.add_argument(
        "--other", default=[], nargs="*",
        help="Other plan documents whose load counts against the same owners"
    )
    parser.add_argument(
        "--owner", default=None, nargs="+",
        help="Only report these owners (default: every owner in the active plan)"
    )
    parser.add_argument(
        "--unit", default="week", choices=list(BUCKET_UNITS),
        help="Reporting bucket size (default: week)"
    )
    parser.add_argument(
        "--from", dest="date_from", default=None,
        help="Report window start (YYYY-MM-DD)"
    )
    parser.add_argument(
        "--to", dest="date_to", default=None,
        help="Report window end (YYYY-MM-DD)"
    )
    parser.add_argument(
        "--baseline", default=None,
        help="Plan document the actuals are compared against (default: the active plan)"
    )
    parser.add_argument(
        "--xlsx", nargs="?", const=DEFAULT_XLSX_OUTPUT, default=None,
        help="Write an Excel workbook (default path: output/workload.xlsx)"
    )
    parser.add_argument(
        "--verbose", action="store_true",
        help="List every field the normalizer repaired"
    )
    args = parser.parse_args(argv)

    if not os.path.exists(args.plan):
        print(f"Error: Plan file not found: {args.plan}")
        sys.exit(1)

    date_from = date_to = None
    for flag, raw in (("--from", args.date_from), ("--to", args.date_to)):
        if raw is None:
            continue
        parsed = parse_date(raw)
        if parsed is None:
            print(f"  ERROR: Invalid {flag} date '{raw}'. Use YYYY-MM-DD format.")
            sys.exit(1)
        if flag == "--from":
            date_from = parsed
        else:
            date_to = parsed

    print(f"Loading plan from: {args.plan}")
    active = load_plan(args.plan, verbose=args.verbose)
    if active is None:
        print(f"Error: Could not load plan: {args.plan}")
        sys.exit(1)
    plans = [active]
    for path in args.other:
        other = load_plan(path, verbose=args.verbose)
        if other is not None:
            plans.append(other)
    print(f"  Plans: {len(plans)} ({len(plans) - 1} other)")

    baseline_plan = None
    if args.baseline:
        baseline_plan = load_plan(args.baseline, verbose=args.verbose)
        if baseline_plan is None:
            print("  WARNING: Baseline plan unusable, comparing actuals against the active plan.")

    start, end = resolve_report_range(plans, date_from, date_to)
    buckets = build_buckets(start, end, args.unit)
    if not buckets:
        print(f"  WARNING: Empty report window ({start} to {end}). Nothing to aggregate.")

    owners = args.owner if args.owner else plan_owners(active)
    print_load_summary(plans, buckets, owners)
    print_progress_summary(active)
    print_variance_summary(active, baseline_plan)

    if args.xlsx:
        frame = load_frame(plans, buckets, owners=owners)
        path = write_workbook(args.xlsx, frame, active, baseline_plan)
        print()
        print("  Output:")
        print(f"    {os.path.abspath(path)}")
    print("\nDone.")


if __name__ == "__main__":
    main()
