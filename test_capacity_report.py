"""Automated test suite for capacity_report.py.

Covers: plan loading, report window, console summaries, Excel export and the
command-line entry point.
"""

import json
import os
from datetime import date, datetime

import pytest
from openpyxl import load_workbook

from capacity_report import (
    DEFAULT_RANGE_WEEKS,
    load_plan,
    main,
    print_load_summary,
    print_progress_summary,
    print_variance_summary,
    resolve_report_range,
    write_workbook,
)
from plan_engine import build_buckets, load_frame, normalize_plan, seed_actuals


# ── Fixtures ────────────────────────────────────────────────────────────────


def write_plan(path, tasks, **extra):
    """Write a plan document to disk. Returns the path as a string."""
    document = {"tasks": tasks}
    document.update(extra)
    path.write_text(json.dumps(document), encoding="utf-8")
    return str(path)


def task_doc(task_id, name, owner, start, end, capacity, **extra):
    doc = {"id": task_id, "name": name, "responsible": owner,
           "startDate": start, "endDate": end, "requiredCapacity": capacity}
    doc.update(extra)
    return doc


@pytest.fixture
def active_tasks():
    """A parent with two children plus one stand-alone task for Sam."""
    return [
        task_doc("p", "Discovery", "Alex", "2025-01-06", "2025-01-19", None, indent=0),
        task_doc("c1", "Interviews", "Alex", "2025-01-06", "2025-01-12", 70,
                 indent=1, progress=60),
        task_doc("c2", "Synthesis", "Alex", "2025-01-13", "2025-01-19", 40,
                 indent=1, progress=80),
        task_doc("s", "Design", "Sam", "2025-01-06", "2025-01-19", 50,
                 milestoneType="Value Step"),
    ]


@pytest.fixture
def plan_files(tmp_path, active_tasks):
    active = write_plan(tmp_path / "active.json", active_tasks)
    other = write_plan(tmp_path / "other.json", [
        task_doc("o1", "Support rota", "alex", "2025-01-06", "2025-01-12", 70),
    ])
    return active, other


# ── Tier 1: Loading ────────────────────────────────────────────────────────


class TestLoadPlan:
    def test_valid_plan(self, plan_files, capsys):
        active, _ = plan_files
        plan = load_plan(active)
        assert plan is not None
        assert [t.id for t in plan.tasks] == ["p", "c1", "c2", "s"]
        assert capsys.readouterr().out == ""

    def test_missing_file(self, tmp_path, capsys):
        assert load_plan(str(tmp_path / "nope.json")) is None
        assert "ERROR: Could not read plan" in capsys.readouterr().out

    def test_invalid_json(self, tmp_path, capsys):
        path = tmp_path / "bad.json"
        path.write_text("{tasks: [", encoding="utf-8")
        assert load_plan(str(path)) is None
        assert "not valid JSON" in capsys.readouterr().out

    def test_non_object_document(self, tmp_path, capsys):
        path = tmp_path / "list.json"
        path.write_text("[1, 2, 3]", encoding="utf-8")
        assert load_plan(str(path)) is None
        assert "must be an object" in capsys.readouterr().out

    def test_repairs_counted_unless_verbose(self, tmp_path, capsys):
        path = write_plan(tmp_path / "messy.json", [
            {"id": "a", "name": "A", "progress": 250, "indent": 7},
        ])
        plan = load_plan(path)
        out = capsys.readouterr().out
        assert plan.tasks[0].progress == 100
        assert "2 field(s) repaired" in out

        load_plan(path, verbose=True)
        out = capsys.readouterr().out
        assert "progress 250 adjusted to 100" in out
        assert "indent 7 adjusted to 2" in out


class TestResolveReportRange:
    def test_span_of_all_plans(self):
        plans = [
            normalize_plan({"tasks": [task_doc("a", "A", "Alex", "2025-02-01", "2025-02-10", 10)]}),
            normalize_plan({"tasks": [task_doc("b", "B", "Alex", "2025-01-15", "2025-03-01", 10)]}),
        ]
        assert resolve_report_range(plans) == (date(2025, 1, 15), date(2025, 3, 1))

    def test_explicit_bounds_win(self):
        plans = [normalize_plan({"tasks": [task_doc("a", "A", "Alex", "2025-02-01", "2025-02-10", 10)]})]
        assert resolve_report_range(plans, date_from=date(2025, 1, 1)) == \
            (date(2025, 1, 1), date(2025, 2, 10))

    def test_unscheduled_plans_default_window(self):
        today = date(2025, 5, 5)
        start, end = resolve_report_range([normalize_plan({})], today=today)
        assert start == today
        assert (end - start).days + 1 == 7 * DEFAULT_RANGE_WEEKS


# ── Tier 2: Console Summaries ──────────────────────────────────────────────


class TestPrintLoadSummary:
    def test_overloaded_owner_flagged(self, plan_files, capsys):
        plans = [load_plan(p) for p in plan_files]
        buckets = build_buckets("2025-01-06", "2025-01-19", "week")
        print_load_summary(plans, buckets)
        out = capsys.readouterr().out
        assert "WORKLOAD SUMMARY" in out
        assert "Alex: peak 140%" in out
        assert "Above 100%: w/c 06 Jan 2025 (140%)" in out
        assert "Sam: peak 50%" in out
        assert "Over-capacity: 1 of 2 owners" in out

    def test_no_owners(self, capsys):
        plan = normalize_plan({"tasks": [{"id": "a", "name": "Orphan"}]})
        print_load_summary([plan], build_buckets("2025-01-06", "2025-01-12", "week"))
        assert "nothing to aggregate" in capsys.readouterr().out


class TestPrintProgressSummary:
    def test_parent_rolled_up(self, plan_files, capsys):
        plan = load_plan(plan_files[0])
        print_progress_summary(plan)
        out = capsys.readouterr().out
        assert "1 Discovery: 70% (auto)" in out
        assert "2 Design: 0%" in out
        assert "Interviews" not in out

    def test_indented_first_row_is_still_top_level(self, capsys):
        plan = normalize_plan({"tasks": [
            {"id": "a", "name": "Kickoff", "indent": 1, "progress": 30},
            {"id": "b", "name": "Wrap-up", "indent": 2, "progress": 50},
        ]})
        print_progress_summary(plan)
        out = capsys.readouterr().out
        assert "1 Kickoff: 50% (auto)" in out
        assert "Wrap-up" not in out


class TestPrintVarianceSummary:
    def test_changed_and_new_counted(self, active_tasks, capsys):
        plan = normalize_plan({"tasks": active_tasks})
        actuals = seed_actuals(plan).to_dict()
        actuals["tasks"][3]["endDate"] = "2025-01-24"
        actuals["tasks"].append({"id": "late", "name": "Added later"})
        plan = normalize_plan({"tasks": active_tasks, "actuals": actuals})

        print_variance_summary(plan)
        out = capsys.readouterr().out
        assert "5 tasks (1 changed, 1 new)" in out
        assert "Design: endDate" in out
        assert "Value Step:    5 days late" in out

    def test_silent_without_actuals(self, active_tasks, capsys):
        print_variance_summary(normalize_plan({"tasks": active_tasks}))
        assert capsys.readouterr().out == ""


# ── Tier 3: Excel Export ───────────────────────────────────────────────────


class TestWriteWorkbook:
    def test_sheets_and_values(self, plan_files, tmp_path):
        plans = [load_plan(p) for p in plan_files]
        buckets = build_buckets("2025-01-06", "2025-01-19", "week")
        frame = load_frame(plans, buckets)
        path = write_workbook(str(tmp_path / "out" / "workload.xlsx"), frame, plans[0])

        assert os.path.exists(path)
        wb = load_workbook(path)
        assert wb.sheetnames == ["Load", "Progress"]

        ws_load = wb["Load"]
        rows = list(ws_load.iter_rows(min_row=2, values_only=True))
        assert len(rows) == 4
        owner, bucket, start, _, own, other, total = rows[0]
        assert (owner, bucket) == ("Alex", "w/c 06 Jan 2025")
        assert start == datetime(2025, 1, 6)
        assert (own, other, total) == (70.0, 70.0, 140.0)
        assert len(list(ws_load.conditional_formatting)) == 1

        ws_progress = wb["Progress"]
        first = next(ws_progress.iter_rows(min_row=2, max_row=2, values_only=True))
        assert first[0] == "1"
        assert first[5] == 70
        assert first[6] == "Yes"

    def test_actuals_sheet_marks_changes(self, active_tasks, tmp_path):
        plan = normalize_plan({"tasks": active_tasks})
        actuals = seed_actuals(plan).to_dict()
        actuals["tasks"][1]["name"] = "Customer interviews"
        plan = normalize_plan({"tasks": active_tasks, "actuals": actuals})
        frame = load_frame([plan], build_buckets("2025-01-06", "2025-01-12", "week"))

        wb = load_workbook(write_workbook(str(tmp_path / "w.xlsx"), frame, plan))
        ws = wb["Actuals"]
        assert ws.cell(row=1, column=3).value == "Name"
        assert ws.cell(row=3, column=1).value == "Customer interviews"
        assert ws.cell(row=3, column=3).value == "changed"
        assert not ws.cell(row=2, column=3).value


# ── Tier 4: End-to-End Tests ───────────────────────────────────────────────


class TestMain:
    def test_full_run_with_workbook(self, plan_files, tmp_path, capsys):
        active, other = plan_files
        out_path = tmp_path / "report.xlsx"
        main(["--plan", active, "--other", other, "--xlsx", str(out_path)])
        out = capsys.readouterr().out
        assert "Plans: 2 (1 other)" in out
        assert "Alex: peak 140%" in out
        assert "Done." in out
        assert out_path.exists()

    def test_month_unit_and_owner_filter(self, plan_files, capsys):
        active, other = plan_files
        main(["--plan", active, "--other", other, "--unit", "month", "--owner", "Sam"])
        out = capsys.readouterr().out
        assert "1 month (01 Jan 2025 - 31 Jan 2025)" in out
        assert "Sam: peak 100%" in out
        assert "Alex:" not in out

    def test_missing_plan_exits(self, tmp_path, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--plan", str(tmp_path / "missing.json")])
        assert exc.value.code == 1
        assert "Plan file not found" in capsys.readouterr().out

    def test_invalid_date_exits(self, plan_files, capsys):
        with pytest.raises(SystemExit) as exc:
            main(["--plan", plan_files[0], "--from", "next week"])
        assert exc.value.code == 1
        assert "Invalid --from date" in capsys.readouterr().out

    def test_unloadable_plan_exits(self, tmp_path, capsys):
        path = tmp_path / "broken.json"
        path.write_text("not json", encoding="utf-8")
        with pytest.raises(SystemExit):
            main(["--plan", str(path)])
        assert "Could not load plan" in capsys.readouterr().out

    def test_unusable_other_plan_skipped(self, plan_files, tmp_path, capsys):
        broken = tmp_path / "broken.json"
        broken.write_text("[]", encoding="utf-8")
        main(["--plan", plan_files[0], "--other", str(broken)])
        out = capsys.readouterr().out
        assert "Plans: 1 (0 other)" in out
        assert "Done." in out

    @pytest.mark.parametrize("unit", ["week", "month", "quarter"])
    def test_task_at_end_of_calendar(self, tmp_path, capsys, unit):
        path = write_plan(tmp_path / "far.json", [
            task_doc("f", "Far future", "Alex", "9999-12-30", "9999-12-31", 70),
        ])
        main(["--plan", path, "--unit", unit])
        out = capsys.readouterr().out
        assert "Alex: peak 20%" in out
        assert "31 Dec 9999" in out
        assert "Done." in out
