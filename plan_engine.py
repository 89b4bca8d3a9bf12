"""
Plan Load Engine
Normalizes initiative plan documents and computes the numbers that the Gantt,
capacity heatmap and resource-load views are drawn from.

Features:
  - Best-effort plan normalization (malformed fields are repaired, never rejected)
  - Fixed and variable (segmented) capacity per task
  - Week / month / quarter bucketing with proportional load distribution
  - Per-owner load across the active plan and every other plan
  - Bottom-up progress rollup over the indent-encoded task tree
  - Baseline vs actuals variance tracking

Every public function is pure: it takes immutable snapshots and returns new
values without printing or touching files.
"""

import json
import math
import re
import uuid
from calendar import monthrange
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta, timezone
from typing import Optional

import numpy as np
import pandas as pd


# ── Constants ────────────────────────────────────────────────────────────────

MAX_INDENT = 2
DEFAULT_MILESTONE = "Standard"
VALUE_STEP_MILESTONE = "Value Step"
MILESTONE_TYPES = [DEFAULT_MILESTONE, VALUE_STEP_MILESTONE, "Change Management"]
CAPACITY_MODES = ("fixed", "variable")
BUCKET_UNITS = ("week", "month", "quarter")

# Capacity values are weekly rates: 50 means half of one person's week.
CAPACITY_RATE_DAYS = 7
OVERLOAD_THRESHOLD = 100.0

ZOOM_MIN, ZOOM_MAX, DEFAULT_ZOOM = 0, 6, 2
SPLIT_MIN, SPLIT_MAX, DEFAULT_SPLIT = 0.2, 0.8, 0.45

BASELINE_FIELDS = (
    "name",
    "description",
    "start_date",
    "end_date",
    "responsible",
    "milestone_type",
    "required_capacity",
)
# Document keys reported by diff_fields, as emitted by to_dict().
BASELINE_FIELD_KEYS = {
    "name": "name",
    "description": "description",
    "start_date": "startDate",
    "end_date": "endDate",
    "responsible": "responsible",
    "milestone_type": "milestoneType",
    "required_capacity": "requiredCapacity",
}

DATE_FORMATS = ("%Y-%m-%d", "%d/%m/%Y", "%d-%m-%Y")
_ISO_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}[T ]")
_ID_NAMESPACE = uuid.UUID("6f1c2a52-3d0e-4f7b-9a61-5c1f0e8d2b47")


# ── Value Helpers ────────────────────────────────────────────────────────────

def clean_str(val):
    """Return stripped string, or empty string for anything that is not a string."""
    if not isinstance(val, str):
        return ""
    return val.strip()


def parse_number(val):
    """Parse a finite number from a number or numeric string. Returns None otherwise."""
    if isinstance(val, (bool, np.bool_)):
        return None
    if isinstance(val, (int, float, np.integer, np.floating)):
        num = float(val)
    elif isinstance(val, str):
        text = val.strip()
        if not text:
            return None
        try:
            num = float(text)
        except ValueError:
            return None
    else:
        return None
    if math.isnan(num) or math.isinf(num):
        return None
    return num


def round_half_up(value):
    """Round to the nearest integer, halves going up (2.5 -> 3, -2.5 -> -2)."""
    return int(math.floor(value + 0.5))


def clamp(value, low, high):
    return min(high, max(low, value))


def clamp_progress(val):
    """Progress as an integer percentage in [0, 100]; unreadable values become 0."""
    num = parse_number(val)
    if num is None:
        return 0
    return clamp(round_half_up(num), 0, 100)


def normalize_capacity(val):
    """Capacity rounded to 2 decimals and floored at zero, or None when unreadable."""
    num = parse_number(val)
    if num is None:
        return None
    scaled = num * 100
    # Values near the float maximum have no hundredths left to round.
    if math.isinf(scaled):
        return max(0.0, num)
    return max(0.0, round_half_up(scaled) / 100)


def normalize_indent(val):
    num = parse_number(val)
    if num is None:
        return 0
    return clamp(int(num), 0, MAX_INDENT)


def parse_date(val):
    """Parse a date-only value from date, datetime, Timestamp or string.

    Strings may be YYYY-MM-DD, DD/MM/YYYY, DD-MM-YYYY or a full ISO timestamp
    (converted to UTC before the time is dropped). Returns None for blank or
    unparseable input.
    """
    if val is None or val is pd.NaT:
        return None
    if isinstance(val, pd.Timestamp):
        if val.tzinfo is not None:
            val = val.tz_convert("UTC")
        return val.date()
    if isinstance(val, datetime):
        if val.tzinfo is not None:
            val = val.astimezone(timezone.utc)
        return val.date()
    if isinstance(val, date):
        return val
    if not isinstance(val, str):
        return None
    text = val.strip()
    if not text:
        return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            pass
    if _ISO_DATETIME_RE.match(text):
        try:
            return parse_date(pd.Timestamp(text))
        except (ValueError, TypeError):
            return None
    return None


def order_dates(start, end):
    """Mirror a lone date onto the missing side and force end >= start."""
    if start and not end:
        return start, start
    if end and not start:
        return end, end
    if start and end and end < start:
        return start, start
    return start, end


def format_date(d):
    return d.isoformat() if d else None


def generate_id(scope, index):
    """Deterministic id for a record that arrived without a usable one."""
    return str(uuid.uuid5(_ID_NAMESPACE, f"{scope}:{index}"))


def is_value_step(milestone_type):
    return clean_str(milestone_type).lower() == VALUE_STEP_MILESTONE.lower()


# ── Records ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CapacitySegment:
    """A dated stretch of a task with its own weekly capacity."""

    id: str
    start_date: date
    end_date: date
    capacity: float

    def to_dict(self):
        return {
            "id": self.id,
            "startDate": format_date(self.start_date),
            "endDate": format_date(self.end_date),
            "capacity": self.capacity,
        }


@dataclass(frozen=True)
class Baseline:
    """Frozen snapshot of a task's planned fields, compared against actuals."""

    name: str = ""
    description: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    responsible: str = ""
    milestone_type: Optional[str] = DEFAULT_MILESTONE
    required_capacity: Optional[float] = None

    @classmethod
    def from_task(cls, task):
        return cls(
            name=task.name,
            description=task.description,
            start_date=task.start_date,
            end_date=task.end_date,
            responsible=task.responsible,
            milestone_type=task.milestone_type,
            required_capacity=task.required_capacity,
        )

    def to_dict(self):
        return {
            "name": self.name,
            "description": self.description,
            "startDate": format_date(self.start_date),
            "endDate": format_date(self.end_date),
            "responsible": self.responsible,
            "milestoneType": self.milestone_type,
            "requiredCapacity": self.required_capacity,
        }


@dataclass(frozen=True)
class Task:
    """One row of a plan. Parent/child structure comes from ``indent``."""

    id: str
    name: str = ""
    description: str = ""
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    responsible: str = ""
    progress: int = 0
    capacity_mode: str = "fixed"
    required_capacity: Optional[float] = None
    capacity_segments: tuple = ()
    indent: int = 0
    dependencies: tuple = ()
    milestone_type: str = DEFAULT_MILESTONE
    color: Optional[str] = None
    archived: bool = False
    baseline: Optional[Baseline] = None
    source_task_id: Optional[str] = None

    def has_schedule(self):
        """Return True when both dates are set."""
        return self.start_date is not None and self.end_date is not None

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "startDate": format_date(self.start_date),
            "endDate": format_date(self.end_date),
            "responsible": self.responsible,
            "progress": self.progress,
            "capacityMode": self.capacity_mode,
            "requiredCapacity": self.required_capacity,
            "capacitySegments": [s.to_dict() for s in self.capacity_segments],
            "indent": self.indent,
            "dependencies": list(self.dependencies),
            "milestoneType": self.milestone_type,
            "color": self.color,
            "archived": self.archived,
            "baseline": self.baseline.to_dict() if self.baseline else None,
            "sourceTaskId": self.source_task_id,
        }


@dataclass(frozen=True)
class PlanSettings:
    """Display settings carried with the document. Not used by any calculation."""

    zoom_level: int = DEFAULT_ZOOM
    split_ratio: float = DEFAULT_SPLIT

    def to_dict(self):
        return {"zoomLevel": self.zoom_level, "splitRatio": self.split_ratio}


@dataclass(frozen=True)
class PlanActuals:
    tasks: tuple = ()
    settings: PlanSettings = PlanSettings()

    def to_dict(self):
        return {
            "tasks": [t.to_dict() for t in self.tasks],
            "settings": self.settings.to_dict(),
        }


@dataclass(frozen=True)
class Plan:
    tasks: tuple = ()
    settings: PlanSettings = PlanSettings()
    actuals: PlanActuals = PlanActuals()

    def to_dict(self):
        return {
            "tasks": [t.to_dict() for t in self.tasks],
            "settings": self.settings.to_dict(),
            "actuals": self.actuals.to_dict(),
        }


def plan_tasks(plan):
    """Task sequence of a Plan, PlanActuals or plain iterable of tasks."""
    if plan is None:
        return ()
    if isinstance(plan, (Plan, PlanActuals)):
        return plan.tasks
    return tuple(plan)


# ── Plan Normalizer ──────────────────────────────────────────────────────────

def _normalize_segment(raw, task_start, task_end, fallback_id):
    if not isinstance(raw, dict):
        return None
    start = parse_date(raw.get("startDate"))
    end = parse_date(raw.get("endDate"))
    if not start or not end or end < start:
        return None
    # Segments only make sense inside a scheduled task.
    if not task_start or not task_end:
        return None
    if start < task_start or end > task_end:
        return None
    capacity = normalize_capacity(raw.get("capacity"))
    if capacity is None:
        return None
    return CapacitySegment(
        id=clean_str(raw.get("id")) or fallback_id,
        start_date=start,
        end_date=end,
        capacity=capacity,
    )


def normalize_segments(raw_segments, task_start, task_end, scope="segment"):
    """Valid, non-overlapping segments sorted by start date."""
    if not isinstance(raw_segments, (list, tuple)):
        return ()
    candidates = []
    for index, raw in enumerate(raw_segments):
        segment = _normalize_segment(raw, task_start, task_end, generate_id(scope, index))
        if segment:
            candidates.append(segment)
    candidates.sort(key=lambda s: s.start_date)
    kept = []
    last_end = None
    for segment in candidates:
        if last_end and segment.start_date <= last_end:
            continue
        kept.append(segment)
        last_end = segment.end_date
    return tuple(kept)


def normalize_baseline(raw):
    """Baseline snapshot from a raw mapping, or None. Text is kept verbatim."""
    if not isinstance(raw, dict):
        return None
    start = parse_date(raw.get("startDate"))
    end = parse_date(raw.get("endDate"))
    if start and end and end < start:
        end = start
    milestone = raw.get("milestoneType")
    return Baseline(
        name=raw.get("name") if isinstance(raw.get("name"), str) else "",
        description=raw.get("description") if isinstance(raw.get("description"), str) else "",
        start_date=start,
        end_date=end,
        responsible=raw.get("responsible") if isinstance(raw.get("responsible"), str) else "",
        milestone_type=milestone if isinstance(milestone, str) else None,
        required_capacity=normalize_capacity(raw.get("requiredCapacity")),
    )


def _normalize_dependencies(raw, task_id):
    if not isinstance(raw, (list, tuple)):
        return ()
    seen = []
    for dep in raw:
        dep_id = clean_str(dep)
        if dep_id and dep_id != task_id and dep_id not in seen:
            seen.append(dep_id)
    return tuple(seen)


def normalize_task(raw, fallback_id=None, actual=False):
    """Canonical Task from a raw mapping (or an existing Task).

    ``actual`` marks a task from the actuals list: those always carry a
    baseline, an empty one when the document had none.
    """
    if isinstance(raw, Task):
        raw = raw.to_dict()
    fallback_id = fallback_id or generate_id("task", 0)
    empty_baseline = Baseline() if actual else None
    if not isinstance(raw, dict):
        return Task(id=fallback_id, baseline=empty_baseline)

    task_id = clean_str(raw.get("id")) or fallback_id
    start, end = order_dates(parse_date(raw.get("startDate")), parse_date(raw.get("endDate")))
    segments = normalize_segments(raw.get("capacitySegments"), start, end,
                                  scope=f"{task_id}:segment")
    # A variable task with no usable segments falls back to fixed capacity.
    mode = "variable" if segments else "fixed"

    return Task(
        id=task_id,
        name=clean_str(raw.get("name")),
        description=clean_str(raw.get("description")),
        start_date=start,
        end_date=end,
        responsible=clean_str(raw.get("responsible")),
        progress=clamp_progress(raw.get("progress")),
        capacity_mode=mode,
        required_capacity=normalize_capacity(raw.get("requiredCapacity")) if mode == "fixed" else None,
        capacity_segments=segments,
        indent=normalize_indent(raw.get("indent")),
        dependencies=_normalize_dependencies(raw.get("dependencies"), task_id),
        milestone_type=clean_str(raw.get("milestoneType")) or DEFAULT_MILESTONE,
        color=clean_str(raw.get("color")) or None,
        archived=bool(raw.get("archived")),
        baseline=normalize_baseline(raw.get("baseline")) or empty_baseline,
        source_task_id=clean_str(raw.get("sourceTaskId")) or None,
    )


def normalize_task_list(raw_tasks, scope="task", actual=False):
    """Normalize a task sequence: unique ids, one Value Step, known dependencies."""
    if not isinstance(raw_tasks, (list, tuple)):
        return ()
    tasks = []
    seen_ids = set()
    value_step_claimed = False
    for index, raw in enumerate(raw_tasks):
        task = normalize_task(raw, fallback_id=generate_id(scope, index), actual=actual)
        if task.id in seen_ids:
            task = replace(task, id=generate_id(f"{scope}:{task.id}", index))
        seen_ids.add(task.id)
        if is_value_step(task.milestone_type):
            if value_step_claimed:
                task = replace(task, milestone_type=DEFAULT_MILESTONE)
            value_step_claimed = True
        tasks.append(task)
    return tuple(
        replace(t, dependencies=tuple(d for d in t.dependencies if d in seen_ids))
        for t in tasks
    )


def normalize_settings(raw):
    if not isinstance(raw, dict):
        return PlanSettings()
    zoom = parse_number(raw.get("zoomLevel"))
    split = parse_number(raw.get("splitRatio"))
    return PlanSettings(
        zoom_level=DEFAULT_ZOOM if zoom is None else clamp(int(zoom), ZOOM_MIN, ZOOM_MAX),
        split_ratio=DEFAULT_SPLIT if split is None else clamp(split, SPLIT_MIN, SPLIT_MAX),
    )


def normalize_actuals(raw):
    if not isinstance(raw, dict):
        return PlanActuals()
    return PlanActuals(
        tasks=normalize_task_list(raw.get("tasks"), scope="actual", actual=True),
        settings=normalize_settings(raw.get("settings")),
    )


def _coerce_document(raw):
    """Plan or JSON text to a plain document; anything else passes through."""
    if isinstance(raw, Plan):
        return raw.to_dict()
    if isinstance(raw, (str, bytes)):
        try:
            return json.loads(raw)
        except ValueError:
            return None
    return raw


def normalize_plan(raw):
    """Canonical Plan from any input. Never raises; normalizing twice is a no-op."""
    raw = _coerce_document(raw)
    if not isinstance(raw, dict):
        return Plan()
    return Plan(
        tasks=normalize_task_list(raw.get("tasks")),
        settings=normalize_settings(raw.get("settings")),
        actuals=normalize_actuals(raw.get("actuals")),
    )


# ── Plan Validation ──────────────────────────────────────────────────────────

def _check_task_list(raw_tasks, tasks, label, warnings):
    if raw_tasks is None:
        return
    if not isinstance(raw_tasks, (list, tuple)):
        warnings.append(f"{label} list is a {type(raw_tasks).__name__}, not a list. Treated as empty.")
        return

    for row, (raw, task) in enumerate(zip(raw_tasks, tasks), start=1):
        prefix = f"{label} {row}"
        if not isinstance(raw, dict):
            warnings.append(f"{prefix}: entry is not an object, replaced with an empty task.")
            continue
        if task.name:
            prefix += f" ('{task.name}')"

        raw_id = clean_str(raw.get("id"))
        if not raw_id:
            warnings.append(f"{prefix}: no id, generated '{task.id}'.")
        elif raw_id != task.id:
            warnings.append(f"{prefix}: duplicate id '{raw_id}', renamed to '{task.id}'.")

        start = parse_date(raw.get("startDate"))
        end = parse_date(raw.get("endDate"))
        for key, parsed in (("startDate", start), ("endDate", end)):
            value = raw.get(key)
            if value not in (None, "") and parsed is None:
                warnings.append(f"{prefix}: cannot parse {key} {value!r}, cleared.")
        if start and end and end < start:
            warnings.append(f"{prefix}: endDate {end.isoformat()} is before startDate "
                            f"{start.isoformat()}, moved to {start.isoformat()}.")
        elif bool(start) != bool(end):
            warnings.append(f"{prefix}: only one date set, mirrored to {task.start_date.isoformat()}.")

        progress = raw.get("progress")
        num = parse_number(progress)
        if progress is not None and num is None:
            warnings.append(f"{prefix}: cannot parse progress {progress!r}, using 0.")
        elif num is not None and num != task.progress:
            warnings.append(f"{prefix}: progress {progress!r} adjusted to {task.progress}.")

        indent = raw.get("indent")
        num = parse_number(indent)
        if num is not None and num != task.indent:
            warnings.append(f"{prefix}: indent {indent!r} adjusted to {task.indent}.")

        raw_segments = raw.get("capacitySegments")
        if isinstance(raw_segments, (list, tuple)):
            dropped = len(raw_segments) - len(task.capacity_segments)
            if dropped:
                warnings.append(f"{prefix}: dropped {dropped} invalid or overlapping "
                                f"capacity segment{'s' if dropped != 1 else ''}.")
        if raw.get("capacityMode") == "variable" and task.capacity_mode == "fixed":
            warnings.append(f"{prefix}: variable capacity has no valid segments, using fixed capacity.")

        if is_value_step(raw.get("milestoneType")) and not is_value_step(task.milestone_type):
            warnings.append(f"{prefix}: only one '{VALUE_STEP_MILESTONE}' is allowed, "
                            f"demoted to '{DEFAULT_MILESTONE}'.")

        raw_deps = _normalize_dependencies(raw.get("dependencies"), raw_id)
        for dep in raw_deps:
            if dep not in task.dependencies:
                warnings.append(f"{prefix}: dropped dependency on unknown task '{dep}'.")


def validate_plan(raw):
    """Report what normalize_plan would repair. Returns (errors, warnings) lists.

    Only a document that is not an object at all is an error; everything else
    is repaired and listed as a warning.
    """
    errors = []
    warnings = []
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError as e:
            errors.append(f"Plan document is not valid JSON: {e}")
            return errors, warnings
    raw = _coerce_document(raw)
    if not isinstance(raw, dict):
        errors.append(f"Plan document must be an object, got {type(raw).__name__}.")
        return errors, warnings

    plan = normalize_plan(raw)
    _check_task_list(raw.get("tasks"), plan.tasks, "Task", warnings)
    actuals = raw.get("actuals")
    if isinstance(actuals, dict):
        _check_task_list(actuals.get("tasks"), plan.actuals.tasks, "Actual task", warnings)

    for group in dependency_cycles(plan.tasks):
        warnings.append(f"Dependency cycle between tasks: {' -> '.join(group)}.")

    return errors, warnings


# ── Capacity Slices ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CapacitySlice:
    start: date
    end: date
    capacity: float

    @property
    def day_count(self):
        return (self.end - self.start).days + 1


def resolve_slices(task):
    """Time-bounded capacity slices for one task. Unscheduled tasks have none."""
    if task.capacity_mode == "variable" and task.capacity_segments:
        return [CapacitySlice(s.start_date, s.end_date, s.capacity)
                for s in task.capacity_segments]
    if not task.has_schedule():
        return []
    return [CapacitySlice(task.start_date, task.end_date, task.required_capacity or 0.0)]


# ── Calendar Bucketing ───────────────────────────────────────────────────────

@dataclass(frozen=True)
class Bucket:
    start: date
    end: date
    day_count: int
    unit: str = "week"

    @property
    def label(self):
        if self.unit == "month":
            return self.start.strftime("%b %Y")
        if self.unit == "quarter":
            return get_quarter_label(self.start)
        return f"w/c {self.start.strftime('%d %b %Y')}"


def get_week_start(d):
    """Get the Monday of the week containing the given date."""
    return d - timedelta(days=d.weekday())


def get_quarter_start(d):
    return date(d.year, (d.month - 1) // 3 * 3 + 1, 1)


def get_quarter_label(d):
    """Return 'Q1 2026' style label for a date."""
    quarter = (d.month - 1) // 3 + 1
    return f"Q{quarter} {d.year}"


def add_months(d, months):
    """Shift by whole calendar months, clamping the day to the target month's length."""
    month_index = d.month - 1 + months
    year = d.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, min(d.day, monthrange(year, month)[1]))


def align_to_unit(d, unit):
    if unit == "week":
        return get_week_start(d)
    if unit == "month":
        return d.replace(day=1)
    return get_quarter_start(d)


def step_unit(d, unit):
    if unit == "week":
        return d + timedelta(days=7)
    if unit == "month":
        return add_months(d, 1)
    return add_months(d, 3)


def build_buckets(start, end, unit="week"):
    """Contiguous calendar buckets covering [start, end], aligned to the unit.

    Returns an empty list when either bound is missing or end < start. The
    last bucket of the calendar ends at ``date.max``.
    """
    if unit not in BUCKET_UNITS:
        raise ValueError(f"Unknown bucket unit {unit!r}. Expected one of: {', '.join(BUCKET_UNITS)}")
    start, end = parse_date(start), parse_date(end)
    if start is None or end is None or end < start:
        return []
    cursor = align_to_unit(start, unit)
    last = align_to_unit(end, unit)
    buckets = []
    while cursor <= last:
        try:
            following = step_unit(cursor, unit)
        except (OverflowError, ValueError):
            following = None
        bucket_end = following - timedelta(days=1) if following else date.max
        buckets.append(Bucket(cursor, bucket_end, (bucket_end - cursor).days + 1, unit))
        if following is None:
            break
        cursor = following
    return buckets


# ── Overlap Distribution ─────────────────────────────────────────────────────

def overlap_days(start_a, end_a, start_b, end_b):
    """Number of calendar days two inclusive ranges share."""
    return max(0, (min(end_a, end_b) - max(start_a, start_b)).days + 1)


def distribute(capacity_slice, bucket):
    """Share of a slice's weekly-rate capacity that falls in one bucket."""
    days = overlap_days(capacity_slice.start, capacity_slice.end, bucket.start, bucket.end)
    if days == 0:
        return 0.0
    return capacity_slice.capacity * days / CAPACITY_RATE_DAYS


def task_bucket_load(task, bucket):
    """Total load one task places on one bucket."""
    return sum(distribute(s, bucket) for s in resolve_slices(task))


# ── Multi-Plan Load Aggregation ──────────────────────────────────────────────

@dataclass(frozen=True)
class LoadBreakdown:
    """Per-bucket load for one owner, split into this plan and everything else."""

    owner: str
    buckets: tuple
    own: tuple
    other: tuple

    @property
    def total(self):
        return tuple(a + b for a, b in zip(self.own, self.other))

    @property
    def peak(self):
        return max(self.total, default=0.0)

    def overloaded_buckets(self, threshold=OVERLOAD_THRESHOLD):
        """Indices of buckets whose combined load is above the threshold."""
        return [i for i, value in enumerate(self.total) if value > threshold]


def owner_key(name):
    """Join key for owners across plans: trimmed, case-folded display name.

    Two different people with the same display name share a key.
    """
    return clean_str(name).casefold()


def plan_owners(plan):
    """Distinct owners of a plan in first-seen order."""
    seen = set()
    owners = []
    for task in plan_tasks(plan):
        key = owner_key(task.responsible)
        if key and key not in seen:
            seen.add(key)
            owners.append(task.responsible)
    return owners


def _owner_load(owner, tasks, buckets):
    loads = np.zeros(len(buckets))
    key = owner_key(owner)
    if not key or not buckets:
        return loads
    for task in tasks:
        if owner_key(task.responsible) != key:
            continue
        for capacity_slice in resolve_slices(task):
            for index, bucket in enumerate(buckets):
                loads[index] += distribute(capacity_slice, bucket)
    return loads


def aggregate_load(owner, plans, buckets):
    """Load for one owner per bucket. ``plans[0]`` is the active plan, the rest are others."""
    plans = list(plans or [])
    buckets = tuple(buckets)
    own = np.zeros(len(buckets))
    other = np.zeros(len(buckets))
    if plans:
        own = _owner_load(owner, plan_tasks(plans[0]), buckets)
        for plan in plans[1:]:
            other += _owner_load(owner, plan_tasks(plan), buckets)
    return LoadBreakdown(
        owner=clean_str(owner),
        buckets=buckets,
        own=tuple(own.tolist()),
        other=tuple(other.tolist()),
    )


LOAD_COLUMNS = ["owner", "bucket", "start", "end", "own", "other", "total", "overloaded"]


def load_frame(plans, buckets, owners=None, threshold=OVERLOAD_THRESHOLD):
    """Load table (one row per owner and bucket) for the owners of the active plan."""
    plans = list(plans or [])
    if owners is None:
        owners = plan_owners(plans[0]) if plans else []
    records = []
    for owner in owners:
        breakdown = aggregate_load(owner, plans, buckets)
        for bucket, own, other, total in zip(breakdown.buckets, breakdown.own,
                                             breakdown.other, breakdown.total):
            records.append({
                "owner": breakdown.owner,
                "bucket": bucket.label,
                "start": bucket.start,
                "end": bucket.end,
                "own": own,
                "other": other,
                "total": total,
                "overloaded": total > threshold,
            })
    return pd.DataFrame(records, columns=LOAD_COLUMNS)


# ── Plan Structure ───────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TaskTree:
    """Explicit parent/child indices for an indent-encoded task sequence."""

    parents: tuple
    children: tuple
    roots: tuple

    def is_parent(self, index):
        return bool(self.children[index])


def build_task_tree(tasks):
    """Derive the tree in one pass.

    A task's direct children are the top-level members of the contiguous run
    of following tasks with a strictly greater indent, so an indent jump
    (0 -> 2) still attaches the deeper task to the nearest shallower one.
    """
    tasks = plan_tasks(tasks)
    parents = []
    children = [[] for _ in tasks]
    roots = []
    stack = []
    for index, task in enumerate(tasks):
        while stack and tasks[stack[-1]].indent >= task.indent:
            stack.pop()
        parent = stack[-1] if stack else None
        parents.append(parent)
        if parent is None:
            roots.append(index)
        else:
            children[parent].append(index)
        stack.append(index)
    return TaskTree(tuple(parents), tuple(tuple(c) for c in children), tuple(roots))


def wbs_numbers(tasks):
    """Outline numbers ('1', '1.2', '1.2.1') keyed by task id."""
    tasks = plan_tasks(tasks)
    tree = build_task_tree(tasks)
    numbers = {}
    labels = [""] * len(tasks)
    sibling_counts = {}
    for index, task in enumerate(tasks):
        parent = tree.parents[index]
        position = sibling_counts.get(parent, 0) + 1
        sibling_counts[parent] = position
        labels[index] = str(position) if parent is None else f"{labels[parent]}.{position}"
        numbers[task.id] = labels[index]
    return numbers


def summary_ranges(tasks):
    """(earliest start, latest end) over each parent's scheduled descendants."""
    tasks = plan_tasks(tasks)
    tree = build_task_tree(tasks)
    spans = [None] * len(tasks)
    for index in range(len(tasks) - 1, -1, -1):
        span = None
        for child in tree.children[index]:
            for candidate in (_own_span(tasks[child]), spans[child]):
                if candidate is None:
                    continue
                if span is None:
                    span = candidate
                else:
                    span = (min(span[0], candidate[0]), max(span[1], candidate[1]))
        spans[index] = span
    return {tasks[i].id: spans[i] for i in range(len(tasks))
            if tree.is_parent(i) and spans[i] is not None}


def _own_span(task):
    if not task.has_schedule():
        return None
    return task.start_date, task.end_date


def plan_date_range(tasks):
    """(earliest start, latest end) across scheduled tasks, or None."""
    scheduled = [t for t in plan_tasks(tasks) if t.has_schedule()]
    if not scheduled:
        return None
    return min(t.start_date for t in scheduled), max(t.end_date for t in scheduled)


def successor_map(tasks):
    """Predecessor id -> ids of the tasks that depend on it."""
    successors = {}
    for task in plan_tasks(tasks):
        for dep in task.dependencies:
            successors.setdefault(dep, []).append(task.id)
    return successors


def dependency_cycles(tasks):
    """Groups of task ids that depend on each other in a cycle.

    Cycles are allowed in the document; this only reports them. Each group is
    returned once, ordered by plan position.
    """
    tasks = plan_tasks(tasks)
    order = {}
    for position, task in enumerate(tasks):
        order.setdefault(task.id, position)
    graph = successor_map(tasks)

    index_of = {}
    lowlink = {}
    stack = []
    on_stack = set()
    groups = []
    counter = 0

    for root in order:
        if root in index_of:
            continue
        index_of[root] = lowlink[root] = counter
        counter += 1
        stack.append(root)
        on_stack.add(root)
        work = [(root, iter(graph.get(root, ())))]
        while work:
            node, successors = work[-1]
            descended = False
            for succ in successors:
                if succ not in index_of:
                    index_of[succ] = lowlink[succ] = counter
                    counter += 1
                    stack.append(succ)
                    on_stack.add(succ)
                    work.append((succ, iter(graph.get(succ, ()))))
                    descended = True
                    break
                if succ in on_stack:
                    lowlink[node] = min(lowlink[node], index_of[succ])
            if descended:
                continue
            work.pop()
            if work:
                parent = work[-1][0]
                lowlink[parent] = min(lowlink[parent], lowlink[node])
            if lowlink[node] == index_of[node]:
                group = []
                while True:
                    member = stack.pop()
                    on_stack.discard(member)
                    group.append(member)
                    if member == node:
                        break
                if len(group) > 1 or node in graph.get(node, ()):
                    groups.append(sorted(group, key=order.get))

    return sorted(groups, key=lambda g: order[g[0]])


# ── Progress Rollup ──────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ProgressRollup:
    value: int
    is_auto: bool


def rollup_progress(tasks):
    """Effective progress per task id.

    Leaves report their own clamped progress. Parents report the rounded mean
    of their direct children's effective progress and are flagged ``is_auto``
    (derived, not editable).
    """
    tasks = plan_tasks(tasks)
    tree = build_task_tree(tasks)
    values = [0] * len(tasks)
    # Children always follow their parent, so a reverse walk sees them first.
    for index in range(len(tasks) - 1, -1, -1):
        kids = tree.children[index]
        if kids:
            values[index] = round_half_up(sum(values[k] for k in kids) / len(kids))
        else:
            values[index] = clamp_progress(tasks[index].progress)
    return {task.id: ProgressRollup(values[i], tree.is_parent(i))
            for i, task in enumerate(tasks)}


def apply_progress_rollup(tasks):
    """Tasks with derived parent progress written back into ``progress``."""
    tasks = plan_tasks(tasks)
    rollup = rollup_progress(tasks)
    updated = []
    for task in tasks:
        meta = rollup[task.id]
        if meta.is_auto and task.progress != meta.value:
            task = replace(task, progress=meta.value)
        updated.append(task)
    return tuple(updated)


# ── Baseline Variance ────────────────────────────────────────────────────────

def resolve_baseline(task, baseline_plan=None):
    """The task's own snapshot, else the matching task of the baseline plan."""
    if task.baseline is not None:
        return task.baseline
    target_id = task.source_task_id or task.id
    for candidate in plan_tasks(baseline_plan):
        if candidate.id == target_id:
            return Baseline.from_task(candidate)
    return None


def is_baseline_empty(baseline):
    """True when a baseline holds nothing, i.e. the task was added after seeding."""
    if baseline is None:
        return True
    milestone = clean_str(baseline.milestone_type).lower()
    return (
        not clean_str(baseline.name)
        and not clean_str(baseline.description)
        and baseline.start_date is None
        and baseline.end_date is None
        and not clean_str(baseline.responsible)
        and milestone in ("", DEFAULT_MILESTONE.lower())
        and baseline.required_capacity is None
    )


def _comparable(field_name, value):
    if field_name in ("start_date", "end_date"):
        return format_date(value)
    if field_name == "required_capacity":
        return None if value is None else float(value)
    return value if value is not None else ""


def diff_fields(task, baseline):
    """Document keys (``endDate``, ...) of the baseline fields whose current value differs.

    Strict comparison, no tolerance.
    """
    if baseline is None or is_baseline_empty(baseline):
        return frozenset()
    return frozenset(
        BASELINE_FIELD_KEYS[name] for name in BASELINE_FIELDS
        if _comparable(name, getattr(task, name)) != _comparable(name, getattr(baseline, name))
    )


def is_task_new(task, baseline_plan=None):
    return is_baseline_empty(resolve_baseline(task, baseline_plan))


def seed_actuals(plan):
    """Replace the actuals with a snapshot of the plan (the explicit reseed operation)."""
    plan = plan if isinstance(plan, Plan) else normalize_plan(plan)
    seeded = tuple(
        replace(task, baseline=Baseline.from_task(task), source_task_id=task.id, archived=False)
        for task in plan.tasks
    )
    return PlanActuals(tasks=seeded, settings=plan.actuals.settings)


def value_step_variance(actual_tasks, baseline_plan=None, today=None):
    """Planned vs actual end of the Value Step milestone, or None without one.

    ``deviation_days`` is positive when the actual end slipped past the plan.
    """
    step = next((t for t in plan_tasks(actual_tasks) if is_value_step(t.milestone_type)), None)
    if step is None:
        return None
    today = parse_date(today) or date.today()
    baseline = resolve_baseline(step, baseline_plan)
    planned_end = baseline.end_date if baseline else None
    actual_end = step.end_date
    days_to_value = (actual_end - today).days if actual_end else None
    return {
        "task_id": step.id,
        "planned_end": planned_end,
        "actual_end": actual_end,
        "deviation_days": (actual_end - planned_end).days if actual_end and planned_end else None,
        "months_to_value": None if days_to_value is None else max(0, round_half_up(days_to_value / 30)),
    }
