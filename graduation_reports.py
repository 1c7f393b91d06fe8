#!/usr/bin/env python3
"""
Graduation Rate Reporting Engine
=====================================================
Turns cohort, program, admission-quota, student and graduation records into
cross-tabulated graduation reports:

- By-cohort ("por-generaciones") and by-program ("por-carreras") reports
- General or specific time scope (cohort start year) and program scope
- Admissions ("ingreso") or egresses ("egreso") as the rate denominator
- Optional sex filter (quota sub-fields for admissions, student sex otherwise)
- Three output shapes: summary, table, grouped (cohort x program matrix)
- JSON / CSV export and a fixed-width text rendition

Usage:
    python graduation_reports.py --data-dir ./output
    python graduation_reports.py --report-type por-carreras --start-year 2020 --end-year 2022
    python graduation_reports.py --career 1 --career 3 --denominator egreso --include-other
    python graduation_reports.py --request request.json --output json

Author: Wington Brito
"""

from __future__ import annotations

import argparse
import csv
import json
import logging
import operator
import sys
import unicodedata
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, fields
from datetime import date, datetime, timezone
from enum import Enum
from functools import reduce
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, ClassVar, Iterable, Mapping, Union

__all__ = [
    "AdmissionQuota",
    "Cohort",
    "CohortTableReport",
    "Denominator",
    "ErrorCode",
    "GraduationRecord",
    "GroupedReport",
    "Metrics",
    "Program",
    "ProgramTableReport",
    "RateLine",
    "RecordSnapshot",
    "ReportMetadata",
    "ReportRequest",
    "ReportRequestError",
    "ReportScope",
    "ReportType",
    "Sex",
    "SexFilter",
    "StudentRecord",
    "StudentStatus",
    "SummaryReport",
    "TableType",
    "build_metrics_grid",
    "calculate_percentage",
    "cohort_labels",
    "cohort_total",
    "collation_key",
    "compute_cell_metrics",
    "filter_cohorts_by_year",
    "generate_report",
    "grand_total",
    "handle_generate_report",
    "program_labels",
    "program_total",
    "record_from_row",
    "report_to_rows",
    "resolve_scope",
    "sum_metrics",
    "unique_labels",
]

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# ENUMS (str, Enum: wire values double as JSON values)
# ──────────────────────────────────────────────────────────────────────────────

class ReportType(str, Enum):
    BY_COHORT = "por-generaciones"
    BY_PROGRAM = "por-carreras"


class Denominator(str, Enum):
    ADMISSIONS = "ingreso"
    EGRESSES = "egreso"

    @property
    def other(self) -> Denominator:
        if self is Denominator.ADMISSIONS:
            return Denominator.EGRESSES
        return Denominator.ADMISSIONS


class Sex(str, Enum):
    MALE = "MASCULINO"
    FEMALE = "FEMENINO"


class SexFilter(str, Enum):
    GENERAL = "general"
    MALE = "MASCULINO"
    FEMALE = "FEMENINO"

    def matches(self, sex: Sex) -> bool:
        return self is SexFilter.GENERAL or self.value == sex.value


class StudentStatus(str, Enum):
    ACTIVE = "ACTIVO"
    PAUSED = "PAUSADO"
    CANCELLED = "CANCELADO"


class TableType(str, Enum):
    SUMMARY = "summary"
    TABLE = "table"
    GROUPED = "grouped"


class ErrorCode(str, Enum):
    REPORT_TYPE_NOT_SUPPORTED = "REPORT_TYPE_NOT_SUPPORTED"
    NO_CAREERS_FOUND = "NO_CAREERS_FOUND"
    NO_GENERATIONS_FOUND = "NO_GENERATIONS_FOUND"
    INVALID_DENOMINATOR = "INVALID_DENOMINATOR"
    INVALID_SEX_FILTER = "INVALID_SEX_FILTER"
    INVALID_REQUEST = "INVALID_REQUEST"


class ReportRequestError(ValueError):
    """A report request rejected before any metric is computed."""

    def __init__(self, message: str, code: ErrorCode):
        super().__init__(message)
        self.message = message
        self.code = code

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code.value}


# Column headers used by the flat table export and the text printer
COLUMN_LABELS: dict[str, str] = {
    "ingreso": "TOTAL INGRESOS",
    "egreso": "TOTAL EGRESADOS",
    "titulados": "TOTAL TITULADOS",
    "porcentaje": "%",
}

CELL_LABELS: dict[str, str] = {
    "ingreso": "INGRESOS",
    "egreso": "EGRESADOS",
    "titulados": "TITULADOS",
    "porcentaje": "%",
}

TOTALS_KEY = "totales"


# ──────────────────────────────────────────────────────────────────────────────
# RECORD MODELS (read-only inputs, JSON/Supabase-aligned dataclasses)
# ──────────────────────────────────────────────────────────────────────────────

def _year_of(iso_date: str) -> int:
    return date.fromisoformat(iso_date[:10]).year


@dataclass
class Cohort:
    """Intake generation of students."""
    id: str
    start_date: str  # ISO date, e.g. 2020-08-01
    end_date: str
    name: str | None = None
    description: str | None = None
    is_active: bool = True

    @property
    def start_year(self) -> int:
        return _year_of(self.start_date)

    @property
    def end_year(self) -> int:
        return _year_of(self.end_date)

    @property
    def display_name(self) -> str:
        return self.name or f"{self.start_year}-{self.end_year}"

    def to_report_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "name": self.display_name,
            "startYear": str(self.start_year),
            "endYear": str(self.end_year),
        }

    def to_supabase_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "description": self.description,
            "is_active": self.is_active,
        }

    @classmethod
    def from_supabase_row(cls, row: dict[str, Any]) -> Cohort:
        return cls(
            id=str(row["id"]),
            start_date=str(row["start_date"]),
            end_date=str(row["end_date"]),
            name=row.get("name"),
            description=row.get("description"),
            is_active=bool(row.get("is_active", True)),
        )


@dataclass
class Program:
    """Academic program (career) students enroll in."""
    id: str
    name: str
    short_name: str
    is_active: bool = True
    description: str | None = None

    def to_report_dict(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "shortName": self.short_name}

    def to_supabase_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "short_name": self.short_name,
            "description": self.description,
            "is_active": self.is_active,
        }

    @classmethod
    def from_supabase_row(cls, row: dict[str, Any]) -> Program:
        return cls(
            id=str(row["id"]),
            name=row["name"],
            short_name=row.get("short_name") or "",
            is_active=bool(row.get("is_active", True)),
            description=row.get("description"),
        )


@dataclass
class AdmissionQuota:
    """New-admission quota for one (cohort, program) pair, split by sex."""
    id: str
    cohort_id: str
    program_id: str
    male_quota: int
    female_quota: int
    is_active: bool = True
    description: str | None = None

    def __post_init__(self):
        if self.male_quota < 0 or self.female_quota < 0:
            raise ValueError(
                f"quota {self.id!r} has negative counts: "
                f"male={self.male_quota}, female={self.female_quota}"
            )

    @property
    def total(self) -> int:
        return self.male_quota + self.female_quota

    def admissions(self, sex: SexFilter) -> int:
        """Quota-level admissions; the sex filter selects a sub-field."""
        if sex is SexFilter.MALE:
            return self.male_quota
        if sex is SexFilter.FEMALE:
            return self.female_quota
        return self.total

    def to_supabase_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "generation_id": self.cohort_id,
            "career_id": self.program_id,
            "new_admission_quotas_male": self.male_quota,
            "new_admission_quotas_female": self.female_quota,
            "description": self.description,
            "is_active": self.is_active,
        }

    @classmethod
    def from_supabase_row(cls, row: dict[str, Any]) -> AdmissionQuota:
        return cls(
            id=str(row["id"]),
            cohort_id=str(row["generation_id"]),
            program_id=str(row["career_id"]),
            male_quota=int(row.get("new_admission_quotas_male") or 0),
            female_quota=int(row.get("new_admission_quotas_female") or 0),
            is_active=bool(row.get("is_active", True)),
            description=row.get("description"),
        )


@dataclass
class StudentRecord:
    """Individual student enrolled in a cohort and program."""
    id: str
    cohort_id: str
    program_id: str
    sex: Sex
    is_egressed: bool = False
    status: StudentStatus = StudentStatus.ACTIVE
    control_number: str = ""
    first_name: str = ""
    last_name: str = ""

    def __post_init__(self):
        self.sex = Sex(self.sex)
        self.status = StudentStatus(self.status)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_supabase_row(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "generation_id": self.cohort_id,
            "career_id": self.program_id,
            "control_number": self.control_number,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "sex": self.sex.value,
            "is_egressed": self.is_egressed,
            "status": self.status.value,
        }

    @classmethod
    def from_supabase_row(cls, row: dict[str, Any]) -> StudentRecord:
        return cls(
            id=str(row["id"]),
            cohort_id=str(row["generation_id"]),
            program_id=str(row["career_id"]),
            sex=row["sex"],
            is_egressed=bool(row.get("is_egressed", False)),
            status=row.get("status") or StudentStatus.ACTIVE.value,
            control_number=row.get("control_number") or "",
            first_name=row.get("first_name") or "",
            last_name=row.get("last_name") or "",
        )


@dataclass
class GraduationRecord:
    """Graduation outcome for one student (at most one per student)."""
    id: str
    student_id: str
    is_graduated: bool
    graduation_date: str | None = None

    def to_supabase_row(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_supabase_row(cls, row: dict[str, Any]) -> GraduationRecord:
        return cls(
            id=str(row["id"]),
            student_id=str(row["student_id"]),
            is_graduated=bool(row.get("is_graduated", False)),
            graduation_date=row.get("graduation_date"),
        )


def record_from_row(cls: type, row: dict[str, Any]) -> Any:
    """Build a record dataclass from a snapshot JSON row, ignoring unknown keys."""
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in row.items() if k in names})


# ──────────────────────────────────────────────────────────────────────────────
# RECORD REPOSITORY (one consistent read-only snapshot per report run)
# ──────────────────────────────────────────────────────────────────────────────

class RecordSnapshot:
    """
    Read-only view over cohorts, programs, quotas, students and graduations.

    Lookup indexes are built once at construction. A snapshot holds at most
    one graduation record per student; a second record for the same student
    is rejected so graduate counts never depend on lookup order.
    """

    DATASETS: ClassVar[dict[str, type]] = {
        "cohorts": Cohort,
        "programs": Program,
        "quotas": AdmissionQuota,
        "students": StudentRecord,
        "graduations": GraduationRecord,
    }

    def __init__(
        self,
        cohorts: Iterable[Cohort] = (),
        programs: Iterable[Program] = (),
        quotas: Iterable[AdmissionQuota] = (),
        students: Iterable[StudentRecord] = (),
        graduations: Iterable[GraduationRecord] = (),
    ):
        self.cohorts: tuple[Cohort, ...] = tuple(cohorts)
        self.programs: tuple[Program, ...] = tuple(programs)
        self.quotas: tuple[AdmissionQuota, ...] = tuple(quotas)
        self.students: tuple[StudentRecord, ...] = tuple(students)
        self.graduations: tuple[GraduationRecord, ...] = tuple(graduations)

        self._active_quotas_by_pair: dict[tuple[str, str], list[AdmissionQuota]] = defaultdict(list)
        for quota in self.quotas:
            if quota.is_active:
                self._active_quotas_by_pair[(quota.cohort_id, quota.program_id)].append(quota)

        self._students_by_pair: dict[tuple[str, str], list[StudentRecord]] = defaultdict(list)
        for student in self.students:
            self._students_by_pair[(student.cohort_id, student.program_id)].append(student)

        self._graduation_by_student: dict[str, GraduationRecord] = {}
        for graduation in self.graduations:
            if graduation.student_id in self._graduation_by_student:
                raise ValueError(
                    f"duplicate graduation record for student {graduation.student_id!r}"
                )
            self._graduation_by_student[graduation.student_id] = graduation

    def __repr__(self) -> str:
        return (
            f"RecordSnapshot(cohorts={len(self.cohorts)}, programs={len(self.programs)}, "
            f"quotas={len(self.quotas)}, students={len(self.students)}, "
            f"graduations={len(self.graduations)})"
        )

    # ── Read-only accessors ───────────────────────────────────────────────

    def active_programs(self) -> list[Program]:
        return [p for p in self.programs if p.is_active]

    def active_quotas_for(self, cohort_id: str, program_id: str) -> list[AdmissionQuota]:
        return list(self._active_quotas_by_pair.get((cohort_id, program_id), ()))

    def students_for(self, cohort_id: str, program_id: str) -> list[StudentRecord]:
        return list(self._students_by_pair.get((cohort_id, program_id), ()))

    def graduation_for(self, student_id: str) -> GraduationRecord | None:
        return self._graduation_by_student.get(student_id)

    def is_graduated(self, student_id: str) -> bool:
        graduation = self._graduation_by_student.get(student_id)
        return graduation is not None and graduation.is_graduated

    # ── Loading / export ──────────────────────────────────────────────────

    @classmethod
    def from_dict(cls, data: dict[str, list[dict[str, Any]]]) -> RecordSnapshot:
        """Build a snapshot from plain rows keyed by dataset name."""
        unknown = set(data) - set(cls.DATASETS)
        if unknown:
            raise ValueError(f"unknown datasets: {sorted(unknown)}")
        return cls(**{
            name: [record_from_row(record_cls, row) for row in data.get(name, [])]
            for name, record_cls in cls.DATASETS.items()
        })

    @classmethod
    def load(cls, data_dir: str | Path) -> RecordSnapshot:
        """Load `<dataset>.json` files written by `to_json`."""
        base = Path(data_dir)
        data: dict[str, list[dict[str, Any]]] = {}
        for name in cls.DATASETS:
            rows = json.loads((base / f"{name}.json").read_text(encoding="utf-8"))
            if not isinstance(rows, list):
                raise ValueError(f"{name}.json must hold a list of records")
            data[name] = rows
        snapshot = cls.from_dict(data)
        logger.info("Loaded %r from %s", snapshot, base)
        return snapshot

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        return {
            name: [asdict(r) for r in getattr(self, name)]
            for name in self.DATASETS
        }

    def to_json(self, output_dir: str | Path) -> dict[str, str]:
        """Write one JSON file per dataset. Returns dataset -> path."""
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        files = {}
        for name, rows in self.to_dict().items():
            path = out / f"{name}.json"
            path.write_text(json.dumps(rows, indent=2, default=str, ensure_ascii=False), encoding="utf-8")
            files[name] = str(path)
        return files


# ──────────────────────────────────────────────────────────────────────────────
# REPORT REQUEST (single canonical form for both wire encodings)
# ──────────────────────────────────────────────────────────────────────────────

def _parse_enum(enum_cls: type[Enum], value: Any, code: ErrorCode, label: str) -> Any:
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(repr(m.value) for m in enum_cls)
        raise ReportRequestError(
            f"Unsupported {label} {value!r}; expected one of {allowed}", code,
        ) from None


def _parse_year(value: Any, label: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ReportRequestError(f"{label} must be an integer year", ErrorCode.INVALID_REQUEST)
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    raise ReportRequestError(f"{label} must be an integer year, got {value!r}", ErrorCode.INVALID_REQUEST)


def _parse_flag(value: Any, label: str) -> bool:
    if value is None:
        return False
    if isinstance(value, bool):
        return value
    raise ReportRequestError(f"{label} must be a boolean, got {value!r}", ErrorCode.INVALID_REQUEST)


def _selector_type(selector: dict[str, Any], label: str) -> str:
    kind = selector.get("type")
    if kind not in ("general", "specific"):
        raise ReportRequestError(
            f"{label}.type must be 'general' or 'specific', got {kind!r}",
            ErrorCode.INVALID_REQUEST,
        )
    return kind


@dataclass(frozen=True)
class ReportRequest:
    """Canonical report request. Absent years and an empty id list mean general."""
    report_type: ReportType
    denominator: Denominator = Denominator.ADMISSIONS
    include_other_value: bool = False
    start_year: int | None = None
    end_year: int | None = None
    program_ids: tuple[str, ...] = ()
    sex: SexFilter = SexFilter.GENERAL

    @property
    def is_general_date_range(self) -> bool:
        return self.start_year is None and self.end_year is None

    @property
    def is_general_programs(self) -> bool:
        return not self.program_ids

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ReportRequest:
        """
        Normalize a JSON request body.

        Structured `dateRange` / `careers` selectors take precedence over the
        legacy flat `startYear` / `endYear` / `careerIds` fields.
        """
        if not isinstance(payload, dict):
            raise ReportRequestError("Request body must be a JSON object", ErrorCode.INVALID_REQUEST)

        report_type = _parse_enum(
            ReportType, payload.get("reportType"),
            ErrorCode.REPORT_TYPE_NOT_SUPPORTED, "report type",
        )
        denominator = _parse_enum(
            Denominator, payload.get("graduationRateDenominator"),
            ErrorCode.INVALID_DENOMINATOR, "graduation rate denominator",
        )
        sex = _parse_enum(
            SexFilter, payload.get("sex") or SexFilter.GENERAL.value,
            ErrorCode.INVALID_SEX_FILTER, "sex filter",
        )

        date_range = payload.get("dateRange")
        if isinstance(date_range, dict):
            if _selector_type(date_range, "dateRange") == "specific":
                start_raw, end_raw = date_range.get("startYear"), date_range.get("endYear")
            else:
                start_raw = end_raw = None
        else:
            start_raw, end_raw = payload.get("startYear"), payload.get("endYear")

        careers = payload.get("careers")
        if isinstance(careers, dict):
            if _selector_type(careers, "careers") == "specific":
                ids_raw = careers.get("selected") or []
            else:
                ids_raw = []
        else:
            ids_raw = payload.get("careerIds") or []
        if not isinstance(ids_raw, (list, tuple)):
            raise ReportRequestError("career ids must be a list", ErrorCode.INVALID_REQUEST)

        return cls(
            report_type=report_type,
            denominator=denominator,
            include_other_value=_parse_flag(payload.get("includeOtherValue"), "includeOtherValue"),
            start_year=_parse_year(start_raw, "startYear"),
            end_year=_parse_year(end_raw, "endYear"),
            program_ids=tuple(dict.fromkeys(str(i) for i in ids_raw)),
            sex=sex,
        )


# ──────────────────────────────────────────────────────────────────────────────
# SCOPE RESOLVER
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ReportScope:
    """Concrete cohorts and programs a report run applies to."""
    cohorts: tuple[Cohort, ...]
    programs: tuple[Program, ...]
    is_general_date_range: bool
    is_general_programs: bool

    @property
    def cohort_ids(self) -> tuple[str, ...]:
        return tuple(c.id for c in self.cohorts)

    @property
    def program_ids(self) -> tuple[str, ...]:
        return tuple(p.id for p in self.programs)

    def table_type(self, report_type: ReportType) -> TableType:
        """Pick the output shape once from the two generality flags."""
        if self.is_general_date_range and self.is_general_programs:
            return TableType.SUMMARY
        if report_type is ReportType.BY_COHORT and not self.is_general_programs:
            return TableType.GROUPED
        return TableType.TABLE


def filter_cohorts_by_year(
    cohorts: Iterable[Cohort],
    start_year: int | None = None,
    end_year: int | None = None,
) -> list[Cohort]:
    """Cohorts whose start year lies in [start_year, end_year]; a missing bound is open."""
    return [
        c for c in cohorts
        if (start_year is None or c.start_year >= start_year)
        and (end_year is None or c.start_year <= end_year)
    ]


def collation_key(name: str) -> str:
    """Accent- and case-insensitive sort key: 'Álgebra' < 'arquitectura' < 'Biología'."""
    stripped = unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    return stripped.casefold()


def resolve_scope(request: ReportRequest, snapshot: RecordSnapshot) -> ReportScope:
    """Resolve cohorts and programs in scope, rejecting empty specific selections."""
    if request.is_general_date_range:
        cohorts = list(snapshot.cohorts)
    else:
        cohorts = filter_cohorts_by_year(snapshot.cohorts, request.start_year, request.end_year)
        if not cohorts:
            raise ReportRequestError(
                "No cohorts found in the requested date range",
                ErrorCode.NO_GENERATIONS_FOUND,
            )

    if request.is_general_programs:
        programs = snapshot.active_programs()
    else:
        wanted = set(request.program_ids)
        programs = [p for p in snapshot.programs if p.id in wanted]
        if not programs:
            raise ReportRequestError(
                "No programs found for the report",
                ErrorCode.NO_CAREERS_FOUND,
            )
        missing = wanted - {p.id for p in programs}
        if missing:
            logger.warning("Ignoring unknown program ids: %s", sorted(missing))

    scope = ReportScope(
        cohorts=tuple(sorted(cohorts, key=lambda c: (c.start_year, c.id))),
        programs=tuple(sorted(programs, key=lambda p: (collation_key(p.name), p.name, p.id))),
        is_general_date_range=request.is_general_date_range,
        is_general_programs=request.is_general_programs,
    )
    logger.debug(
        "Resolved scope: %d cohorts (general=%s), %d programs (general=%s)",
        len(scope.cohorts), scope.is_general_date_range,
        len(scope.programs), scope.is_general_programs,
    )
    return scope


# ──────────────────────────────────────────────────────────────────────────────
# METRIC CALCULATOR / AGGREGATOR / RATE (pure functions)
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Metrics:
    """Raw counts for a cell or any aggregate of cells."""
    admissions: int = 0
    egresses: int = 0
    graduates: int = 0

    def __add__(self, other: Metrics) -> Metrics:
        if not isinstance(other, Metrics):
            return NotImplemented
        return Metrics(
            admissions=self.admissions + other.admissions,
            egresses=self.egresses + other.egresses,
            graduates=self.graduates + other.graduates,
        )

    def value_for(self, denominator: Denominator) -> int:
        if denominator is Denominator.ADMISSIONS:
            return self.admissions
        return self.egresses


MetricsGrid = dict[tuple[str, str], Metrics]


def compute_cell_metrics(
    snapshot: RecordSnapshot,
    cohort_id: str,
    program_id: str,
    sex: SexFilter = SexFilter.GENERAL,
) -> Metrics:
    """
    Admissions, egresses and graduates for one (cohort, program) pair.

    Admissions come from active quota rows, where the sex filter picks the
    male or female sub-field. Egresses and graduates count individual
    students, where the sex filter applies to each student's sex.
    Graduates are not required to be a subset of egresses.
    """
    admissions = sum(q.admissions(sex) for q in snapshot.active_quotas_for(cohort_id, program_id))
    students = [s for s in snapshot.students_for(cohort_id, program_id) if sex.matches(s.sex)]
    return Metrics(
        admissions=admissions,
        egresses=sum(1 for s in students if s.is_egressed),
        graduates=sum(1 for s in students if snapshot.is_graduated(s.id)),
    )


def build_metrics_grid(
    snapshot: RecordSnapshot,
    cohort_ids: Iterable[str],
    program_ids: Iterable[str],
    sex: SexFilter = SexFilter.GENERAL,
) -> MetricsGrid:
    """Cell metrics for the full cohort x program cross-product."""
    program_ids = tuple(program_ids)
    return {
        (cohort_id, program_id): compute_cell_metrics(snapshot, cohort_id, program_id, sex)
        for cohort_id in cohort_ids
        for program_id in program_ids
    }


def sum_metrics(items: Iterable[Metrics]) -> Metrics:
    return reduce(operator.add, items, Metrics())


def cohort_total(grid: MetricsGrid, cohort_id: str) -> Metrics:
    """Sum across every program for one cohort."""
    return sum_metrics(m for (c, _), m in grid.items() if c == cohort_id)


def program_total(grid: MetricsGrid, program_id: str) -> Metrics:
    """Sum across every cohort for one program."""
    return sum_metrics(m for (_, p), m in grid.items() if p == program_id)


def grand_total(grid: MetricsGrid) -> Metrics:
    return sum_metrics(grid.values())


def calculate_percentage(graduates: int, denominator: int) -> float:
    """Graduation rate in percent, 2 decimals. A non-positive denominator yields 0."""
    if denominator <= 0:
        return 0.0
    return round(graduates / denominator * 100, 2)


@dataclass(frozen=True)
class RateLine:
    """Metrics plus the percentage derived from this line's own denominator."""
    metrics: Metrics
    denominator: Denominator
    percentage: float

    @classmethod
    def from_metrics(cls, metrics: Metrics, denominator: Denominator) -> RateLine:
        return cls(
            metrics=metrics,
            denominator=denominator,
            percentage=calculate_percentage(metrics.graduates, metrics.value_for(denominator)),
        )

    def to_dict(self, include_other_value: bool) -> dict[str, Any]:
        # Both values are always computed; only the output omits the other one
        out: dict[str, Any] = {self.denominator.value: self.metrics.value_for(self.denominator)}
        if include_other_value:
            other = self.denominator.other
            out[other.value] = self.metrics.value_for(other)
        out["titulados"] = self.metrics.graduates
        out["porcentaje"] = self.percentage
        return out


# ──────────────────────────────────────────────────────────────────────────────
# REPORT RESULTS (immutable output shapes)
# ──────────────────────────────────────────────────────────────────────────────

def _iso_utc(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _read_only(mapping: Mapping[Any, Any]) -> Mapping[Any, Any]:
    return MappingProxyType(dict(mapping))


@dataclass(frozen=True)
class ReportMetadata:
    request: ReportRequest
    generated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        req = self.request
        out: dict[str, Any] = {
            "dateRange": "general" if req.is_general_date_range else "specific",
            "careers": "general" if req.is_general_programs else "specific",
        }
        if req.start_year is not None:
            out["startYear"] = req.start_year
        if req.end_year is not None:
            out["endYear"] = req.end_year
        if not req.is_general_programs:
            out["careerIds"] = list(req.program_ids)
        out["graduationRateDenominator"] = req.denominator.value
        out["includeOtherValue"] = req.include_other_value
        out["sex"] = req.sex.value
        out["generatedAt"] = _iso_utc(self.generated_at)
        return out


@dataclass(frozen=True)
class SummaryReport:
    """Whole-system totals: every cohort x every active program."""
    report_type: ReportType
    metadata: ReportMetadata
    total: RateLine

    table_type: ClassVar[TableType] = TableType.SUMMARY

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.report_type.value,
            "tableType": self.table_type.value,
            "metadata": self.metadata.to_dict(),
            "data": self.total.to_dict(self.metadata.request.include_other_value),
        }


@dataclass(frozen=True)
class CohortRow:
    cohort: Cohort
    line: RateLine


@dataclass(frozen=True)
class CohortTableReport:
    """One row per cohort, each summed over all in-scope programs."""
    report_type: ReportType
    metadata: ReportMetadata
    rows: tuple[CohortRow, ...]
    grand_total: RateLine

    table_type: ClassVar[TableType] = TableType.TABLE

    def to_dict(self) -> dict[str, Any]:
        include = self.metadata.request.include_other_value
        return {
            "type": self.report_type.value,
            "tableType": self.table_type.value,
            "metadata": self.metadata.to_dict(),
            "data": [
                {
                    "generationId": row.cohort.id,
                    "generation": row.cohort.to_report_dict(),
                    **row.line.to_dict(include),
                }
                for row in self.rows
            ],
            "grandTotal": self.grand_total.to_dict(include),
        }


@dataclass(frozen=True)
class ProgramRow:
    program: Program
    line: RateLine
    graduates_by_cohort: Mapping[str, int]

    def __post_init__(self):
        object.__setattr__(self, "graduates_by_cohort", _read_only(self.graduates_by_cohort))


@dataclass(frozen=True)
class ProgramTableReport:
    """
    One row per program, summed over in-scope cohorts.

    With a specific date range each row also carries graduate counts per
    cohort (the trend view) and `cohorts` lists the columns; with a general
    range both are empty.
    """
    report_type: ReportType
    metadata: ReportMetadata
    rows: tuple[ProgramRow, ...]
    cohorts: tuple[Cohort, ...]
    grand_total: RateLine

    table_type: ClassVar[TableType] = TableType.TABLE

    def to_dict(self) -> dict[str, Any]:
        include = self.metadata.request.include_other_value
        return {
            "type": self.report_type.value,
            "tableType": self.table_type.value,
            "metadata": self.metadata.to_dict(),
            "data": [
                {
                    "careerId": row.program.id,
                    "career": row.program.to_report_dict(),
                    "valuesByGeneration": dict(row.graduates_by_cohort),
                    **row.line.to_dict(include),
                }
                for row in self.rows
            ],
            "generations": [c.to_report_dict() for c in self.cohorts],
            "grandTotal": self.grand_total.to_dict(include),
        }


@dataclass(frozen=True)
class GroupedReport:
    """Full cohort x program matrix with row, column and grand totals."""
    report_type: ReportType
    metadata: ReportMetadata
    cohorts: tuple[Cohort, ...]
    programs: tuple[Program, ...]
    cells: Mapping[tuple[str, str], RateLine]
    cohort_totals: Mapping[str, RateLine]
    program_totals: Mapping[str, RateLine]
    grand_total: RateLine

    table_type: ClassVar[TableType] = TableType.GROUPED

    def __post_init__(self):
        for name in ("cells", "cohort_totals", "program_totals"):
            object.__setattr__(self, name, _read_only(getattr(self, name)))

    def to_dict(self) -> dict[str, Any]:
        include = self.metadata.request.include_other_value
        data: dict[str, dict[str, Any]] = {}
        for cohort in self.cohorts:
            row = {
                program.id: self.cells[(cohort.id, program.id)].to_dict(include)
                for program in self.programs
            }
            row[TOTALS_KEY] = self.cohort_totals[cohort.id].to_dict(include)
            data[cohort.id] = row
        return {
            "type": self.report_type.value,
            "tableType": self.table_type.value,
            "metadata": self.metadata.to_dict(),
            "data": data,
            "generations": [c.to_report_dict() for c in self.cohorts],
            "careers": [p.to_report_dict() for p in self.programs],
            "totalsByGeneration": {
                c.id: self.cohort_totals[c.id].to_dict(include) for c in self.cohorts
            },
            "totalsByCareer": {
                p.id: self.program_totals[p.id].to_dict(include) for p in self.programs
            },
            "grandTotal": self.grand_total.to_dict(include),
        }


ReportResult = Union[SummaryReport, CohortTableReport, ProgramTableReport, GroupedReport]


# ──────────────────────────────────────────────────────────────────────────────
# RESPONSE SHAPER
# ──────────────────────────────────────────────────────────────────────────────

def _build_summary(
    request: ReportRequest, scope: ReportScope, grid: MetricsGrid, metadata: ReportMetadata,
) -> SummaryReport:
    return SummaryReport(
        report_type=request.report_type,
        metadata=metadata,
        total=RateLine.from_metrics(grand_total(grid), request.denominator),
    )


def _build_table(
    request: ReportRequest, scope: ReportScope, grid: MetricsGrid, metadata: ReportMetadata,
) -> CohortTableReport | ProgramTableReport:
    denominator = request.denominator
    total = RateLine.from_metrics(grand_total(grid), denominator)

    if request.report_type is ReportType.BY_COHORT:
        return CohortTableReport(
            report_type=request.report_type,
            metadata=metadata,
            rows=tuple(
                CohortRow(cohort, RateLine.from_metrics(cohort_total(grid, cohort.id), denominator))
                for cohort in scope.cohorts
            ),
            grand_total=total,
        )

    trend_cohorts = () if scope.is_general_date_range else scope.cohorts
    return ProgramTableReport(
        report_type=request.report_type,
        metadata=metadata,
        rows=tuple(
            ProgramRow(
                program=program,
                line=RateLine.from_metrics(program_total(grid, program.id), denominator),
                graduates_by_cohort={
                    cohort.id: grid[(cohort.id, program.id)].graduates
                    for cohort in trend_cohorts
                },
            )
            for program in scope.programs
        ),
        cohorts=trend_cohorts,
        grand_total=total,
    )


def _build_grouped(
    request: ReportRequest, scope: ReportScope, grid: MetricsGrid, metadata: ReportMetadata,
) -> GroupedReport:
    denominator = request.denominator
    return GroupedReport(
        report_type=request.report_type,
        metadata=metadata,
        cohorts=scope.cohorts,
        programs=scope.programs,
        cells={key: RateLine.from_metrics(m, denominator) for key, m in grid.items()},
        cohort_totals={
            c.id: RateLine.from_metrics(cohort_total(grid, c.id), denominator) for c in scope.cohorts
        },
        program_totals={
            p.id: RateLine.from_metrics(program_total(grid, p.id), denominator) for p in scope.programs
        },
        grand_total=RateLine.from_metrics(grand_total(grid), denominator),
    )


_SHAPE_BUILDERS: dict[TableType, Callable[..., ReportResult]] = {
    TableType.SUMMARY: _build_summary,
    TableType.TABLE: _build_table,
    TableType.GROUPED: _build_grouped,
}


def generate_report(
    request: ReportRequest,
    snapshot: RecordSnapshot,
    now: datetime | None = None,
) -> ReportResult:
    """Resolve scope, compute the metrics grid once and shape the result."""
    scope = resolve_scope(request, snapshot)
    table_type = scope.table_type(request.report_type)
    grid = build_metrics_grid(snapshot, scope.cohort_ids, scope.program_ids, request.sex)
    metadata = ReportMetadata(request=request, generated_at=now or datetime.now(timezone.utc))

    logger.info(
        "Generating %s report (%s): %d cohorts x %d programs, denominator=%s, sex=%s",
        request.report_type.value, table_type.value, len(scope.cohorts), len(scope.programs),
        request.denominator.value, request.sex.value,
    )
    return _SHAPE_BUILDERS[table_type](request, scope, grid, metadata)


def handle_generate_report(
    payload: dict[str, Any],
    snapshot: RecordSnapshot,
    now: datetime | None = None,
) -> tuple[int, dict[str, Any]]:
    """Request body in, (HTTP status, JSON body) out."""
    try:
        request = ReportRequest.from_payload(payload)
        report = generate_report(request, snapshot, now=now)
    except ReportRequestError as exc:
        logger.info("Report request rejected: %s (%s)", exc.message, exc.code.value)
        return 400, exc.to_dict()
    return 200, report.to_dict()


# ──────────────────────────────────────────────────────────────────────────────
# EXPORT (flat table rows, JSON, CSV)
# ──────────────────────────────────────────────────────────────────────────────

def unique_labels(entries: Iterable[tuple[str, str, str]]) -> dict[str, str]:
    """
    Map id -> display label from (id, preferred, fallback) triples.

    An empty or shared preferred label falls back to the fallback label; a
    label still shared after that gets the id appended.
    """
    entries = list(entries)
    preferred_counts = Counter(preferred for _, preferred, _ in entries)
    labels = {
        item_id: preferred if preferred and preferred_counts[preferred] == 1 else (fallback or preferred)
        for item_id, preferred, fallback in entries
    }
    counts = Counter(labels.values())
    return {
        item_id: label if label and counts[label] == 1 else f"{label} ({item_id})".lstrip()
        for item_id, label in labels.items()
    }


def program_labels(programs: Iterable[Program]) -> dict[str, str]:
    """Short program labels for column headers, unique within the report."""
    return unique_labels((p.id, p.short_name, p.name) for p in programs)


def cohort_labels(cohorts: Iterable[Cohort]) -> dict[str, str]:
    return unique_labels(
        (c.id, c.display_name, f"{c.start_year}-{c.end_year}") for c in cohorts
    )


def _ordered_line_keys(request: ReportRequest) -> list[str]:
    """Other value first (when shown), then the denominator, graduates, rate."""
    keys = [request.denominator.value]
    if request.include_other_value:
        keys.insert(0, request.denominator.other.value)
    return keys + ["titulados", "porcentaje"]


def _format_cell(key: str, value: Any) -> Any:
    return f"{value:.2f}%" if key == "porcentaje" else value


def _line_columns(line: RateLine, request: ReportRequest, labels: dict[str, str], prefix: str = "") -> dict[str, Any]:
    values = line.to_dict(request.include_other_value)
    return {
        f"{prefix}{labels[key]}": _format_cell(key, values[key])
        for key in _ordered_line_keys(request)
    }


def report_to_rows(report: ReportResult) -> list[dict[str, Any]]:
    """Flatten any report shape into table rows ending with a TOTAL row."""
    request = report.metadata.request

    if isinstance(report, SummaryReport):
        return [{"": "TOTAL", **_line_columns(report.total, request, COLUMN_LABELS)}]

    if isinstance(report, CohortTableReport):
        names = cohort_labels(row.cohort for row in report.rows)
        rows = [
            {"Generación": names[row.cohort.id], **_line_columns(row.line, request, COLUMN_LABELS)}
            for row in report.rows
        ]
        rows.append({"Generación": "TOTAL", **_line_columns(report.grand_total, request, COLUMN_LABELS)})
        return rows

    if isinstance(report, ProgramTableReport):
        names = cohort_labels(report.cohorts)
        rows = []
        for row in report.rows:
            out: dict[str, Any] = {"Carrera": row.program.name}
            for cohort in report.cohorts:
                out[names[cohort.id]] = row.graduates_by_cohort.get(cohort.id, 0)
            out.update(_line_columns(row.line, request, COLUMN_LABELS))
            rows.append(out)
        total: dict[str, Any] = {"Carrera": "TOTAL"}
        for cohort in report.cohorts:
            total[names[cohort.id]] = sum(r.graduates_by_cohort.get(cohort.id, 0) for r in report.rows)
        total.update(_line_columns(report.grand_total, request, COLUMN_LABELS))
        rows.append(total)
        return rows

    names = cohort_labels(report.cohorts)
    headers = program_labels(report.programs)
    rows = []
    for cohort in report.cohorts:
        out = {"Generación": names[cohort.id]}
        for program in report.programs:
            out.update(_line_columns(
                report.cells[(cohort.id, program.id)], request, CELL_LABELS,
                prefix=f"{headers[program.id]} ",
            ))
        out.update(_line_columns(report.cohort_totals[cohort.id], request, COLUMN_LABELS))
        rows.append(out)
    total = {"Generación": "TOTAL"}
    for program in report.programs:
        total.update(_line_columns(
            report.program_totals[program.id], request, CELL_LABELS,
            prefix=f"{headers[program.id]} ",
        ))
    total.update(_line_columns(report.grand_total, request, COLUMN_LABELS))
    rows.append(total)
    return rows


def write_report_json(report: ReportResult, path: str | Path) -> str:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(report.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
    return str(out)


def write_report_csv(report: ReportResult, path: str | Path) -> str:
    out = Path(path)
    out.parent.mkdir(parents=True, exist_ok=True)
    rows = report_to_rows(report)
    fieldnames = list(dict.fromkeys(k for row in rows for k in row))
    with open(out, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        writer.writerows(rows)
    return str(out)


# ──────────────────────────────────────────────────────────────────────────────
# REPORT PRINTER
# ──────────────────────────────────────────────────────────────────────────────

def print_report(report: ReportResult):
    """Print a fixed-width rendition of a report to stdout."""
    request = report.metadata.request
    rows = report_to_rows(report)
    columns = list(dict.fromkeys(k for row in rows for k in row))
    widths = {
        col: max(len(col), *(len(str(row.get(col, ""))) for row in rows))
        for col in columns
    }

    scope_parts = []
    if request.is_general_date_range:
        scope_parts.append("all cohorts")
    else:
        scope_parts.append(f"cohorts {request.start_year or '...'}-{request.end_year or '...'}")
    if request.is_general_programs:
        scope_parts.append("all active programs")
    else:
        scope_parts.append(f"programs {', '.join(request.program_ids)}")

    line_width = max(72, sum(widths.values()) + 2 * len(columns))
    print(f"\n{'=' * line_width}")
    print(f"  GRADUATION REPORT: {request.report_type.value.upper()} ({report.table_type.value})")
    print(f"{'=' * line_width}")
    print(f"  Scope: {' | '.join(scope_parts)}")
    print(f"  Denominator: {request.denominator.value} | Sex: {request.sex.value}")
    print(f"  Generated: {_iso_utc(report.metadata.generated_at)}")
    print(f"\n  {'─' * (line_width - 2)}")

    print("  " + "  ".join(
        f"{col:<{widths[col]}}" if i == 0 else f"{col:>{widths[col]}}"
        for i, col in enumerate(columns)
    ))
    print(f"  {'─' * (line_width - 2)}")
    for row in rows:
        if row is rows[-1] and len(rows) > 1:
            print(f"  {'─' * (line_width - 2)}")
        print("  " + "  ".join(
            f"{str(row.get(col, '')):<{widths[col]}}" if i == 0
            else f"{str(row.get(col, '')):>{widths[col]}}"
            for i, col in enumerate(columns)
        ))

    print(f"\n{'=' * line_width}\n")


# ──────────────────────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────────────────────

def _payload_from_args(args: argparse.Namespace) -> dict[str, Any]:
    if args.request:
        return json.loads(Path(args.request).read_text(encoding="utf-8"))

    specific_dates = args.start_year is not None or args.end_year is not None
    payload: dict[str, Any] = {
        "reportType": args.report_type,
        "graduationRateDenominator": args.denominator,
        "includeOtherValue": args.include_other,
        "sex": args.sex,
        "dateRange": (
            {"type": "specific", "startYear": args.start_year, "endYear": args.end_year}
            if specific_dates else {"type": "general"}
        ),
        "careers": (
            {"type": "specific", "selected": args.career}
            if args.career else {"type": "general"}
        ),
    }
    return payload


def main():
    parser = argparse.ArgumentParser(description="Graduation Rate Report Generator")
    parser.add_argument("--data-dir", default="./output", help="Directory with record snapshot JSON files")
    parser.add_argument("--request", help="JSON file with a report request body (overrides the flags below)")
    parser.add_argument(
        "--report-type", choices=[t.value for t in ReportType],
        default=ReportType.BY_COHORT.value, help="Report dimension",
    )
    parser.add_argument("--start-year", type=int, help="First cohort start year in scope")
    parser.add_argument("--end-year", type=int, help="Last cohort start year in scope")
    parser.add_argument(
        "--career", action="append", default=[],
        help="Program id in scope (repeatable; omit for all active programs)",
    )
    parser.add_argument(
        "--denominator", choices=[d.value for d in Denominator],
        default=Denominator.ADMISSIONS.value, help="Graduation rate denominator",
    )
    parser.add_argument("--include-other", action="store_true", help="Also show the non-chosen denominator")
    parser.add_argument(
        "--sex", choices=[s.value for s in SexFilter],
        default=SexFilter.GENERAL.value, help="Sex filter",
    )
    parser.add_argument(
        "--output", choices=["report", "json", "csv", "all"],
        default="report", help="Output format",
    )
    parser.add_argument("--output-dir", default="./output/reports", help="Directory for exported reports")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    data_dir = Path(args.data_dir)
    missing = [f"{name}.json" for name in RecordSnapshot.DATASETS if not (data_dir / f"{name}.json").exists()]
    if missing:
        print(f"ERROR: Missing record files in {data_dir}: {', '.join(missing)}")
        print("Generate a snapshot first:")
        print("  python generate_graduation_records.py --output json")
        sys.exit(1)

    snapshot = RecordSnapshot.load(data_dir)

    try:
        request = ReportRequest.from_payload(_payload_from_args(args))
        report = generate_report(request, snapshot)
    except ReportRequestError as exc:
        print(f"ERROR: {json.dumps(exc.to_dict(), ensure_ascii=False)}")
        sys.exit(1)

    print_report(report)

    out = Path(args.output_dir)
    stem = f"report_{request.report_type.value}_{report.table_type.value}"
    if args.output in ("json", "all"):
        path = write_report_json(report, out / f"{stem}.json")
        print(f"  JSON -> {path}")
    if args.output in ("csv", "all"):
        path = write_report_csv(report, out / f"{stem}.csv")
        print(f"  CSV  -> {path}")


if __name__ == "__main__":
    main()
