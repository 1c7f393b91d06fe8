#!/usr/bin/env python3
"""
Synthetic Graduation Record Generator
=====================================================
Generates a realistic record snapshot for the graduation reporting engine:

- Program catalog (one retired program kept for historical cohorts)
- Consecutive yearly cohorts (August intake, four-year span)
- Admission quotas per (cohort, program) split by sex, with occasional
  superseded (inactive) quota rows
- Student rosters filling part of each quota, sex drawn from the quota split
- Egress flags driven by whether the cohort finished before the reference year
- Graduation records (graduated or in process) for a share of egressed students
- Snapshot output (JSON files read by graduation_reports.py, SQL INSERTs)

Usage:
    python generate_graduation_records.py
    python generate_graduation_records.py --cohorts 8 --start-year 2015
    python generate_graduation_records.py --output json --output-dir ./data
    python generate_graduation_records.py --output supabase
    python generate_graduation_records.py --seed 42 --reference-year 2024

Author: Wington Brito
"""

from __future__ import annotations

import argparse
import json
import logging
import time
import uuid
from datetime import date, datetime, timedelta
from pathlib import Path
from random import Random
from typing import Any, TypedDict

from graduation_reports import (
    AdmissionQuota,
    Cohort,
    GraduationRecord,
    Program,
    RecordSnapshot,
    Sex,
    SexFilter,
    StudentRecord,
    StudentStatus,
    build_metrics_grid,
    calculate_percentage,
    cohort_total,
    grand_total,
)

__all__ = [
    "GraduationRecordGenerator",
    "PROGRAM_CATALOG",
    "cohort_has_finished",
    "sample_admitted_count",
]

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────────────
# TYPED CONFIGURATION
# ──────────────────────────────────────────────────────────────────────────────

class ProgramConfig(TypedDict):
    short_name: str
    quota: int              # base new-admission quota per cohort
    growth: float           # quota growth rate per cohort
    male_share: float       # expected share of male admissions
    egress_rate: float      # share of enrolled students that egress
    graduation_rate: float  # share of egressed students that graduate
    active: bool


PROGRAM_CATALOG: dict[str, ProgramConfig] = {
    "Ingeniería en Sistemas Computacionales": {
        "short_name": "ISC", "quota": 120, "growth": 0.05, "male_share": 0.72,
        "egress_rate": 0.62, "graduation_rate": 0.71, "active": True,
    },
    "Ingeniería Industrial": {
        "short_name": "II", "quota": 100, "growth": 0.02, "male_share": 0.58,
        "egress_rate": 0.68, "graduation_rate": 0.78, "active": True,
    },
    "Ingeniería en Gestión Empresarial": {
        "short_name": "IGE", "quota": 90, "growth": 0.04, "male_share": 0.38,
        "egress_rate": 0.74, "graduation_rate": 0.82, "active": True,
    },
    "Licenciatura en Administración": {
        "short_name": "LA", "quota": 80, "growth": 0.00, "male_share": 0.35,
        "egress_rate": 0.77, "graduation_rate": 0.80, "active": True,
    },
    "Ingeniería Mecatrónica": {
        "short_name": "IM", "quota": 70, "growth": 0.07, "male_share": 0.81,
        "egress_rate": 0.55, "graduation_rate": 0.66, "active": True,
    },
    "Ingeniería Química": {
        "short_name": "IQ", "quota": 50, "growth": -0.04, "male_share": 0.52,
        "egress_rate": 0.60, "graduation_rate": 0.70, "active": False,
    },
}

FIRST_NAMES: dict[Sex, list[str]] = {
    Sex.MALE: [
        "José", "Luis", "Juan", "Carlos", "Jorge", "Miguel", "Alejandro",
        "Fernando", "Ricardo", "Eduardo", "Diego", "Andrés", "Raúl", "Héctor",
        "Iván", "Omar", "Sergio", "Arturo", "Emiliano", "Santiago",
    ],
    Sex.FEMALE: [
        "María", "Guadalupe", "Fernanda", "Daniela", "Sofía", "Valeria",
        "Ximena", "Andrea", "Mariana", "Paola", "Alejandra", "Gabriela",
        "Karla", "Lucía", "Regina", "Camila", "Natalia", "Itzel", "Diana", "Ana",
    ],
}

LAST_NAMES = [
    "Hernández", "García", "Martínez", "López", "González", "Pérez",
    "Rodríguez", "Sánchez", "Ramírez", "Cruz", "Flores", "Gómez", "Morales",
    "Vázquez", "Reyes", "Jiménez", "Torres", "Díaz", "Gutiérrez", "Ruiz",
    "Mendoza", "Aguilar", "Ortiz", "Castillo", "Romero", "Chávez", "Rivera",
]

COHORT_SPAN_YEARS = 4
PROGRAM_RETIRED_AFTER = 3      # retired program only admits the first N cohorts
SUPERSEDED_QUOTA_RATE = 0.15   # chance of an extra inactive quota row per pair
IN_PROCESS_RATE = 0.12         # egressed students with an open graduation record


# ──────────────────────────────────────────────────────────────────────────────
# BUSINESS RULES (pure functions)
# ──────────────────────────────────────────────────────────────────────────────

def cohort_has_finished(cohort: Cohort, reference_year: int) -> bool:
    """A cohort can only have egressed students once its span has ended."""
    return cohort.end_year < reference_year


def sample_admitted_count(rng: Random, quota_total: int) -> int:
    """Students actually enrolled against a quota: 80-100% of the seats."""
    if quota_total <= 0:
        return 0
    return round(quota_total * rng.uniform(0.80, 1.00))


# ──────────────────────────────────────────────────────────────────────────────
# GENERATOR ENGINE
# ──────────────────────────────────────────────────────────────────────────────

class GraduationRecordGenerator:
    """
    Cohort-by-cohort record simulator with:
    - Program-specific quota growth and sex split
    - Quota-bounded student rosters
    - Egress and graduation outcomes relative to a fixed reference year
    - At most one graduation record per student
    """

    def __init__(
        self,
        num_cohorts: int = 6,
        start_year: int = 2016,
        reference_year: int = 2024,
        seed: int = 42,
    ):
        if num_cohorts < 1:
            raise ValueError(f"num_cohorts must be >= 1, got {num_cohorts}")
        if start_year < 2000 or start_year > 2100:
            raise ValueError(f"start_year must be 2000-2100, got {start_year}")
        if reference_year < start_year:
            raise ValueError(
                f"reference_year must be >= start_year ({start_year}), got {reference_year}"
            )

        self.rng = Random(seed)
        self.num_cohorts = num_cohorts
        self.start_year = start_year
        self.reference_year = reference_year
        self.seed = seed

        # Generated data
        self.programs: list[Program] = []
        self.cohorts: list[Cohort] = []
        self.quotas: list[AdmissionQuota] = []
        self.students: list[StudentRecord] = []
        self.graduations: list[GraduationRecord] = []

        self._generation_time_ms: float = 0

    # ── Public API ────────────────────────────────────────────────────────

    def generate(self) -> dict[str, Any]:
        """Run the full generation pipeline. Returns summary dict.

        Safe to call multiple times; the random stream restarts from the seed.
        """
        self.rng = Random(self.seed)
        self.quotas = []
        self.students = []
        self.graduations = []

        start = time.perf_counter()

        self.programs = self._build_programs()
        self.cohorts = self._build_cohorts()

        logger.info(
            "Built catalog: %d programs (%d active), %d cohorts",
            len(self.programs), sum(1 for p in self.programs if p.is_active), len(self.cohorts),
        )

        for idx, cohort in enumerate(self.cohorts):
            for program in self.programs:
                config = PROGRAM_CATALOG[program.name]
                if not config["active"] and idx >= PROGRAM_RETIRED_AFTER:
                    continue
                quota = self._build_quota(cohort, program, config, idx)
                students = self._build_students(cohort, program, config, quota)
                self.students.extend(students)
                self.graduations.extend(self._build_graduations(cohort, config, students))

            logger.info(
                "%s: %d quotas, %d students, %d graduation records so far",
                cohort.display_name, len(self.quotas), len(self.students), len(self.graduations),
            )

        self._generation_time_ms = (time.perf_counter() - start) * 1000
        return self.summary()

    def snapshot(self) -> RecordSnapshot:
        return RecordSnapshot(
            cohorts=self.cohorts,
            programs=self.programs,
            quotas=self.quotas,
            students=self.students,
            graduations=self.graduations,
        )

    def summary(self) -> dict[str, Any]:
        """Generation summary with per-cohort totals over active programs."""
        snapshot = self.snapshot()
        program_ids = [p.id for p in snapshot.active_programs()]
        grid = build_metrics_grid(snapshot, [c.id for c in self.cohorts], program_ids, SexFilter.GENERAL)
        total = grand_total(grid)

        by_cohort = []
        for cohort in self.cohorts:
            metrics = cohort_total(grid, cohort.id)
            by_cohort.append({
                "cohort": cohort.display_name,
                "finished": cohort_has_finished(cohort, self.reference_year),
                "admissions": metrics.admissions,
                "egresses": metrics.egresses,
                "graduates": metrics.graduates,
                "rate_by_admissions": calculate_percentage(metrics.graduates, metrics.admissions),
                "rate_by_egresses": calculate_percentage(metrics.graduates, metrics.egresses),
            })

        return {
            "seed": self.seed,
            "reference_year": self.reference_year,
            "generation_time_ms": round(self._generation_time_ms, 1),
            "total_programs": len(self.programs),
            "active_programs": len(program_ids),
            "total_cohorts": len(self.cohorts),
            "total_quotas": len(self.quotas),
            "inactive_quotas": sum(1 for q in self.quotas if not q.is_active),
            "total_students": len(self.students),
            "total_egressed": sum(1 for s in self.students if s.is_egressed),
            "total_graduation_records": len(self.graduations),
            "total_graduated": sum(1 for g in self.graduations if g.is_graduated),
            "admissions": total.admissions,
            "egresses": total.egresses,
            "graduates": total.graduates,
            "by_cohort": by_cohort,
        }

    # ── Builders ──────────────────────────────────────────────────────────

    def _build_programs(self) -> list[Program]:
        return [
            Program(
                id=str(idx),
                name=name,
                short_name=config["short_name"],
                is_active=config["active"],
                description=f"{name} ({config['short_name']})",
            )
            for idx, (name, config) in enumerate(PROGRAM_CATALOG.items(), start=1)
        ]

    def _build_cohorts(self) -> list[Cohort]:
        """Consecutive yearly cohorts, August intake to July four years later."""
        cohorts = []
        for i in range(self.num_cohorts):
            year = self.start_year + i
            end_year = year + COHORT_SPAN_YEARS
            cohort = Cohort(
                id=str(i + 1),
                name=f"{year}-{end_year}",
                start_date=date(year, 8, 1).isoformat(),
                end_date=date(end_year, 7, 31).isoformat(),
                description=f"Generación de ingreso agosto {year}",
            )
            cohort.is_active = not cohort_has_finished(cohort, self.reference_year)
            cohorts.append(cohort)
        return cohorts

    def _build_quota(
        self, cohort: Cohort, program: Program, config: ProgramConfig, idx: int,
    ) -> AdmissionQuota:
        """Active quota for the pair, plus an occasional superseded row."""
        seats = max(0, round(config["quota"] * (1 + config["growth"]) ** idx * self.rng.uniform(0.9, 1.1)))
        male = round(seats * min(1.0, max(0.0, self.rng.gauss(config["male_share"], 0.04))))

        if self.rng.random() < SUPERSEDED_QUOTA_RATE:
            draft = round(seats * self.rng.uniform(0.7, 0.9))
            self.quotas.append(AdmissionQuota(
                id=self._uuid(),
                cohort_id=cohort.id,
                program_id=program.id,
                male_quota=round(draft * config["male_share"]),
                female_quota=draft - round(draft * config["male_share"]),
                is_active=False,
                description="Cupo preliminar reemplazado",
            ))

        quota = AdmissionQuota(
            id=self._uuid(),
            cohort_id=cohort.id,
            program_id=program.id,
            male_quota=male,
            female_quota=seats - male,
            description=f"Cupo {program.short_name} {cohort.display_name}",
        )
        self.quotas.append(quota)
        return quota

    def _build_students(
        self, cohort: Cohort, program: Program, config: ProgramConfig, quota: AdmissionQuota,
    ) -> list[StudentRecord]:
        students = []
        finished = cohort_has_finished(cohort, self.reference_year)
        enrolled = sample_admitted_count(self.rng, quota.total)
        male_weight = quota.male_quota / quota.total if quota.total else 0.5

        for n in range(enrolled):
            sex = Sex.MALE if self.rng.random() < male_weight else Sex.FEMALE

            if finished:
                is_egressed = self.rng.random() < config["egress_rate"]
                if is_egressed:
                    status = StudentStatus.ACTIVE
                else:
                    status = self.rng.choices(
                        [StudentStatus.CANCELLED, StudentStatus.PAUSED], weights=[75, 25],
                    )[0]
            else:
                is_egressed = False
                status = self.rng.choices(
                    [StudentStatus.ACTIVE, StudentStatus.PAUSED, StudentStatus.CANCELLED],
                    weights=[82, 8, 10],
                )[0]

            students.append(StudentRecord(
                id=self._uuid(),
                cohort_id=cohort.id,
                program_id=program.id,
                sex=sex,
                is_egressed=is_egressed,
                status=status,
                control_number=f"{cohort.start_year % 100:02d}{int(program.id):02d}{n + 1:04d}",
                first_name=self.rng.choice(FIRST_NAMES[sex]),
                last_name=f"{self.rng.choice(LAST_NAMES)} {self.rng.choice(LAST_NAMES)}",
            ))
        return students

    def _build_graduations(
        self, cohort: Cohort, config: ProgramConfig, students: list[StudentRecord],
    ) -> list[GraduationRecord]:
        """One record per egressed student that started the graduation process."""
        records = []
        cohort_end = date.fromisoformat(cohort.end_date)
        latest = date(self.reference_year, 12, 31)

        for student in students:
            if not student.is_egressed:
                continue
            roll = self.rng.random()
            if roll < config["graduation_rate"]:
                graduated_on = cohort_end + timedelta(days=self.rng.randint(30, 540))
                records.append(GraduationRecord(
                    id=self._uuid(),
                    student_id=student.id,
                    is_graduated=True,
                    graduation_date=min(graduated_on, latest).isoformat(),
                ))
            elif roll < config["graduation_rate"] + IN_PROCESS_RATE:
                records.append(GraduationRecord(
                    id=self._uuid(),
                    student_id=student.id,
                    is_graduated=False,
                ))
        return records

    def _uuid(self) -> str:
        """Seeded UUID4 so identical seeds produce identical snapshots."""
        return str(uuid.UUID(int=self.rng.getrandbits(128), version=4))

    # ── Export ────────────────────────────────────────────────────────────

    def to_json(self, output_dir: str) -> dict[str, str]:
        """Export the snapshot JSON files plus a summary."""
        files = self.snapshot().to_json(output_dir)

        path = Path(output_dir) / "summary.json"
        path.write_text(json.dumps(self.summary(), indent=2, default=str, ensure_ascii=False), encoding="utf-8")
        files["summary"] = str(path)

        return files

    def to_supabase_sql(self, output_dir: str) -> str:
        """Generate Supabase INSERT statements in foreign-key order."""
        out = Path(output_dir)
        out.mkdir(parents=True, exist_ok=True)
        path = out / "seed_data.sql"

        lines = [
            "-- Supabase Seed Data",
            f"-- Generated: {datetime.now().isoformat()}",
            f"-- Seed: {self.seed} | Reference year: {self.reference_year}",
            f"-- Cohorts: {len(self.cohorts)} | Programs: {len(self.programs)} | "
            f"Students: {len(self.students)} | Graduations: {len(self.graduations)}",
            "",
        ]

        table_data: dict[str, list[dict]] = {
            "generations": [c.to_supabase_row() for c in self.cohorts],
            "careers": [p.to_supabase_row() for p in self.programs],
            "quotas": [q.to_supabase_row() for q in self.quotas],
            "students": [s.to_supabase_row() for s in self.students],
            "graduations": [g.to_supabase_row() for g in self.graduations],
        }

        for table_name, rows in table_data.items():
            if not rows:
                continue
            cols = list(rows[0].keys())
            lines.append(f"-- {table_name} ({len(rows)} records)")
            for row in rows:
                vals = [sql_literal(row[c]) for c in cols]
                lines.append(
                    f"INSERT INTO {table_name} ({', '.join(cols)}) "
                    f"VALUES ({', '.join(vals)});"
                )
            lines.append("")

        path.write_text("\n".join(lines), encoding="utf-8")
        return str(path)


def sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("'", "''")
    return f"'{escaped}'"


# ──────────────────────────────────────────────────────────────────────────────
# REPORT PRINTER
# ──────────────────────────────────────────────────────────────────────────────

def print_summary(gen: GraduationRecordGenerator):
    """Print generation summary to stdout."""
    summary = gen.summary()

    print(f"\n{'=' * 72}")
    print("  GRADUATION RECORDS: SYNTHETIC SNAPSHOT")
    print(f"{'=' * 72}")
    print(
        f"  Seed: {gen.seed} | Reference year: {gen.reference_year} | "
        f"Generated in {summary['generation_time_ms']:.0f}ms"
    )

    print(f"\n  Programs:     {summary['total_programs']:,} ({summary['active_programs']} active)")
    print(f"  Cohorts:      {summary['total_cohorts']:,}")
    print(f"  Quotas:       {summary['total_quotas']:,} ({summary['inactive_quotas']} inactive)")
    print(f"  Students:     {summary['total_students']:,}")
    print(f"  Egressed:     {summary['total_egressed']:,}")
    print(f"  Graduations:  {summary['total_graduation_records']:,} ({summary['total_graduated']:,} graduated)")

    print(f"\n{'─' * 72}")
    print("  COHORTS (active programs)")
    print(f"  {'Cohort':<12} {'Admissions':>11} {'Egresses':>9} {'Graduates':>10} "
          f"{'% Adm':>8} {'% Egr':>8} {'Done':>6}")
    print(f"  {'─' * 68}")

    for row in summary["by_cohort"]:
        print(
            f"  {row['cohort']:<12} {row['admissions']:>11,} {row['egresses']:>9,} "
            f"{row['graduates']:>10,} {row['rate_by_admissions']:>7.2f}% "
            f"{row['rate_by_egresses']:>7.2f}% {'yes' if row['finished'] else 'no':>6}"
        )

    print(f"\n{'=' * 72}\n")


# ──────────────────────────────────────────────────────────────────────────────
# CLI
# ──────────────────────────────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(
        description="Synthetic Graduation Record Generator",
    )
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument("--cohorts", type=int, default=6, help="Number of yearly cohorts")
    parser.add_argument("--start-year", type=int, default=2016, help="First cohort start year")
    parser.add_argument(
        "--reference-year", type=int, default=date.today().year,
        help="Year outcomes are simulated up to (defaults to the current year)",
    )
    parser.add_argument(
        "--output", choices=["report", "json", "supabase", "all"],
        default="report", help="Output format",
    )
    parser.add_argument("--output-dir", default="./output", help="Output directory")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )

    gen = GraduationRecordGenerator(
        num_cohorts=args.cohorts,
        start_year=args.start_year,
        reference_year=args.reference_year,
        seed=args.seed,
    )
    gen.generate()

    print_summary(gen)

    if args.output in ("json", "all"):
        files = gen.to_json(args.output_dir)
        print(f"  JSON -> {args.output_dir}/ ({len(files)} files)")

    if args.output in ("supabase", "all"):
        path = gen.to_supabase_sql(args.output_dir)
        print(f"  SQL  -> {path}")


if __name__ == "__main__":
    main()
