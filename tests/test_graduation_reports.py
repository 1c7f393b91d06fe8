"""Tests for the graduation rate reporting engine.

Covers the rate and aggregation rules, request normalization, scope
resolution, the three output shapes, error payloads and report export.
"""

from __future__ import annotations

import csv
import json
from datetime import datetime, timezone

import pytest

from graduation_reports import (
    AdmissionQuota,
    Cohort,
    Denominator,
    ErrorCode,
    GraduationRecord,
    Metrics,
    Program,
    RecordSnapshot,
    ReportRequest,
    ReportRequestError,
    ReportType,
    Sex,
    SexFilter,
    StudentRecord,
    StudentStatus,
    TableType,
    build_metrics_grid,
    calculate_percentage,
    cohort_labels,
    cohort_total,
    collation_key,
    compute_cell_metrics,
    filter_cohorts_by_year,
    generate_report,
    grand_total,
    handle_generate_report,
    print_report,
    program_labels,
    program_total,
    report_to_rows,
    resolve_scope,
    sum_metrics,
    unique_labels,
    write_report_csv,
    write_report_json,
)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

NOW = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)


def make_cell(cohort_id, program_id, quota=(0, 0), male=(0, 0, 0), female=(0, 0, 0)):
    """One (cohort, program) pair.

    quota is (male, female) seats; male/female are (enrolled, egressed, graduated).
    """
    quotas = [AdmissionQuota(
        id=f"q-{cohort_id}-{program_id}",
        cohort_id=cohort_id,
        program_id=program_id,
        male_quota=quota[0],
        female_quota=quota[1],
    )]
    students, graduations = [], []
    for sex, (enrolled, egressed, graduated) in ((Sex.MALE, male), (Sex.FEMALE, female)):
        for i in range(enrolled):
            sid = f"s-{cohort_id}-{program_id}-{sex.value[0]}{i}"
            students.append(StudentRecord(
                id=sid, cohort_id=cohort_id, program_id=program_id,
                sex=sex, is_egressed=i < egressed,
            ))
            if i < graduated:
                graduations.append(GraduationRecord(id=f"t-{sid}", student_id=sid, is_graduated=True))
    return quotas, students, graduations


def assemble(cohorts, programs, cells, quotas=(), graduations=()) -> RecordSnapshot:
    all_quotas, all_students, all_graduations = list(quotas), [], list(graduations)
    for q, s, g in cells:
        all_quotas.extend(q)
        all_students.extend(s)
        all_graduations.extend(g)
    return RecordSnapshot(
        cohorts=cohorts, programs=programs, quotas=all_quotas,
        students=all_students, graduations=all_graduations,
    )


@pytest.fixture
def snapshot() -> RecordSnapshot:
    # Cohorts deliberately out of chronological order; g2020 has no name
    cohorts = [
        Cohort(id="g2021", name="2021-2025", start_date="2021-08-01", end_date="2025-07-31"),
        Cohort(id="g2019", name="2019-2023", start_date="2019-08-01", end_date="2023-07-31"),
        Cohort(id="g2020", name=None, start_date="2020-08-01", end_date="2024-07-31"),
    ]
    programs = [
        Program(id="p1", name="Ingeniería Industrial", short_name="II"),
        Program(id="p2", name="Administración", short_name="LA"),
        Program(id="p3", name="Química", short_name="IQ", is_active=False),
    ]
    cells = [
        make_cell("g2019", "p1", (30, 20), male=(28, 20, 15), female=(18, 14, 12)),
        make_cell("g2019", "p2", (10, 15), male=(9, 6, 4), female=(14, 10, 9)),
        make_cell("g2020", "p1", (25, 30), male=(24, 10, 5), female=(27, 12, 8)),
        make_cell("g2020", "p2", (12, 12), male=(10, 0, 0), female=(11, 0, 0)),
        make_cell("g2021", "p1", (0, 0)),
        make_cell("g2021", "p2", (20, 20), male=(18, 0, 0), female=(19, 0, 0)),
        make_cell("g2019", "p3", (5, 5), male=(5, 3, 2), female=(5, 3, 3)),
    ]
    extra_quotas = [AdmissionQuota(
        id="q-old", cohort_id="g2019", program_id="p1",
        male_quota=99, female_quota=99, is_active=False,
    )]
    extra_graduations = [
        # Egressed but still in process
        GraduationRecord(id="t-open", student_id="s-g2019-p1-M19", is_graduated=False),
        # Graduated without an egress flag
        GraduationRecord(id="t-early", student_id="s-g2020-p2-M0", is_graduated=True,
                         graduation_date="2023-12-01"),
    ]
    return assemble(cohorts, programs, cells, extra_quotas, extra_graduations)


def payload(**overrides) -> dict:
    body = {
        "reportType": "por-generaciones",
        "graduationRateDenominator": "ingreso",
        "includeOtherValue": False,
        "dateRange": {"type": "general"},
        "careers": {"type": "general"},
    }
    body.update(overrides)
    return body


def run(snapshot, **overrides) -> dict:
    request = ReportRequest.from_payload(payload(**overrides))
    return generate_report(request, snapshot, now=NOW).to_dict()


def iter_lines(body: dict):
    """Every metric line in a response body."""
    data = body["data"]
    if body["tableType"] == "summary":
        yield data
        return
    if body["tableType"] == "grouped":
        for row in data.values():
            yield from row.values()
        yield from body["totalsByGeneration"].values()
        yield from body["totalsByCareer"].values()
    else:
        for row in data:
            yield {k: v for k, v in row.items() if k in ("ingreso", "egreso", "titulados", "porcentaje")}
    yield body["grandTotal"]


# ---------------------------------------------------------------------------
# Rate calculator
# ---------------------------------------------------------------------------

class TestCalculatePercentage:
    @pytest.mark.parametrize("graduates,denominator,expected", [
        (5, 0, 0),
        (0, 0, 0),
        (3, -1, 0),
        (0, 10, 0),
        (5, 20, 25.00),
        (1, 3, 33.33),
        (2, 3, 66.67),
        (7, 7, 100.0),
        (12, 10, 120.0),
    ])
    def test_boundaries(self, graduates, denominator, expected):
        assert calculate_percentage(graduates, denominator) == expected


# ---------------------------------------------------------------------------
# Enums and record models
# ---------------------------------------------------------------------------

class TestEnums:
    def test_denominator_other(self):
        assert Denominator.ADMISSIONS.other is Denominator.EGRESSES
        assert Denominator.EGRESSES.other is Denominator.ADMISSIONS

    @pytest.mark.parametrize("sex_filter,sex,expected", [
        (SexFilter.GENERAL, Sex.MALE, True),
        (SexFilter.GENERAL, Sex.FEMALE, True),
        (SexFilter.MALE, Sex.MALE, True),
        (SexFilter.MALE, Sex.FEMALE, False),
        (SexFilter.FEMALE, Sex.FEMALE, True),
        (SexFilter.FEMALE, Sex.MALE, False),
    ])
    def test_sex_filter_matches(self, sex_filter, sex, expected):
        assert sex_filter.matches(sex) is expected


class TestRecordModels:
    def test_cohort_years_from_dates(self):
        c = Cohort(id="g", start_date="2020-08-01", end_date="2024-07-31T00:00:00")
        assert c.start_year == 2020
        assert c.end_year == 2024

    def test_cohort_name_fallback(self):
        c = Cohort(id="g", start_date="2020-08-01", end_date="2024-07-31")
        assert c.display_name == "2020-2024"
        assert c.to_report_dict() == {
            "id": "g", "name": "2020-2024", "startYear": "2020", "endYear": "2024",
        }

    def test_program_report_dict(self):
        p = Program(id="p", name="Ingeniería Industrial", short_name="II")
        assert p.to_report_dict() == {"id": "p", "name": "Ingeniería Industrial", "shortName": "II"}

    def test_negative_quota_raises(self):
        with pytest.raises(ValueError, match="negative"):
            AdmissionQuota(id="q", cohort_id="g", program_id="p", male_quota=-1, female_quota=3)

    @pytest.mark.parametrize("sex,expected", [
        (SexFilter.GENERAL, 50),
        (SexFilter.MALE, 30),
        (SexFilter.FEMALE, 20),
    ])
    def test_quota_admissions_by_sex(self, sex, expected):
        q = AdmissionQuota(id="q", cohort_id="g", program_id="p", male_quota=30, female_quota=20)
        assert q.admissions(sex) == expected

    def test_student_coerces_wire_values(self):
        s = StudentRecord(id="s", cohort_id="g", program_id="p", sex="FEMENINO", status="PAUSADO")
        assert s.sex is Sex.FEMALE
        assert s.status is StudentStatus.PAUSED

    def test_student_unknown_sex_raises(self):
        with pytest.raises(ValueError):
            StudentRecord(id="s", cohort_id="g", program_id="p", sex="X")

    def test_quota_supabase_row_columns(self):
        q = AdmissionQuota(id="q", cohort_id="g", program_id="p", male_quota=3, female_quota=4)
        row = q.to_supabase_row()
        assert row["generation_id"] == "g"
        assert row["career_id"] == "p"
        assert row["new_admission_quotas_male"] == 3
        assert row["new_admission_quotas_female"] == 4
        assert AdmissionQuota.from_supabase_row(row) == q

    def test_student_supabase_row_uses_wire_values(self):
        s = StudentRecord(id="s", cohort_id="g", program_id="p", sex=Sex.MALE, is_egressed=True)
        row = s.to_supabase_row()
        assert row["sex"] == "MASCULINO"
        assert row["status"] == "ACTIVO"
        assert StudentRecord.from_supabase_row(row) == s


# ---------------------------------------------------------------------------
# Record snapshot
# ---------------------------------------------------------------------------

class TestRecordSnapshot:
    def test_duplicate_graduation_record_raises(self):
        with pytest.raises(ValueError, match="duplicate graduation record"):
            RecordSnapshot(graduations=[
                GraduationRecord(id="t1", student_id="s1", is_graduated=True),
                GraduationRecord(id="t2", student_id="s1", is_graduated=False),
            ])

    def test_inactive_quotas_not_indexed(self, snapshot):
        quotas = snapshot.active_quotas_for("g2019", "p1")
        assert [q.id for q in quotas] == ["q-g2019-p1"]

    def test_graduation_lookup(self, snapshot):
        assert snapshot.is_graduated("s-g2019-p1-M0") is True
        assert snapshot.is_graduated("s-g2019-p1-M19") is False
        assert snapshot.graduation_for("s-g2019-p1-M19").id == "t-open"
        assert snapshot.is_graduated("missing") is False

    def test_active_programs(self, snapshot):
        assert {p.id for p in snapshot.active_programs()} == {"p1", "p2"}

    def test_accessors_return_copies(self, snapshot):
        snapshot.students_for("g2019", "p1").clear()
        assert len(snapshot.students_for("g2019", "p1")) == 46

    def test_from_dict_ignores_unknown_columns(self):
        snap = RecordSnapshot.from_dict({
            "cohorts": [{"id": "g", "start_date": "2020-08-01", "end_date": "2024-07-31",
                         "created_at": "2020-01-01"}],
        })
        assert snap.cohorts[0].start_year == 2020
        assert snap.students == ()

    def test_from_dict_unknown_dataset_raises(self):
        with pytest.raises(ValueError, match="unknown datasets"):
            RecordSnapshot.from_dict({"enrollments": []})

    def test_json_roundtrip_gives_same_report(self, snapshot, tmp_path):
        files = snapshot.to_json(tmp_path)
        assert set(files) == set(RecordSnapshot.DATASETS)
        loaded = RecordSnapshot.load(tmp_path)
        assert len(loaded.students) == len(snapshot.students)
        request = ReportRequest.from_payload(payload(careers={"type": "specific", "selected": ["p1", "p2"]}))
        assert (
            generate_report(request, loaded, now=NOW).to_dict()
            == generate_report(request, snapshot, now=NOW).to_dict()
        )

    def test_load_rejects_non_list(self, snapshot, tmp_path):
        snapshot.to_json(tmp_path)
        (tmp_path / "quotas.json").write_text(json.dumps({"id": "q"}))
        with pytest.raises(ValueError, match="quotas.json"):
            RecordSnapshot.load(tmp_path)


# ---------------------------------------------------------------------------
# Request normalization
# ---------------------------------------------------------------------------

class TestReportRequest:
    def test_structured_general(self):
        req = ReportRequest.from_payload(payload())
        assert req.report_type is ReportType.BY_COHORT
        assert req.denominator is Denominator.ADMISSIONS
        assert req.sex is SexFilter.GENERAL
        assert req.is_general_date_range
        assert req.is_general_programs

    def test_structured_specific(self):
        req = ReportRequest.from_payload(payload(
            dateRange={"type": "specific", "startYear": 2019, "endYear": 2021},
            careers={"type": "specific", "selected": ["p1", "p2"]},
        ))
        assert (req.start_year, req.end_year) == (2019, 2021)
        assert req.program_ids == ("p1", "p2")
        assert not req.is_general_date_range
        assert not req.is_general_programs

    def test_legacy_encoding(self):
        body = payload(startYear=2019, endYear="2021", careerIds=[1, 2, 1])
        del body["dateRange"], body["careers"]
        req = ReportRequest.from_payload(body)
        assert (req.start_year, req.end_year) == (2019, 2021)
        assert req.program_ids == ("1", "2")

    def test_both_encodings_normalize_equal(self):
        legacy = payload(startYear=2020, careerIds=["p1"])
        del legacy["dateRange"], legacy["careers"]
        structured = payload(
            dateRange={"type": "specific", "startYear": 2020},
            careers={"type": "specific", "selected": ["p1"]},
        )
        assert ReportRequest.from_payload(legacy) == ReportRequest.from_payload(structured)

    def test_structured_general_discards_years(self):
        req = ReportRequest.from_payload(payload(
            dateRange={"type": "general", "startYear": 2019},
            startYear=2020,
        ))
        assert req.start_year is None
        assert req.is_general_date_range

    def test_general_careers_discards_selection(self):
        req = ReportRequest.from_payload(payload(
            careers={"type": "general", "selected": ["p1"]},
        ))
        assert req.program_ids == ()

    @pytest.mark.parametrize("overrides,code", [
        ({"reportType": "por-semestre"}, ErrorCode.REPORT_TYPE_NOT_SUPPORTED),
        ({"reportType": None}, ErrorCode.REPORT_TYPE_NOT_SUPPORTED),
        ({"graduationRateDenominator": "matricula"}, ErrorCode.INVALID_DENOMINATOR),
        ({"sex": "OTRO"}, ErrorCode.INVALID_SEX_FILTER),
        ({"dateRange": {"type": "specific", "startYear": "dos mil"}}, ErrorCode.INVALID_REQUEST),
        ({"dateRange": {"type": "specific", "startYear": True}}, ErrorCode.INVALID_REQUEST),
        ({"dateRange": {"type": "custom"}}, ErrorCode.INVALID_REQUEST),
        ({"careers": {"type": "specific", "selected": "p1"}}, ErrorCode.INVALID_REQUEST),
        ({"includeOtherValue": "false"}, ErrorCode.INVALID_REQUEST),
        ({"includeOtherValue": 1}, ErrorCode.INVALID_REQUEST),
    ])
    def test_invalid_requests(self, overrides, code):
        with pytest.raises(ReportRequestError) as exc_info:
            ReportRequest.from_payload(payload(**overrides))
        assert exc_info.value.code is code

    @pytest.mark.parametrize("raw,expected", [(None, False), (True, True), (False, False)])
    def test_include_other_value_flag(self, raw, expected):
        body = payload()
        body["includeOtherValue"] = raw
        assert ReportRequest.from_payload(body).include_other_value is expected

    def test_include_other_value_defaults_false(self):
        body = payload()
        del body["includeOtherValue"]
        assert ReportRequest.from_payload(body).include_other_value is False

    def test_non_object_body(self):
        with pytest.raises(ReportRequestError) as exc_info:
            ReportRequest.from_payload(["por-generaciones"])
        assert exc_info.value.code is ErrorCode.INVALID_REQUEST

    def test_error_is_value_error_with_payload(self):
        err = ReportRequestError("No programs found for the report", ErrorCode.NO_CAREERS_FOUND)
        assert isinstance(err, ValueError)
        assert err.to_dict() == {"error": "No programs found for the report", "code": "NO_CAREERS_FOUND"}


# ---------------------------------------------------------------------------
# Scope resolver
# ---------------------------------------------------------------------------

class TestResolveScope:
    def test_general_scope_sorted(self, snapshot):
        scope = resolve_scope(ReportRequest.from_payload(payload()), snapshot)
        assert scope.cohort_ids == ("g2019", "g2020", "g2021")
        # Active programs only, ordered by name
        assert scope.program_ids == ("p2", "p1")

    @pytest.mark.parametrize("start,end,expected", [
        (2020, 2020, ["g2020"]),
        (2020, None, ["g2021", "g2020"]),
        (None, 2019, ["g2019"]),
        (2018, 2030, ["g2021", "g2019", "g2020"]),
    ])
    def test_filter_cohorts_by_year(self, snapshot, start, end, expected):
        assert [c.id for c in filter_cohorts_by_year(snapshot.cohorts, start, end)] == expected

    def test_no_cohorts_in_range(self, snapshot):
        request = ReportRequest.from_payload(payload(
            dateRange={"type": "specific", "startYear": 2030, "endYear": 2031},
        ))
        with pytest.raises(ReportRequestError) as exc_info:
            resolve_scope(request, snapshot)
        assert exc_info.value.code is ErrorCode.NO_GENERATIONS_FOUND

    def test_no_matching_programs(self, snapshot):
        request = ReportRequest.from_payload(payload(careers={"type": "specific", "selected": ["nope"]}))
        with pytest.raises(ReportRequestError) as exc_info:
            resolve_scope(request, snapshot)
        assert exc_info.value.code is ErrorCode.NO_CAREERS_FOUND

    @pytest.mark.parametrize("name,key", [
        ("Álgebra Aplicada", "algebra aplicada"),
        ("arquitectura", "arquitectura"),
        ("Biología", "biologia"),
        ("Ñandutí", "nanduti"),
    ])
    def test_collation_key(self, name, key):
        assert collation_key(name) == key

    def test_programs_ordered_ignoring_accents_and_case(self):
        cohorts = [Cohort(id="g1", start_date="2019-08-01", end_date="2023-07-31")]
        programs = [
            Program(id="b", name="Biología", short_name="BIO"),
            Program(id="a", name="Álgebra Aplicada", short_name="ALG"),
            Program(id="c", name="arquitectura", short_name="ARQ"),
            Program(id="z", name="Zootecnia", short_name="ZOO"),
        ]
        snapshot = assemble(cohorts, programs, [make_cell("g1", p.id, (5, 5)) for p in programs])
        body = payload(reportType="por-carreras", dateRange={"type": "specific", "startYear": 2019})
        scope = resolve_scope(ReportRequest.from_payload(body), snapshot)
        assert scope.program_ids == ("a", "c", "b", "z")
        rows = run(snapshot, **body)["data"]
        assert [row["careerId"] for row in rows] == ["a", "c", "b", "z"]

    def test_explicit_selection_includes_inactive_program(self, snapshot):
        request = ReportRequest.from_payload(payload(careers={"type": "specific", "selected": ["p3", "zz"]}))
        scope = resolve_scope(request, snapshot)
        assert scope.program_ids == ("p3",)

    @pytest.mark.parametrize("report_type,dates_general,programs_general,expected", [
        (ReportType.BY_COHORT, True, True, TableType.SUMMARY),
        (ReportType.BY_PROGRAM, True, True, TableType.SUMMARY),
        (ReportType.BY_COHORT, False, True, TableType.TABLE),
        (ReportType.BY_COHORT, True, False, TableType.GROUPED),
        (ReportType.BY_COHORT, False, False, TableType.GROUPED),
        (ReportType.BY_PROGRAM, False, True, TableType.TABLE),
        (ReportType.BY_PROGRAM, True, False, TableType.TABLE),
        (ReportType.BY_PROGRAM, False, False, TableType.TABLE),
    ])
    def test_table_type_selection(self, snapshot, report_type, dates_general, programs_general, expected):
        body = payload(reportType=report_type.value)
        if not dates_general:
            body["dateRange"] = {"type": "specific", "startYear": 2019, "endYear": 2021}
        if not programs_general:
            body["careers"] = {"type": "specific", "selected": ["p1"]}
        scope = resolve_scope(ReportRequest.from_payload(body), snapshot)
        assert scope.table_type(report_type) is expected


# ---------------------------------------------------------------------------
# Metric calculator and aggregator
# ---------------------------------------------------------------------------

class TestComputeCellMetrics:
    def test_general_excludes_inactive_quota(self, snapshot):
        assert compute_cell_metrics(snapshot, "g2019", "p1") == Metrics(50, 34, 27)

    @pytest.mark.parametrize("sex,expected", [
        (SexFilter.MALE, Metrics(30, 20, 15)),
        (SexFilter.FEMALE, Metrics(20, 14, 12)),
    ])
    def test_sex_filter(self, snapshot, sex, expected):
        assert compute_cell_metrics(snapshot, "g2019", "p1", sex) == expected

    def test_graduate_need_not_be_egressed(self, snapshot):
        assert compute_cell_metrics(snapshot, "g2020", "p2") == Metrics(24, 0, 1)

    def test_empty_pair_is_zero(self, snapshot):
        assert compute_cell_metrics(snapshot, "g2021", "p1") == Metrics()
        assert compute_cell_metrics(snapshot, "g2021", "p3") == Metrics()

    def test_sex_partition(self, snapshot):
        for cohort in snapshot.cohorts:
            for program in snapshot.programs:
                general = compute_cell_metrics(snapshot, cohort.id, program.id, SexFilter.GENERAL)
                male = compute_cell_metrics(snapshot, cohort.id, program.id, SexFilter.MALE)
                female = compute_cell_metrics(snapshot, cohort.id, program.id, SexFilter.FEMALE)
                assert general == male + female


class TestAggregation:
    def test_metrics_add(self):
        assert Metrics(1, 2, 3) + Metrics(10, 20, 30) == Metrics(11, 22, 33)

    def test_sum_of_nothing_is_zero(self):
        assert sum_metrics([]) == Metrics()

    def test_value_for(self):
        m = Metrics(admissions=40, egresses=25, graduates=10)
        assert m.value_for(Denominator.ADMISSIONS) == 40
        assert m.value_for(Denominator.EGRESSES) == 25

    def test_all_grouping_paths_agree(self, snapshot):
        cohort_ids = [c.id for c in snapshot.cohorts]
        program_ids = [p.id for p in snapshot.programs]
        grid = build_metrics_grid(snapshot, cohort_ids, program_ids)
        total = grand_total(grid)
        assert sum_metrics(cohort_total(grid, c) for c in cohort_ids) == total
        assert sum_metrics(program_total(grid, p) for p in program_ids) == total
        assert total == Metrics(204, 78, 59)

    def test_totals(self, snapshot):
        grid = build_metrics_grid(snapshot, ["g2019", "g2020"], ["p1", "p2"])
        assert cohort_total(grid, "g2019") == Metrics(75, 50, 40)
        assert program_total(grid, "p2") == Metrics(49, 16, 14)


# ---------------------------------------------------------------------------
# Response shaper
# ---------------------------------------------------------------------------

class TestSummaryReport:
    def test_summary_shape(self, snapshot):
        body = run(snapshot)
        assert body["type"] == "por-generaciones"
        assert body["tableType"] == "summary"
        assert set(body["data"]) == {"ingreso", "titulados", "porcentaje"}
        assert body["data"] == {"ingreso": 194, "titulados": 54, "porcentaje": 27.84}
        assert "grandTotal" not in body

    def test_summary_by_egress_with_other_value(self, snapshot):
        body = run(snapshot, graduationRateDenominator="egreso", includeOtherValue=True)
        assert body["data"] == {"egreso": 72, "ingreso": 194, "titulados": 54, "porcentaje": 75.0}

    def test_summary_same_for_both_report_types(self, snapshot):
        assert run(snapshot)["data"] == run(snapshot, reportType="por-carreras")["data"]

    @pytest.mark.parametrize("sex,expected", [
        ("MASCULINO", {"ingreso": 97, "titulados": 25, "porcentaje": 25.77}),
        ("FEMENINO", {"ingreso": 97, "titulados": 29, "porcentaje": 29.9}),
    ])
    def test_summary_sex_filter(self, snapshot, sex, expected):
        body = run(snapshot, sex=sex)
        assert body["data"] == expected
        assert body["metadata"]["sex"] == sex


class TestCohortTableReport:
    def test_rates_per_cohort(self):
        cohorts = [
            Cohort(id="c1", start_date="2018-08-01", end_date="2022-07-31"),
            Cohort(id="c2", start_date="2019-08-01", end_date="2023-07-31"),
            Cohort(id="c3", start_date="2020-08-01", end_date="2024-07-31"),
        ]
        programs = [Program(id="p", name="Ingeniería Industrial", short_name="II")]
        snap = assemble(cohorts, programs, [
            make_cell("c1", "p", (25, 25), male=(10, 10, 10)),
            make_cell("c2", "p", (30, 25), male=(11, 11, 11)),
            make_cell("c3", "p", (0, 0)),
        ])
        body = run(snap, dateRange={"type": "specific", "startYear": 2018, "endYear": 2020})
        assert body["tableType"] == "table"
        assert [row["porcentaje"] for row in body["data"]] == [20.0, 20.0, 0]
        assert body["grandTotal"] == {"ingreso": 105, "titulados": 21, "porcentaje": 20.0}

    def test_rows_carry_generation(self, snapshot):
        body = run(snapshot, dateRange={"type": "specific", "startYear": 2019, "endYear": 2021})
        assert [row["generationId"] for row in body["data"]] == ["g2019", "g2020", "g2021"]
        assert body["data"][1]["generation"] == {
            "id": "g2020", "name": "2020-2024", "startYear": "2020", "endYear": "2024",
        }
        assert [row["porcentaje"] for row in body["data"]] == [53.33, 17.72, 0]
        assert body["grandTotal"] == {"ingreso": 194, "titulados": 54, "porcentaje": 27.84}


class TestProgramTableReport:
    def test_general_dates_sum_all_cohorts(self, snapshot):
        body = run(snapshot, reportType="por-carreras", careers={"type": "specific", "selected": ["p1", "p2"]})
        assert body["tableType"] == "table"
        assert [row["careerId"] for row in body["data"]] == ["p2", "p1"]
        p1 = body["data"][1]
        assert p1["career"] == {"id": "p1", "name": "Ingeniería Industrial", "shortName": "II"}
        assert p1["ingreso"] == 105
        assert p1["titulados"] == 40
        assert p1["porcentaje"] == 38.1
        assert p1["valuesByGeneration"] == {}
        assert body["generations"] == []

    def test_specific_dates_fill_trend(self, snapshot):
        body = run(
            snapshot, reportType="por-carreras",
            dateRange={"type": "specific", "startYear": 2019, "endYear": 2020},
        )
        p1 = next(row for row in body["data"] if row["careerId"] == "p1")
        assert p1["valuesByGeneration"] == {"g2019": 27, "g2020": 13}
        assert [g["name"] for g in body["generations"]] == ["2019-2023", "2020-2024"]
        assert body["grandTotal"]["ingreso"] == 154


class TestGroupedReport:
    @pytest.fixture
    def body(self, snapshot) -> dict:
        return run(
            snapshot, includeOtherValue=True,
            dateRange={"type": "specific", "startYear": 2019, "endYear": 2020},
            careers={"type": "specific", "selected": ["p1", "p2"]},
        )

    def test_matrix_shape(self, body):
        assert body["tableType"] == "grouped"
        assert set(body["data"]) == {"g2019", "g2020"}
        for row in body["data"].values():
            assert set(row) == {"p1", "p2", "totales"}
        assert set(body["totalsByCareer"]) == {"p1", "p2"}
        assert set(body["totalsByGeneration"]) == {"g2019", "g2020"}
        assert [c["id"] for c in body["careers"]] == ["p2", "p1"]

    def test_cell_and_totals(self, body):
        assert body["data"]["g2019"]["p1"] == {"ingreso": 50, "egreso": 34, "titulados": 27, "porcentaje": 54.0}
        assert body["data"]["g2019"]["totales"] == body["totalsByGeneration"]["g2019"]
        assert body["totalsByCareer"]["p2"] == {"ingreso": 49, "egreso": 16, "titulados": 14, "porcentaje": 28.57}

    def test_grand_total_includes_other_value(self, body):
        assert body["grandTotal"] == {"ingreso": 154, "egreso": 72, "titulados": 54, "porcentaje": 35.06}

    def test_result_mappings_are_read_only(self, snapshot):
        request = ReportRequest.from_payload(payload(careers={"type": "specific", "selected": ["p1"]}))
        report = generate_report(request, snapshot, now=NOW)
        with pytest.raises(TypeError):
            report.cells[("g2019", "p1")] = report.grand_total
        with pytest.raises(TypeError):
            report.cohort_totals["g2019"] = report.grand_total
        with pytest.raises(TypeError):
            report.program_totals["p1"] = report.grand_total

        trend = generate_report(ReportRequest.from_payload(payload(
            reportType="por-carreras", dateRange={"type": "specific", "startYear": 2019},
        )), snapshot, now=NOW)
        with pytest.raises(TypeError):
            trend.rows[0].graduates_by_cohort["g2019"] = 0

    def test_totals_agree(self, body):
        for key in ("ingreso", "egreso", "titulados"):
            by_generation = sum(line[key] for line in body["totalsByGeneration"].values())
            by_career = sum(line[key] for line in body["totalsByCareer"].values())
            assert by_generation == by_career == body["grandTotal"][key]


class TestFieldPresence:
    @pytest.mark.parametrize("denominator", ["ingreso", "egreso"])
    @pytest.mark.parametrize("include_other", [True, False])
    @pytest.mark.parametrize("shape", [
        {},
        {"dateRange": {"type": "specific", "startYear": 2019, "endYear": 2021}},
        {"reportType": "por-carreras", "careers": {"type": "specific", "selected": ["p1", "p2"]}},
        {"careers": {"type": "specific", "selected": ["p1", "p2"]}},
    ])
    def test_keys_follow_denominator(self, snapshot, denominator, include_other, shape):
        body = run(snapshot, graduationRateDenominator=denominator, includeOtherValue=include_other, **shape)
        other = "egreso" if denominator == "ingreso" else "ingreso"
        expected = {denominator, "titulados", "porcentaje"} | ({other} if include_other else set())
        for line in iter_lines(body):
            assert set(line) == expected


class TestMetadataAndErrors:
    def test_metadata_general(self, snapshot):
        meta = run(snapshot)["metadata"]
        assert meta == {
            "dateRange": "general",
            "careers": "general",
            "graduationRateDenominator": "ingreso",
            "includeOtherValue": False,
            "sex": "general",
            "generatedAt": "2024-01-15T10:00:00.000Z",
        }

    def test_metadata_specific(self, snapshot):
        meta = run(
            snapshot,
            dateRange={"type": "specific", "startYear": 2019},
            careers={"type": "specific", "selected": ["p1"]},
        )["metadata"]
        assert meta["dateRange"] == "specific"
        assert meta["startYear"] == 2019
        assert "endYear" not in meta
        assert meta["careerIds"] == ["p1"]

    def test_repeat_calls_identical(self, snapshot):
        assert run(snapshot, reportType="por-carreras") == run(snapshot, reportType="por-carreras")

    def test_no_programs_found(self, snapshot):
        status, body = handle_generate_report(
            payload(careers={"type": "specific", "selected": ["nope"]}), snapshot, now=NOW,
        )
        assert status == 400
        assert body["code"] == "NO_CAREERS_FOUND"
        assert set(body) == {"error", "code"}

    def test_no_generations_found(self, snapshot):
        status, body = handle_generate_report(
            payload(reportType="por-carreras", dateRange={"type": "specific", "startYear": 2040}),
            snapshot,
        )
        assert status == 400
        assert body["code"] == "NO_GENERATIONS_FOUND"

    def test_unsupported_report_type(self, snapshot):
        status, body = handle_generate_report(payload(reportType="por-semestre"), snapshot)
        assert status == 400
        assert body["code"] == "REPORT_TYPE_NOT_SUPPORTED"

    def test_success(self, snapshot):
        status, body = handle_generate_report(payload(), snapshot, now=NOW)
        assert status == 200
        assert body["tableType"] == "summary"


# ---------------------------------------------------------------------------
# Export and printer
# ---------------------------------------------------------------------------

class TestExport:
    def _report(self, snapshot, **overrides):
        return generate_report(ReportRequest.from_payload(payload(**overrides)), snapshot, now=NOW)

    def test_summary_rows(self, snapshot):
        rows = report_to_rows(self._report(snapshot))
        assert rows == [{"": "TOTAL", "TOTAL INGRESOS": 194, "TOTAL TITULADOS": 54, "%": "27.84%"}]

    def test_other_value_column_precedes_denominator(self, snapshot):
        rows = report_to_rows(self._report(snapshot, includeOtherValue=True))
        assert list(rows[0]) == ["", "TOTAL EGRESADOS", "TOTAL INGRESOS", "TOTAL TITULADOS", "%"]

    def test_cohort_table_rows_end_with_total(self, snapshot):
        rows = report_to_rows(self._report(
            snapshot, dateRange={"type": "specific", "startYear": 2019, "endYear": 2021},
        ))
        assert [r["Generación"] for r in rows] == ["2019-2023", "2020-2024", "2021-2025", "TOTAL"]
        assert rows[-1]["TOTAL INGRESOS"] == 194

    def test_program_trend_columns(self, snapshot):
        rows = report_to_rows(self._report(
            snapshot, reportType="por-carreras",
            dateRange={"type": "specific", "startYear": 2019, "endYear": 2020},
        ))
        assert rows[-1]["Carrera"] == "TOTAL"
        assert rows[-1]["2019-2023"] == 40
        assert rows[-1]["2020-2024"] == 14

    def test_grouped_columns(self, snapshot):
        rows = report_to_rows(self._report(snapshot, careers={"type": "specific", "selected": ["p1"]}))
        assert "II TITULADOS" in rows[0]
        assert "II %" in rows[0]
        assert rows[-1]["Generación"] == "TOTAL"
        assert rows[-1]["II TITULADOS"] == rows[-1]["TOTAL TITULADOS"] == 40

    @pytest.mark.parametrize("entries,expected", [
        ([("p1", "II", "Industrial"), ("p2", "LA", "Administración")], {"p1": "II", "p2": "LA"}),
        ([("p1", "", "Física"), ("p2", "", "Matemáticas")], {"p1": "Física", "p2": "Matemáticas"}),
        ([("p1", "IS", "Sistemas"), ("p2", "IS", "Software")], {"p1": "Sistemas", "p2": "Software"}),
        ([("p1", "IS", "Sistemas"), ("p2", "IS", "Sistemas")], {"p1": "Sistemas (p1)", "p2": "Sistemas (p2)"}),
        ([("p1", "", "")], {"p1": "(p1)"}),
    ])
    def test_unique_labels(self, entries, expected):
        assert unique_labels(entries) == expected

    def test_label_helpers(self):
        programs = [Program(id="p1", name="Física", short_name=""), Program(id="p2", name="Química", short_name="IQ")]
        assert program_labels(programs) == {"p1": "Física", "p2": "IQ"}
        cohorts = [
            Cohort(id="g1", name="Generación A", start_date="2019-08-01", end_date="2023-07-31"),
            Cohort(id="g2", name="Generación A", start_date="2020-08-01", end_date="2024-07-31"),
        ]
        assert cohort_labels(cohorts) == {"g1": "2019-2023", "g2": "2020-2024"}

    def test_grouped_columns_with_shared_short_name(self):
        cohorts = [Cohort(id="g1", name="2019-2023", start_date="2019-08-01", end_date="2023-07-31")]
        programs = [
            Program(id="p1", name="Física", short_name=""),
            Program(id="p2", name="Matemáticas", short_name=""),
        ]
        snapshot = assemble(cohorts, programs, [
            make_cell("g1", "p1", (10, 10), male=(8, 4, 2)),
            make_cell("g1", "p2", (5, 5), female=(6, 3, 3)),
        ])
        rows = report_to_rows(self._report(snapshot, careers={"type": "specific", "selected": ["p1", "p2"]}))
        assert sum(1 for col in rows[0] if col.endswith(" INGRESOS") and not col.startswith("TOTAL")) == 2
        assert (rows[0]["Física INGRESOS"], rows[0]["Física TITULADOS"]) == (20, 2)
        assert (rows[0]["Matemáticas INGRESOS"], rows[0]["Matemáticas TITULADOS"]) == (10, 3)
        assert rows[-1]["TOTAL TITULADOS"] == 5

    def test_program_trend_columns_with_shared_cohort_name(self):
        cohorts = [
            Cohort(id="g1", name="Generación A", start_date="2019-08-01", end_date="2023-07-31"),
            Cohort(id="g2", name="Generación A", start_date="2020-08-01", end_date="2024-07-31"),
        ]
        programs = [Program(id="p1", name="Física", short_name="FIS")]
        snapshot = assemble(cohorts, programs, [
            make_cell("g1", "p1", (10, 10), male=(8, 4, 2)),
            make_cell("g2", "p1", (10, 10), male=(8, 4, 1)),
        ])
        rows = report_to_rows(self._report(
            snapshot, reportType="por-carreras",
            dateRange={"type": "specific", "startYear": 2019, "endYear": 2020},
        ))
        assert (rows[0]["2019-2023"], rows[0]["2020-2024"]) == (2, 1)

    def test_write_csv(self, snapshot, tmp_path):
        path = write_report_csv(
            self._report(snapshot, dateRange={"type": "specific", "startYear": 2019}),
            tmp_path / "out" / "report.csv",
        )
        with open(path, newline="", encoding="utf-8") as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == 4
        assert rows[-1]["Generación"] == "TOTAL"
        assert rows[-1]["%"] == "27.84%"

    def test_write_json(self, snapshot, tmp_path):
        report = self._report(snapshot)
        path = write_report_json(report, tmp_path / "report.json")
        assert json.loads((tmp_path / "report.json").read_text(encoding="utf-8")) == report.to_dict()
        assert path.endswith("report.json")

    def test_print_report(self, snapshot, capsys):
        print_report(self._report(snapshot, careers={"type": "specific", "selected": ["p1", "p2"]}))
        out = capsys.readouterr().out
        assert "GRADUATION REPORT" in out
        assert "grouped" in out
        assert "TOTAL" in out
        assert "2020-2024" in out
