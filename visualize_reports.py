#!/usr/bin/env python3
"""
Graduation Report Visualization
=========================================================
Generates charts from a report exported by graduation_reports.py.

Usage:
    python visualize_reports.py --report ./output/reports/report_por-carreras_table.json
    python visualize_reports.py --report report.json --output-dir ./charts

Author: Wington Brito
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import matplotlib
matplotlib.use("Agg")  # headless rendering
import matplotlib.pyplot as plt
import matplotlib.ticker as mticker
import pandas as pd

from graduation_reports import TOTALS_KEY, unique_labels


# ── Theme ─────────────────────────────────────────────────────────────────

THEME_COLORS = {
    "primary": "#1B3A5C",      # dark navy
    "secondary": "#2E86AB",    # bright blue
    "accent": "#F18F01",       # orange
    "success": "#2CA58D",      # teal/green
    "danger": "#C1292E",       # red
    "warning": "#F4D35E",      # yellow
    "light": "#E8EEF2",        # light gray-blue
    "text": "#2C3E50",         # dark text
}

SERIES_COLORS = [
    THEME_COLORS["secondary"],
    THEME_COLORS["accent"],
    THEME_COLORS["success"],
    THEME_COLORS["danger"],
    "#8E44AD",
    "#34495E",
    THEME_COLORS["warning"],
]

METRIC_LABELS = {
    "ingreso": "Admissions",
    "egreso": "Egresses",
    "titulados": "Graduates",
    "porcentaje": "Graduation Rate %",
}


def apply_theme():
    """Apply theme styling to matplotlib."""
    plt.rcParams.update({
        "font.family": "sans-serif",
        "font.sans-serif": ["Helvetica Neue", "Arial", "DejaVu Sans"],
        "font.size": 11,
        "axes.titlesize": 14,
        "axes.titleweight": "bold",
        "axes.labelsize": 12,
        "axes.facecolor": "#FAFBFC",
        "axes.edgecolor": "#DEE2E6",
        "axes.grid": True,
        "grid.alpha": 0.3,
        "grid.color": "#CED4DA",
        "figure.facecolor": "white",
        "figure.dpi": 150,
        "savefig.dpi": 200,
        "savefig.bbox": "tight",
        "savefig.pad_inches": 0.3,
    })


# ── Frames ────────────────────────────────────────────────────────────────

def _cohort_labels(report: dict) -> dict[str, str]:
    return unique_labels(
        (g["id"], g["name"], f"{g['startYear']}-{g['endYear']}") for g in report.get("generations", [])
    )


def _program_labels(careers) -> dict[str, str]:
    return unique_labels((c["id"], c["shortName"], c["name"]) for c in careers)


def report_frame(report: dict) -> pd.DataFrame:
    """
    One row per report line: label, the denominator value(s), graduates and
    percentage. Grouped reports contribute their per-cohort totals.
    """
    table_type = report["tableType"]
    data = report["data"]

    if table_type == "summary":
        records = [{"label": "TOTAL", **data}]
    elif table_type == "grouped":
        names = _cohort_labels(report)
        records = [
            {"label": names[gen_id], **line}
            for gen_id, line in report["totalsByGeneration"].items()
        ]
    elif report["type"] == "por-carreras":
        names = _program_labels(row["career"] for row in data)
        records = [{"label": names[row["careerId"]], **_metric_fields(row)} for row in data]
    else:
        names = unique_labels(
            (row["generationId"], row["generation"]["name"],
             f"{row['generation']['startYear']}-{row['generation']['endYear']}")
            for row in data
        )
        records = [{"label": names[row["generationId"]], **_metric_fields(row)} for row in data]

    df = pd.DataFrame.from_records(records)
    if df.empty:
        return pd.DataFrame(columns=["label", "titulados", "porcentaje"])
    return df.set_index("label")


def _metric_fields(row: dict) -> dict:
    return {k: row[k] for k in METRIC_LABELS if k in row}


def graduate_trend_frame(report: dict) -> pd.DataFrame:
    """Graduates per cohort (index) and program (columns) for the trend view."""
    names = _cohort_labels(report)
    programs = _program_labels(row["career"] for row in report["data"])
    series = {
        programs[row["careerId"]]: {
            names[gen_id]: count for gen_id, count in row["valuesByGeneration"].items()
        }
        for row in report["data"]
    }
    return pd.DataFrame(series).reindex([names[g["id"]] for g in report["generations"]]).fillna(0)


def grouped_rate_frame(report: dict) -> pd.DataFrame:
    """Percentage per cohort (index) and program (columns)."""
    if not report["data"]:
        return pd.DataFrame()
    gen_names = _cohort_labels(report)
    career_names = _program_labels(report["careers"])
    matrix = {
        gen_names[gen_id]: {
            career_names[career_id]: line["porcentaje"]
            for career_id, line in row.items() if career_id != TOTALS_KEY
        }
        for gen_id, row in report["data"].items()
    }
    return pd.DataFrame.from_dict(matrix, orient="index")[list(career_names.values())]


# ── Chart Builders ────────────────────────────────────────────────────────

def chart_rate_by_row(report: dict, output_dir: Path):
    """Graduation rate per table row (or the single summary bar)."""
    df = report_frame(report)
    if df.empty:
        return None

    denominator = report["metadata"]["graduationRateDenominator"]
    fig, ax = plt.subplots(figsize=(max(6, 1.1 * len(df) + 3), 6))

    bars = ax.bar(
        range(len(df)), df["porcentaje"],
        color=THEME_COLORS["secondary"], alpha=0.85,
        edgecolor="white", linewidth=0.5,
    )
    ax.set_xticks(range(len(df)))
    ax.set_xticklabels(df.index, rotation=30, ha="right")
    ax.set_ylabel(f"Graduates / {METRIC_LABELS[denominator]} (%)")
    ax.set_ylim(0, max(100.0, float(df["porcentaje"].max()) * 1.1))
    ax.yaxis.set_major_formatter(mticker.FuncFormatter(lambda x, _: f"{x:.0f}%"))

    for bar, (_, row) in zip(bars, df.iterrows()):
        ax.text(
            bar.get_x() + bar.get_width() / 2, bar.get_height() + 1,
            f"{row['porcentaje']:.2f}%\n({int(row['titulados'])}/{int(row[denominator])})",
            ha="center", va="bottom", fontsize=8, fontweight="bold", color=THEME_COLORS["text"],
        )

    fig.suptitle(
        f"Graduation Rate ({report['type']}, {report['tableType']})",
        fontsize=16, fontweight="bold", color=THEME_COLORS["primary"], y=1.02,
    )

    path = output_dir / "graduation_rate.png"
    fig.savefig(path)
    plt.close(fig)
    return path


def chart_graduate_trend(report: dict, output_dir: Path):
    """Per-program graduate counts across cohorts (by-program, specific range)."""
    if report["type"] != "por-carreras" or not report.get("generations"):
        return None
    df = graduate_trend_frame(report)
    if df.empty:
        return None

    fig, ax = plt.subplots(figsize=(12, 6))
    for i, program in enumerate(df.columns):
        ax.plot(
            range(len(df)), df[program],
            color=SERIES_COLORS[i % len(SERIES_COLORS)], marker="o",
            linewidth=2.2, markersize=7, label=program,
        )

    ax.set_xticks(range(len(df)))
    ax.set_xticklabels(df.index, rotation=30, ha="right")
    ax.set_xlabel("Cohort")
    ax.set_ylabel("Graduates")
    ax.yaxis.set_major_formatter(mticker.FuncFormatter(lambda x, _: f"{int(x):,}"))
    ax.legend(title="Program", bbox_to_anchor=(1.02, 1), loc="upper left", fontsize=9)

    fig.suptitle(
        "Graduates by Cohort and Program",
        fontsize=16, fontweight="bold", color=THEME_COLORS["primary"], y=1.02,
    )

    path = output_dir / "graduate_trend.png"
    fig.savefig(path)
    plt.close(fig)
    return path


def chart_grouped_heatmap(report: dict, output_dir: Path):
    """Cohort x program graduation rate heatmap (grouped reports only)."""
    if report["tableType"] != "grouped":
        return None
    df = grouped_rate_frame(report)
    if df.empty:
        return None

    fig, ax = plt.subplots(figsize=(max(6, 1.4 * len(df.columns) + 3), max(4, 0.6 * len(df) + 2)))
    image = ax.imshow(df.values, cmap="Blues", vmin=0, vmax=100, aspect="auto")
    ax.grid(False)

    ax.set_xticks(range(len(df.columns)))
    ax.set_xticklabels(df.columns)
    ax.set_yticks(range(len(df)))
    ax.set_yticklabels(df.index)
    ax.set_xlabel("Program")
    ax.set_ylabel("Cohort")

    for y in range(len(df)):
        for x in range(len(df.columns)):
            value = df.iat[y, x]
            ax.text(
                x, y, f"{value:.1f}%", ha="center", va="center", fontsize=9,
                color="white" if value > 60 else THEME_COLORS["text"],
            )

    fig.colorbar(image, ax=ax, label="Graduation Rate %")
    fig.suptitle(
        "Graduation Rate by Cohort and Program",
        fontsize=16, fontweight="bold", color=THEME_COLORS["primary"], y=1.02,
    )

    path = output_dir / "grouped_heatmap.png"
    fig.savefig(path)
    plt.close(fig)
    return path


def main():
    parser = argparse.ArgumentParser(description="Graduation Report Visualizer")
    parser.add_argument(
        "--report",
        required=True,
        help="Report JSON written by graduation_reports.py --output json",
    )
    parser.add_argument(
        "--output-dir",
        default="./output/charts",
        help="Directory to save charts",
    )
    args = parser.parse_args()

    report_path = Path(args.report)
    out = Path(args.output_dir)

    if not report_path.exists():
        print(f"ERROR: {report_path} not found.")
        print("Export a report first:")
        print("  python graduation_reports.py --output json")
        sys.exit(1)

    out.mkdir(parents=True, exist_ok=True)
    apply_theme()

    with open(report_path, encoding="utf-8") as f:
        report = json.load(f)

    print("Generating charts...")

    charts = []
    charts.append(("Graduation Rate", chart_rate_by_row(report, out)))
    charts.append(("Graduate Trend", chart_graduate_trend(report, out)))
    charts.append(("Grouped Heatmap", chart_grouped_heatmap(report, out)))

    generated = [(n, p) for n, p in charts if p]
    print(f"\nGenerated {len(generated)} charts:")
    for name, path in generated:
        print(f"  {name:25s} -> {path}")

    print(f"\nAll charts saved to: {out}/")


if __name__ == "__main__":
    main()
