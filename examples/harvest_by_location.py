#!/usr/bin/env python3
"""
Harvest Estimates by Survey Location
====================================

This example walks through a complete access-point creel survey analysis:
angler effort from instantaneous counts, catch rates from completed-trip
interviews, and total harvest as their product, all broken out by
location.

How This Script Works
---------------------
1. Builds a day-level design from the sampling calendar. Sampled days
   are weighted by target / actual days within weekday and weekend
   strata.
2. Aligns counts and interviews with that design so each observation
   inherits the weight and stratum of its survey day.
3. Estimates effort (angler-hours) with `estimate_effort`.
4. Estimates catch per angler-hour with `estimate_cpue` (ratio of means).
5. Combines the two with `combine_product_sets`, matching on location.

Key pycreel Features Demonstrated
---------------------------------
- `day_design_from_calendar` and `design_from_days` for day-level designs
- `by=["location"]` grouping across every estimator
- `variance_method`: linearization, jackknife or day-level bootstrap replicates
- `correlation`: delta-method covariance between effort and CPUE
- `design_diagnostics` for a quick check of the sampling design

Usage
-----
    # Simulated survey season
    python examples/harvest_by_location.py --simulate

    # Your own data: calendar.csv, counts.csv and interviews.csv
    python examples/harvest_by_location.py --data-dir surveys/2024

    # Jackknife standard errors and a positive effort/CPUE correlation
    python examples/harvest_by_location.py --simulate --variance-method jackknife \\
        --correlation 0.3

Input Files
-----------
calendar.csv    date, day_type, target_sample, actual_sample
counts.csv      date, location, count, interval_minutes, total_minutes
interviews.csv  date, location, catch_total, hours_fished
"""

import argparse
from pathlib import Path

import numpy as np
import polars as pl
from rich.console import Console
from rich.table import Table

from pycreel import (
    EstimationConfig,
    combine_product_sets,
    day_design_from_calendar,
    design_diagnostics,
    design_from_days,
    estimate_cpue,
    estimate_effort,
    with_replicates,
)

console = Console()

LOCATIONS = ["North Ramp", "South Ramp", "Dam Tailwater"]


def simulate_season(seed: int = 42, n_days: int = 60):
    """
    Simulate a two-month season of counts and interviews.

    Returns
    -------
    tuple[pl.DataFrame, pl.DataFrame, pl.DataFrame]
        Calendar, counts and interviews.
    """
    rng = np.random.default_rng(seed)
    start = np.datetime64("2024-06-01")
    dates = [str(start + np.timedelta64(i, "D")) for i in range(n_days)]
    day_type = ["weekend" if i % 7 in (5, 6) else "weekday" for i in range(n_days)]

    # Sample roughly a third of weekdays and half of weekend days
    sampled = [rng.random() < (0.5 if t == "weekend" else 0.33) for t in day_type]
    calendar = pl.DataFrame(
        {
            "date": dates,
            "day_type": day_type,
            # each sampled day stands in for 3 weekdays or 2 weekend days
            "target_sample": [2 if t == "weekend" else 3 for t in day_type],
            "actual_sample": [int(s) for s in sampled],
        }
    )

    counts, interviews = [], []
    for date, kind, was_sampled in zip(dates, day_type, sampled):
        if not was_sampled:
            continue
        busy = 2.0 if kind == "weekend" else 1.0
        for location, base in zip(LOCATIONS, (12, 8, 20)):
            for _ in range(4):
                counts.append(
                    {
                        "date": date,
                        "location": location,
                        "count": int(rng.poisson(base * busy)),
                        "interval_minutes": 120,
                        "total_minutes": 720,
                    }
                )
            for _ in range(int(rng.integers(3, 9))):
                hours = float(np.round(rng.gamma(3.0, 1.2), 2)) + 0.25
                rate = {"North Ramp": 0.6, "South Ramp": 0.3, "Dam Tailwater": 1.1}[location]
                interviews.append(
                    {
                        "date": date,
                        "location": location,
                        "catch_total": int(rng.poisson(rate * hours)),
                        "hours_fished": hours,
                    }
                )

    return calendar, pl.DataFrame(counts), pl.DataFrame(interviews)


def load_season(data_dir: Path):
    """Read calendar.csv, counts.csv and interviews.csv from ``data_dir``."""
    return (
        pl.read_csv(data_dir / "calendar.csv"),
        pl.read_csv(data_dir / "counts.csv"),
        pl.read_csv(data_dir / "interviews.csv"),
    )


def show_diagnostics(design):
    report = design_diagnostics(design)
    console.print(
        f"\n[bold]Day design[/bold]: {report.n_observations} sampled days, "
        f"{report.strata.n_strata} strata"
    )
    for issue in report.issues:
        console.print(f"  [yellow]! {issue}[/yellow]")
    for rec in report.recommendations:
        console.print(f"  [dim]- {rec}[/dim]")


def run_harvest_by_location(calendar, counts, interviews, config, correlation=None):
    """
    Estimate effort, CPUE and harvest by location.

    Parameters
    ----------
    calendar, counts, interviews : pl.DataFrame
        Survey tables, see the module docstring for their columns.
    config : EstimationConfig
        Confidence level and variance method.
    correlation : float, optional
        Correlation between effort and CPUE estimates.

    Returns
    -------
    pl.DataFrame
        One row per location with the harvest estimate.
    """
    days = day_design_from_calendar(calendar)
    if config.variance_method == "bootstrap":
        # Day-level replicates carry over to every observation on that day
        days = with_replicates(days, "bootstrap", config.n_replicates, config.seed)
    show_diagnostics(days)

    count_design = design_from_days(counts, days)
    interview_design = design_from_days(interviews, days)

    effort = estimate_effort(count_design, "instantaneous", by=["location"], config=config)
    cpue = estimate_cpue(interview_design, by=["location"], config=config)
    harvest = combine_product_sets(
        effort, cpue, by=["location"], correlation=correlation, config=config
    )

    level = f"{config.conf_level:.0%}"
    table = Table(title=f"Harvest by Location ({config.variance_method}, {level} CI)")
    table.add_column("Location", justify="left")
    table.add_column("Effort (h)", justify="right")
    table.add_column("CPUE (fish/h)", justify="right")
    table.add_column("Harvest", justify="right")
    table.add_column("SE", justify="right")
    table.add_column("CI", justify="right")
    table.add_column("CV %", justify="right")

    for est in harvest:
        location = est.group["location"]
        table.add_row(
            str(location),
            f"{effort[location].estimate:,.0f}",
            f"{cpue[location].estimate:.3f}",
            f"{est.estimate:,.0f}",
            f"{est.se:,.0f}",
            f"{est.ci_low:,.0f} - {est.ci_high:,.0f}",
            f"{est.cv:.1f}",
        )

    console.print(table)

    total = sum(est.estimate for est in harvest)
    console.print(f"\n  Total harvest across locations: {total:>12,.0f} fish")

    return harvest.to_polars().drop("diagnostics")


def main():
    """Main entry point - parse arguments and run analysis."""
    parser = argparse.ArgumentParser(
        description="Estimate creel survey harvest by location"
    )
    parser.add_argument(
        "--data-dir", "-d",
        type=Path,
        help="Directory holding calendar.csv, counts.csv and interviews.csv",
    )
    parser.add_argument(
        "--simulate", "-s",
        action="store_true",
        help="Use a simulated survey season",
    )
    parser.add_argument("--seed", type=int, default=42, help="Seed for --simulate")
    parser.add_argument(
        "--variance-method",
        default="linearization",
        choices=["linearization", "jackknife", "bootstrap"],
    )
    parser.add_argument("--conf-level", type=float, default=0.95)
    parser.add_argument(
        "--correlation",
        type=float,
        help="Correlation between effort and CPUE (default: independent)",
    )

    args = parser.parse_args()

    if not args.simulate and not args.data_dir:
        console.print("[red]Error: Must specify either --simulate or --data-dir[/red]")
        parser.print_help()
        return

    if args.simulate:
        console.print(f"[cyan]Simulating survey season (seed {args.seed})[/cyan]")
        calendar, counts, interviews = simulate_season(args.seed)
    else:
        console.print(f"[cyan]Reading survey tables from {args.data_dir}[/cyan]")
        calendar, counts, interviews = load_season(args.data_dir)

    config = EstimationConfig(
        conf_level=args.conf_level,
        variance_method=args.variance_method,
        seed=args.seed,
    )
    run_harvest_by_location(calendar, counts, interviews, config, args.correlation)

    console.print("\n[green]Done![/green]")


if __name__ == "__main__":
    main()
