"""
Command line interface for hirefunnel.

Subcommands:

``run``
    Process a directory of résumés as one batch against a job profile
    (YAML or JSON), then write the ranked candidates to CSV.
``report``
    Print the top candidates from a rankings CSV.
``serve``
    Run the HTTP API with uvicorn.
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import logging
import sys
from pathlib import Path
from typing import Dict, List

import yaml  # type: ignore
from tqdm import tqdm

from .app import FunnelApp
from .batch.progress import EVENT_PROGRESS, BatchEvent
from .config import FunnelConfig, configure_logging
from .models.schema import WEIGHTED_STAGES, CandidateScore, ResumeFile

logger = logging.getLogger("hirefunnel.cli")

RESUME_EXTENSIONS = {".pdf", ".doc", ".docx", ".txt", ".md"}
RANKING_FIELDS = [
    "rank",
    "candidate_id",
    "file_name",
    "composite_score",
    "recommendation",
    *WEIGHTED_STAGES,
    "missing_stages",
    "reasoning",
]


def _load_job_profile(path: str) -> Dict[str, object]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise SystemExit(f"{path} must contain a job profile mapping")
    return data


def _load_resumes(directory: str) -> List[ResumeFile]:
    root = Path(directory)
    if not root.is_dir():
        raise SystemExit(f"Résumé directory not found: {directory}")
    files = [
        ResumeFile(file_name=p.name, content=p.read_bytes())
        for p in sorted(root.iterdir())
        if p.is_file() and p.suffix.lower() in RESUME_EXTENSIONS
    ]
    if not files:
        raise SystemExit(f"No résumés ({', '.join(sorted(RESUME_EXTENSIONS))}) in {directory}")
    return files


def write_rankings_csv(scores: List[CandidateScore], file_names: Dict[str, str], path: str) -> None:
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=RANKING_FIELDS)
        writer.writeheader()
        for score in scores:
            row = {
                "rank": score.rank,
                "candidate_id": score.candidate_id,
                "file_name": file_names.get(score.candidate_id, ""),
                "composite_score": score.composite_score,
                "recommendation": score.recommendation,
                "missing_stages": ";".join(score.missing_stages),
                "reasoning": score.reasoning,
            }
            for name in WEIGHTED_STAGES:
                value = score.stage_scores.get(name)
                row[name] = "" if value is None else f"{value:g}"
            writer.writerow(row)
    logger.info("Wrote %d rankings to %s", len(scores), path)


async def _run(config: FunnelConfig, profile_data: Dict[str, object], files: List[ResumeFile], out: str) -> None:
    async with FunnelApp(config) as app:
        profile = app.create_job_profile(profile_data)
        bar = tqdm(total=len(files), desc="Processing résumés", unit="file")

        def on_event(event: BatchEvent) -> None:
            if event.kind == EVENT_PROGRESS:
                bar.update(1)
                bar.set_postfix(failed=event.failed)

        try:
            batch = await app.run_batch(files, profile.id, on_event)
        finally:
            bar.close()
        scores = app.rank(profile.id)
        file_names = {cid: app.get_candidate(cid).file_name for cid in batch.candidate_ids}
        write_rankings_csv(scores, file_names, out)
        print(batch.summary())


def cmd_run(args: argparse.Namespace) -> None:
    config = FunnelConfig.from_yaml(args.config)
    if args.concurrency:
        config.batch.max_concurrency = args.concurrency
    configure_logging(config.logging)
    asyncio.run(_run(config, _load_job_profile(args.job_profile), _load_resumes(args.resumes), args.out))


def cmd_report(args: argparse.Namespace) -> None:
    with open(args.rankings, "r", encoding="utf-8") as f:
        rows = list(csv.DictReader(f))
    limit = args.limit or len(rows)
    for row in rows[:limit]:
        print(
            f"{int(row['rank']):02d}. {row['file_name'] or row['candidate_id']} – "
            f"{row['composite_score']}/100 ({row['recommendation']})"
        )
        print(f"   {row['reasoning']}")
        if row["missing_stages"]:
            print(f"   Missing: {row['missing_stages'].replace(';', ', ')}")
        print()


def cmd_serve(args: argparse.Namespace) -> None:
    import uvicorn

    from .api import create_app

    config = FunnelConfig.from_yaml(args.config)
    configure_logging(config.logging)
    uvicorn.run(create_app(FunnelApp(config)), host=args.host, port=args.port, log_config=None)


def main(argv: List[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="hirefunnel", description="Candidate funnel processing")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_cmd = subparsers.add_parser("run", help="Process a directory of résumés and rank the candidates")
    run_cmd.add_argument("--config", help="YAML config file")
    run_cmd.add_argument("--resumes", required=True, help="Directory of résumé files")
    run_cmd.add_argument("--job-profile", required=True, dest="job_profile", help="Job profile YAML/JSON")
    run_cmd.add_argument("--out", default="rankings.csv", help="Output CSV path")
    run_cmd.add_argument("--concurrency", type=int, help="Maximum résumés processed at once")
    run_cmd.set_defaults(func=cmd_run)

    report_cmd = subparsers.add_parser("report", help="Print the top candidates from a rankings CSV")
    report_cmd.add_argument("--rankings", required=True, help="Path to rankings CSV")
    report_cmd.add_argument("--limit", type=int, default=20, help="Number of candidates to display")
    report_cmd.set_defaults(func=cmd_report)

    serve_cmd = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_cmd.add_argument("--config", help="YAML config file")
    serve_cmd.add_argument("--host", default="127.0.0.1")
    serve_cmd.add_argument("--port", type=int, default=8000)
    serve_cmd.set_defaults(func=cmd_serve)

    args = parser.parse_args(argv)
    args.func(args)


if __name__ == "__main__":
    main(sys.argv[1:])
