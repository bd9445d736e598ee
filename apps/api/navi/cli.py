"""CLI tools for running scheduled jobs from cron."""

import asyncio
import sys

import click

from navi.core.structured_logging import configure_logging
from navi.db.enums import JobName, JobRunStatus
from navi.db.session import SessionLocal
from navi.jobs.context import build_job_context
from navi.jobs.registry import JOB_HANDLERS, run_job
from navi.services import job_run_service


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def cli(log_level):
    """Navi CLI tools."""
    configure_logging(log_level)


@cli.command("run-job")
@click.argument("job_name", type=click.Choice(sorted(JOB_HANDLERS)))
def run_job_command(job_name: str):
    """
    Run one scheduled job once.

    Example (crontab, every minute):
        * * * * * navi run-job automation_engine
    """
    db = SessionLocal()
    try:
        ctx = build_job_context(db)
        run = asyncio.run(run_job(db, job_name, ctx))
        click.echo(f"✓ {job_name} completed: {run.details}")
    except Exception as e:
        click.echo(f"❌ {job_name} failed: {e}", err=True)
        sys.exit(1)
    finally:
        db.close()


@cli.command("job-runs")
@click.option("--job", "job_name", type=click.Choice([j.value for j in JobName]), default=None)
@click.option("--limit", default=20, show_default=True)
def job_runs(job_name: str | None, limit: int):
    """Show recent job runs."""
    db = SessionLocal()
    try:
        runs = job_run_service.list_job_runs(
            db, JobName(job_name) if job_name else None, limit=limit
        )
        for run in runs:
            marker = "✓" if run.status == JobRunStatus.COMPLETED.value else "❌" if run.status == JobRunStatus.FAILED.value else "…"
            click.echo(f"{marker} {run.started_at:%Y-%m-%d %H:%M:%S} {run.job_name} {run.status}")
            if run.error_message:
                click.echo(f"    {run.error_message}")
    finally:
        db.close()


if __name__ == "__main__":
    cli()
