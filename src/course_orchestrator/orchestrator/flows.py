"""Prefect flows for the scheduled health sweep and analytics refresh.

The sweep and analytics run outside the worker loop, as their own scheduled
process: ``health_sweep_flow`` is served on the configured interval by
``course-orchestrator health serve``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict
from pathlib import Path
from typing import Any

from prefect import flow, task

from course_orchestrator.config import Settings
from course_orchestrator.orchestrator.analytics import AnalyticsAggregator
from course_orchestrator.orchestrator.health import HealthMonitor, HealthSweepReport
from course_orchestrator.orchestrator.pricing import PricingTable
from course_orchestrator.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)

HEALTH_DEPLOYMENT_NAME = "course-orchestrator-health"


def run_health_sweep(settings: Settings) -> HealthSweepReport:
    """One sweep with analytics recorded for every job it finishes."""

    repository = _open_repository(settings)
    try:
        monitor = HealthMonitor(
            repository=repository,
            settings=settings.health,
            analytics=AnalyticsAggregator(
                repository=repository,
                pricing=PricingTable.parse(settings.orchestrator.pricing),
            ),
        )
        return monitor.sweep()
    finally:
        repository.close()


def refresh_analytics(settings: Settings, job_ids: list[str]) -> int:
    """Recompute and upsert analytics for the given jobs; returns how many were written."""

    repository = _open_repository(settings)
    try:
        aggregator = AnalyticsAggregator(
            repository=repository,
            pricing=PricingTable.parse(settings.orchestrator.pricing),
        )
        for job_id in job_ids:
            aggregator.record(job_id)
        return len(job_ids)
    finally:
        repository.close()


@task(name="health_sweep")
def health_sweep_task(db_path: str | None) -> dict[str, Any]:
    settings = _settings(db_path)
    report = run_health_sweep(settings)
    return asdict(report)


@task(name="analytics_refresh")
def analytics_refresh_task(db_path: str | None, job_ids: list[str]) -> int:
    return refresh_analytics(_settings(db_path), job_ids)


@flow(name="health_sweep_flow")
def health_sweep_flow(db_path: str | None = None) -> dict[str, Any]:
    """Run one health sweep; scheduled by `serve_health_sweep`."""

    report = health_sweep_task(db_path)
    logger.info(
        "Health sweep flow finished: checked=%s completed=%s failed=%s",
        report["checked_jobs"],
        len(report["completed_jobs"]),
        len(report["failed_jobs"]),
    )
    return report


@flow(name="analytics_refresh_flow")
def analytics_refresh_flow(job_ids: list[str], db_path: str | None = None) -> int:
    return analytics_refresh_task(db_path, job_ids)


def serve_health_sweep(settings: Settings) -> None:
    """Block serving the sweep flow every `sweep_interval_seconds`."""

    logger.info(
        "Serving %s every %ss against %s",
        HEALTH_DEPLOYMENT_NAME,
        settings.health.sweep_interval_seconds,
        settings.db_path,
    )
    health_sweep_flow.serve(
        name=HEALTH_DEPLOYMENT_NAME,
        interval=settings.health.sweep_interval_seconds,
        parameters={"db_path": str(settings.db_path)},
    )


def _settings(db_path: str | None) -> Settings:
    settings = Settings.from_env(db_path=Path(db_path) if db_path else None)
    settings.validate()
    return settings


def _open_repository(settings: Settings) -> OrchestratorRepository:
    repository = OrchestratorRepository(
        settings.db_path,
        busy_timeout_ms=settings.orchestrator.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    return repository
