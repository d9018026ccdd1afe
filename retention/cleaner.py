import asyncio
import logging
from collections.abc import Mapping

import httpx

from retention.config import RegistryClientConfig
from retention.models import (
    CleanupResult,
    PurgeReport,
    RepositoryReport,
    RetentionRule,
    TagResult,
    TagState,
)
from retention.registry import RegistryClient
from retention.utils import make_repo_stats, select_for_deletion, true_utcnow


async def purge(
    client: RegistryClient,
    repository: str,
    candidates: list[int],
    dry_run: bool = False,
) -> PurgeReport:
    """Resolve and delete every candidate once, oldest first.

    A failing tag is recorded and the next candidate is processed.
    """
    report = PurgeReport(repository=repository)
    for tag in candidates:
        if dry_run:
            logging.info(f"Would delete {repository}:{tag}")
            report.results.append(TagResult(tag=tag, state=TagState.SELECTED))
            continue

        digest, errors = await client.get_digest(repository, str(tag))
        report.errors.extend(errors)
        if not digest:
            report.results.append(TagResult(tag=tag, state=TagState.UNRESOLVED))
            continue

        deleted, errors = await client.delete_manifest(repository, digest)
        report.errors.extend(errors)
        state = TagState.DELETED if deleted else TagState.RETAINED
        report.results.append(TagResult(tag=tag, state=state, digest=digest))
    return report


async def cleanup_repository(
    client: RegistryClient, rule: RetentionRule, dry_run: bool = False
) -> RepositoryReport:
    logging.info(
        f"Deleting all {rule.repository} images except the last {rule.keep_count} images"
    )
    tags, errors = await client.list_tags(rule.repository)
    if errors:
        return RepositoryReport(
            repository=rule.repository,
            keep_count=rule.keep_count,
            errors=errors,
            success=False,
        )

    candidates = select_for_deletion(tags, rule.keep_count, rule.repository)
    if not candidates:
        logging.info(f"Nothing to delete in {rule.repository}")
    purge_report = await purge(client, rule.repository, candidates, dry_run)
    return make_repo_stats(rule, tags, candidates, purge_report)


async def limited_cleanup(
    client: RegistryClient,
    rule: RetentionRule,
    limiter: asyncio.Semaphore,
    dry_run: bool,
) -> RepositoryReport:
    async with limiter:
        return await cleanup_repository(client, rule, dry_run)


async def cleanup_registry(
    rules: Mapping[str, RetentionRule],
    config: RegistryClientConfig,
    dry_run: bool = False,
    transport: httpx.AsyncBaseTransport | None = None,
) -> CleanupResult:
    started_at = true_utcnow()
    reports: list[RepositoryReport] = []

    async with RegistryClient(config, transport=transport) as client:
        limiter = asyncio.Semaphore(config.max_concurrent_repositories)
        tasks = [
            asyncio.create_task(limited_cleanup(client, rule, limiter, dry_run))
            for rule in rules.values()
        ]
        for completed_task in asyncio.as_completed(tasks):
            report = await completed_task
            logging.info(
                f"Finished '{report.repository}': {len(report.candidates)} candidates, "
                f"{report.deleted} deleted, {report.retained} retained, "
                f"{report.unresolved} unresolved, {len(report.errors)} errors"
            )
            reports.append(report)

    reports.sort(key=lambda report: report.repository)
    logging.info("Clean up finished!")
    return CleanupResult(
        started_at=started_at,
        finished_at=true_utcnow(),
        dry_run=dry_run,
        repositories=reports,
    )
