"""CLI entrypoint for the skill catalog pipeline."""

from __future__ import annotations

import asyncio
import json

import typer
from loguru import logger

app = typer.Typer(
    name="catalog",
    help="Skill catalog: discover, index, classify and tier agent skills from GitHub.",
    no_args_is_help=True,
)


@app.command("init-db")
def init_db() -> None:
    """Create the metadata schema and seed the category vocabulary."""
    asyncio.run(_run_init_db())


@app.command()
def worker(
    jobs: bool = typer.Option(True, "--jobs/--no-jobs", help="Also run discovery, tier and archive schedules."),
) -> None:
    """Run both pipeline consumers (and the periodic jobs) until interrupted."""
    logger.info("Starting skill catalog worker")
    try:
        asyncio.run(_run_worker(include_jobs=jobs))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")


@app.command()
def discover() -> None:
    """Run one discovery tick against the public event feed."""
    asyncio.run(_run_discover())


@app.command()
def tiers() -> None:
    """Recompute lifecycle tiers for every public skill."""
    asyncio.run(_run_tiers())


@app.command()
def archive() -> None:
    """Archive eligible cold skills into snapshot blobs."""
    asyncio.run(_run_archive())


@app.command()
def resurrect(skill_id: str = typer.Argument(..., help="Id of the archived skill.")) -> None:
    """Restore an archived skill to the cold tier."""
    asyncio.run(_run_resurrect(skill_id))


@app.command()
def submit(
    repo: str = typer.Argument(..., help="Repository as OWNER/NAME."),
    path: str = typer.Option("", "--path", "-p", help="Directory of the manifest inside the repository."),
) -> None:
    """Queue a repository (or one skill inside it) for indexing."""
    owner, sep, name = repo.strip().strip("/").partition("/")
    if not sep or not owner or not name or "/" in name:
        logger.error("Expected OWNER/NAME, got {!r}", repo)
        raise typer.Exit(code=1)
    asyncio.run(_run_submit(owner, name, path.strip("/")))


@app.command()
def status(
    as_json: bool = typer.Option(False, "--json", help="Print the report as JSON."),
) -> None:
    """Show infrastructure health and skills per tier."""
    asyncio.run(_run_status(as_json=as_json))


# ---------------------------------------------------------------------------
# Shared infrastructure connection
# ---------------------------------------------------------------------------


async def _connect_store(settings):
    """Open the metadata store and apply the schema.

    Exits with code 1 if the database is unreachable.
    Accepts a :class:`~skill_catalog.settings.CatalogSettings` instance.
    """
    from skill_catalog.store import CatalogStore

    store = CatalogStore(settings.database)
    try:
        await store.ping()
        await store.ensure_schema()
    except Exception as exc:
        logger.error("Cannot reach database at {}: {}", settings.database.url, exc)
        await store.close()
        raise typer.Exit(code=1) from exc
    return store


async def _connect_bus(settings):
    """Connect to Redis, exiting with code 1 when it is unreachable."""
    from skill_catalog.events import EventBus

    bus = EventBus(settings.redis)
    try:
        await bus.ping()
    except Exception as exc:
        logger.error("Cannot reach Redis at {}:{}: {}", settings.redis.host, settings.redis.port, exc)
        await bus.close()
        raise typer.Exit(code=1) from exc
    return bus


def _archive_engine(settings, store, state):
    from skill_catalog.blobs import FileBlobStore
    from skill_catalog.lifecycle.archive import ArchiveEngine

    return ArchiveEngine(store, FileBlobStore(settings.blobs.root), settings.archive, settings.tiers, state=state)


# ---------------------------------------------------------------------------
# Async helpers
# ---------------------------------------------------------------------------


async def _run_init_db() -> None:
    from skill_catalog.settings import CatalogSettings

    settings = CatalogSettings()
    store = await _connect_store(settings)
    try:
        counts = await store.count_by_tier()
        logger.info("Schema ready at {} ({} skills)", settings.database.url, sum(counts.values()))
    finally:
        await store.close()


async def _run_worker(*, include_jobs: bool) -> None:
    from skill_catalog.pipeline.daemon import DaemonManager
    from skill_catalog.settings import CatalogSettings
    from skill_catalog.telemetry import init_telemetry, shutdown_telemetry

    settings = CatalogSettings()
    init_telemetry(settings.observability)
    daemon = DaemonManager()
    if not await daemon.start(settings, include_jobs=include_jobs):
        shutdown_telemetry()
        raise typer.Exit(code=1)
    try:
        await daemon.wait()
    except asyncio.CancelledError:
        pass
    finally:
        await daemon.stop()
        shutdown_telemetry()
        logger.info("Worker stopped")


async def _run_discover() -> None:
    from skill_catalog.github import GitHubClient
    from skill_catalog.lifecycle.discovery import DiscoveryRunner
    from skill_catalog.settings import CatalogSettings
    from skill_catalog.state import StateStore

    settings = CatalogSettings()
    bus = await _connect_bus(settings)
    state = StateStore(settings.redis)
    github = GitHubClient(settings.github)
    try:
        summary = await DiscoveryRunner(github, bus, state, settings.discovery, settings.queue).tick()
        logger.info("Processed {} events, queued {} repositories", summary["processed"], summary["queued"])
    finally:
        await github.close()
        await state.close()
        await bus.close()


async def _run_tiers() -> None:
    from skill_catalog.lifecycle.tiers import TierEngine
    from skill_catalog.settings import CatalogSettings
    from skill_catalog.state import StateStore

    settings = CatalogSettings()
    store = await _connect_store(settings)
    state = StateStore(settings.redis)
    try:
        engine = TierEngine(store, settings.tiers, archive=_archive_engine(settings, store, state), state=state)
        summary = await engine.run()
    finally:
        await state.close()
        await store.close()
    if summary.failed_pages:
        logger.warning("{} page(s) failed; rerun to retry them", summary.failed_pages)


async def _run_archive() -> None:
    from skill_catalog.settings import CatalogSettings
    from skill_catalog.state import StateStore

    settings = CatalogSettings()
    store = await _connect_store(settings)
    state = StateStore(settings.redis)
    try:
        summary = await _archive_engine(settings, store, state).run()
    finally:
        await state.close()
        await store.close()
    for skill_id in summary.failed_ids:
        logger.warning("Not archived: {}", skill_id)


async def _run_resurrect(skill_id: str) -> None:
    from skill_catalog.settings import CatalogSettings

    settings = CatalogSettings()
    store = await _connect_store(settings)
    try:
        result = await _archive_engine(settings, store, None).resurrect(skill_id)
    finally:
        await store.close()
    if not result.success:
        logger.error("Resurrection of {} failed: {}", skill_id, result.reason)
        raise typer.Exit(code=1)
    logger.info("Skill {} is back in the cold tier ({})", skill_id, result.reason)


async def _run_submit(owner: str, name: str, path: str) -> None:
    from skill_catalog.events import CheckSkill, Topic, WorkSource
    from skill_catalog.schema import Tier
    from skill_catalog.settings import CatalogSettings

    settings = CatalogSettings()
    bus = await _connect_bus(settings)
    try:
        store = await _connect_store(settings)
    except typer.Exit:
        await bus.close()
        raise

    try:
        existing = await store.find_skill(owner, name, path)
        if existing is not None and existing["tier"] == Tier.ARCHIVED.value:
            result = await _archive_engine(settings, store, None).resurrect(existing["id"])
            if not result.success:
                logger.error("Cannot resurrect {}: {}", existing["id"], result.reason)
                raise typer.Exit(code=1)
            logger.info("Resurrected archived skill {} ({})", existing["id"], result.reason)

        item = CheckSkill(repo_owner=owner, repo_name=name, skill_path=path, source=WorkSource.SUBMIT.value)
        msg_id = await bus.publish(Topic.CHECK_SKILL, item, maxlen=settings.queue.maxlen)
        logger.info("Queued {}/{}:{} ({})", owner, name, path or "/", msg_id.decode())
    finally:
        await store.close()
        await bus.close()


async def _run_status(*, as_json: bool) -> None:
    from skill_catalog.health import CheckStatus, run_health_checks
    from skill_catalog.settings import CatalogSettings
    from skill_catalog.store import CatalogStore

    settings = CatalogSettings()
    store = CatalogStore(settings.database)
    try:
        report = await run_health_checks(settings, store=store)
        tiers: dict[str, int] = {}
        db_ok = any(c.name == "database" and c.status == CheckStatus.OK for c in report.checks)
        if db_ok:
            tiers = await store.count_by_tier()
    finally:
        await store.close()

    if as_json:
        payload = {
            "ok": report.ok,
            "elapsed_ms": round(report.elapsed_ms, 1),
            "checks": [
                {"name": c.name, "status": c.status.value, "message": c.message, "detail": c.detail}
                for c in report.checks
            ],
            "tiers": tiers,
        }
        typer.echo(json.dumps(payload, indent=2))
    else:
        for check in report.checks:
            logger.info("{:<9} {:<4} {}", check.name, check.status.value, check.message)
            if check.suggestion and check.status != CheckStatus.OK:
                logger.info("          → {}", check.suggestion)
        if tiers:
            logger.info("Skills per tier: {}", ", ".join(f"{k}={v}" for k, v in sorted(tiers.items())))

    if not report.ok:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
