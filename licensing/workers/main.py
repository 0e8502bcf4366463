"""ARQ worker entrypoint."""

import asyncio

from arq import cron
from arq.connections import RedisSettings

from licensing.core.config import get_settings
from licensing.workers.expiry import expire_licenses


def _redis_settings() -> RedisSettings:
    """Parse REDIS_URL into ARQ RedisSettings."""
    settings = get_settings()
    # redis://host:port/db
    url = settings.redis_url
    # Strip scheme
    rest = url.split("://", 1)[1] if "://" in url else url
    host_port, _, db = rest.partition("/")
    host, _, port = host_port.partition(":")
    return RedisSettings(
        host=host or "localhost",
        port=int(port) if port else 6379,
        database=int(db) if db else 0,
    )


def _sweep_minutes() -> set[int]:
    """Minutes of the hour on which the expiry sweep fires."""
    step = max(1, min(get_settings().license_expiry_sweep_minutes, 60))
    return set(range(0, 60, step))


async def startup(ctx: dict) -> None:
    """Called when the worker starts."""
    from licensing.api.deps import get_license_store
    from licensing.core.database import init_db

    await init_db()
    ctx["license_store"] = get_license_store()


async def shutdown(ctx: dict) -> None:
    """Called when the worker shuts down."""
    ctx.pop("license_store", None)


class WorkerSettings:
    """ARQ worker configuration."""
    functions = [expire_licenses]
    cron_jobs = [cron(expire_licenses, minute=_sweep_minutes(), run_at_startup=True)]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = _redis_settings()
    max_jobs = 10
    job_timeout = 300


if __name__ == "__main__":
    from arq import run_worker
    asyncio.run(run_worker(WorkerSettings))  # type: ignore[arg-type]
