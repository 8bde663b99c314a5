"""ARQ job definitions."""

import uuid
from typing import Any

from arq.connections import RedisSettings

from zaryo.core.config import get_settings
from zaryo.core.logging import configure_logging, get_logger
from zaryo.services.recovery import recover_stale_settlements

log = get_logger(__name__)


def get_redis_settings() -> RedisSettings:
    return RedisSettings.from_dsn(get_settings().redis_url)


async def _run_with_dlq(ctx: dict[str, Any], job_name: str, kwargs: dict[str, Any], coro) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        from zaryo.models.failed_job import FailedJob
        job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=job_id,
            job_try=ctx.get("job_try", 1),
            kwargs=kwargs,
            error=str(e)[:2000],
        ).insert()
        log.exception("job_failed", job=job_name, job_id=job_id, reason=str(e))
        raise


async def recover_settlements(ctx: dict[str, Any], older_than_seconds: int | None = None) -> dict:
    """Resolve stale pending settlements and orphaned purchases."""
    log.info("job_start", job="recover_settlements")
    result = await _run_with_dlq(
        ctx,
        "recover_settlements",
        {"older_than_seconds": older_than_seconds},
        recover_stale_settlements(older_than_seconds),
    )
    log.info("job_done", job="recover_settlements")
    return result


async def startup(ctx: dict) -> None:
    from zaryo.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()


async def shutdown(ctx: dict) -> None:
    log.info("worker_shutdown")
