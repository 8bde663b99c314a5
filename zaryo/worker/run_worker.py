"""Run ARQ worker. Usage: python -m zaryo.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from zaryo.worker.tasks import get_redis_settings, recover_settlements, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [recover_settlements]
    cron_jobs = [
        cron(recover_settlements, second=0, run_at_startup=True),  # every minute at :00
    ]
    on_startup = startup
    on_shutdown = shutdown


def main() -> None:
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
