import redis
from rq import Queue, Worker
import logging
from loguru import logger

from config import Settings
from worker_task import POLLER_QUEUE, schedule_poller

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

# Add loguru logger for profiling
logger.add("worker_profile.log", rotation="1 week", retention="4 weeks", level="INFO")

# To poll in parallel, run more worker.py processes; seeding is skipped when a poll is already pending


def main(seed_schedule: bool = True):
    settings = Settings()
    redis_conn = redis.from_url(settings.redis_url)
    queue = Queue(POLLER_QUEUE, connection=redis_conn)

    if seed_schedule:
        job = schedule_poller(queue, 0)
        if job is None:
            logger.info("Stage poller already scheduled; joining the existing schedule")
        else:
            logger.info(f"Stage poller scheduled ({job.id}), interval {settings.poll_interval_seconds}s")

    logger.info(f"Worker listening on queue {POLLER_QUEUE} at {settings.redis_url}")
    worker = Worker([queue], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    import sys
    main(seed_schedule="--no-seed" not in sys.argv)
