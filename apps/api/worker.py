"""RQ worker process entrypoint for billing sync jobs."""

import logging

from rq import Worker

from config import settings
from services.billing_queue import BILLING_QUEUE_NAME, get_redis_connection


def main():
    logging.basicConfig(level=settings.LOG_LEVEL)
    redis_conn = get_redis_connection()
    worker = Worker([BILLING_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
