"""RQ worker for allocation runs.

``python worker.py`` serves the allocation queue forever. A cron-style
deployment can use ``python worker.py --enqueue --burst`` to queue the
current run and exit once the queue drains.
"""

import argparse
import logging

from rq import Worker

from services.allocation_queue import ALLOCATION_QUEUE_NAME, enqueue_allocation_run, get_redis_connection


logger = logging.getLogger(__name__)


def main(argv=None):
    parser = argparse.ArgumentParser(description="Process scheduled credit allocation runs.")
    parser.add_argument("--enqueue", action="store_true", help="queue a run for the current time before working")
    parser.add_argument("--burst", action="store_true", help="exit when the queue is empty")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    redis_conn = get_redis_connection()
    if args.enqueue:
        job = enqueue_allocation_run()
        logger.info("Queued allocation run job=%s", job.id)

    worker = Worker([ALLOCATION_QUEUE_NAME], connection=redis_conn)
    worker.work(burst=args.burst, with_scheduler=not args.burst)


if __name__ == "__main__":
    main()
