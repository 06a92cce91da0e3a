import os
from redis import Redis
from rq import Worker, Queue

REDIS_URL = os.environ.get("REDIS_URL", "redis://redis:6379/0")
QUEUE_NAME = os.environ.get("MATRIXCI_QUEUE", "matrixci")


def main():
    r = Redis.from_url(REDIS_URL)
    w = Worker([Queue(QUEUE_NAME, connection=r)], connection=r)
    w.work(with_scheduler=False)


if __name__ == "__main__":
    main()
