# subsplitctl/broker.py
import redis

from .config import RedisSettings

INCOMING = 'incoming'
PROCESSING = 'processing'
PROCESSED = 'processed'
FAILURES = 'failures'

LISTS = (INCOMING, PROCESSING, PROCESSED, FAILURES)


class BrokerFault(RuntimeError):
    """The broker stopped behaving like a blocking work queue. Fatal for the worker."""


class RedisBroker:
    """
    Work queue on top of four Redis lists.

    incoming -> processing happens atomically on pop; processing is only
    cleared when the notification is pushed to processed or failures.
    """
    def __init__(self, client, prefix: str):
        self.client = client
        self.prefix = prefix
        # Last notification moved to processing and not yet acknowledged
        self.in_flight = None

    def key(self, name: str) -> str:
        return f"{self.prefix}:{name}"

    def next_notification(self):
        """
        Blocks until a notification is available and moves it to processing.
        Returns None only if the broker gave up the wait without a payload.
        """
        self.in_flight = None
        try:
            body = self.client.brpoplpush(self.key(INCOMING), self.key(PROCESSING), 0)
        except redis.exceptions.RedisError as e:
            raise BrokerFault(f"Broker error while waiting for a notification: {e}") from e
        self.in_flight = body
        return body

    def acknowledge(self, body: str, payload: str, succeeded: bool):
        """
        Removes body from processing and pushes payload to processed or failures,
        in one transaction.
        """
        pipe = self.client.pipeline(transaction=True)
        pipe.lrem(self.key(PROCESSING), 1, body)
        if succeeded:
            pipe.rpush(self.key(PROCESSED), payload)
        else:
            pipe.lpush(self.key(FAILURES), payload)
        try:
            pipe.execute()
        except redis.exceptions.RedisError as e:
            raise BrokerFault(f"Broker error while acknowledging a notification: {e}") from e
        if body == self.in_flight:
            self.in_flight = None

    def enqueue(self, payload: str):
        self.client.lpush(self.key(INCOMING), payload)

    def length(self, name: str) -> int:
        return self.client.llen(self.key(name))

    def entries(self, name: str) -> list:
        return self.client.lrange(self.key(name), 0, -1)

    def requeue_failure(self, body: str) -> bool:
        """
        Moves one failed notification back onto incoming.
        Returns False if it was no longer in failures.
        """
        pipe = self.client.pipeline(transaction=True)
        pipe.lrem(self.key(FAILURES), 1, body)
        pipe.lpush(self.key(INCOMING), body)
        removed, _ = pipe.execute()
        if not removed:
            # Someone else already took it; undo the push.
            self.client.lrem(self.key(INCOMING), 1, body)
            return False
        return True


def connect(settings: RedisSettings) -> RedisBroker:
    """
    Returns a broker for the configured Redis server.
    The socket has no read timeout so the blocking pop can wait forever.
    """
    if settings.url:
        client = redis.Redis.from_url(settings.url, decode_responses=True, socket_timeout=None)
    else:
        client = redis.Redis(
            host=settings.host,
            port=settings.port,
            db=settings.db,
            password=settings.password,
            decode_responses=True,
            socket_timeout=None,
        )
    return RedisBroker(client, settings.prefix)
