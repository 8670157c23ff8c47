import dramatiq
from dramatiq.brokers.redis import RedisBroker
from app.config import settings

redis_broker = RedisBroker(url=settings.REDIS_URL)
dramatiq.set_broker(redis_broker)

from app.workers.polling import poll_generation  # noqa: E402
from app.workers.cleanup import cleanup_old_items  # noqa: E402

__all__ = ["redis_broker", "poll_generation", "cleanup_old_items"]
