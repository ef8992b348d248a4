"""
Shared — Redis Pub/Sub へのイベント発行

コマンドはコミット後にイベントを発行する。発行に失敗しても
コミット済みの状態変更は取り消さない（ログに残して続行）。
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


async def publish_event(
    redis: aioredis.Redis | None,
    channel: str,
    event: BaseModel,
) -> None:
    if redis is None:
        return
    event_type = type(event).__name__
    try:
        await redis.publish(
            channel,
            json.dumps(
                {
                    "event_type": event_type,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )
    except RedisError:
        logger.exception("Failed to publish %s on %s", event_type, channel)
