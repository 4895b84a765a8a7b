from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from redis import Redis

from farmauth.logging import get_logger
from farmauth.storage.common import ConsumeResult, ConsumeStatus
from farmauth.storage.models import OTPChallenge, OTPPurpose

logger = get_logger(__name__)


class RedisChallengeStore:
    """OTP challenges in Redis, shared by every server instance.

    Consume and discard run as Lua scripts so the read-check-delete sequence
    is atomic per identifier across processes. Keys outlive ``expires_at`` by
    ``retention_seconds`` so a late verification still reports ``expired``
    rather than ``not_found``.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Lua 5.1 has no constant-time string compare; codes are XOR-accumulated.
    _CONSUME_SCRIPT = """
local function same(a, b)
  if #a ~= #b then
    return false
  end
  local diff = 0
  for i = 1, #a do
    diff = bit.bor(diff, bit.bxor(string.byte(a, i), string.byte(b, i)))
  end
  return diff == 0
end
local raw = redis.call('GET', KEYS[1])
if not raw then
  return {'not_found'}
end
local data = cjson.decode(raw)
local now = tonumber(ARGV[2])
if now > tonumber(data['expires_at']) then
  redis.call('DEL', KEYS[1])
  return {'expired'}
end
if not same(tostring(data['code']), ARGV[1]) then
  return {'mismatch'}
end
if data['purpose'] ~= ARGV[3] then
  return {'wrong_purpose'}
end
redis.call('DEL', KEYS[1])
return {'ok', raw}
"""

    _DISCARD_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return 0
end
local data = cjson.decode(raw)
if data['nonce'] == ARGV[1] then
  redis.call('DEL', KEYS[1])
  return 1
end
return 0
"""

    def __init__(
        self,
        redis_url: str,
        *,
        retention_seconds: int = 3600,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        key_prefix: str = "auth:otp:",
    ) -> None:
        self.redis_url = redis_url
        self.retention_seconds = retention_seconds
        self.key_prefix = key_prefix
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(self._CONSUME_SCRIPT)
        self._discard = self.client.register_script(self._DISCARD_SCRIPT)

    def _key(self, identifier: str) -> str:
        return f"{self.key_prefix}{identifier}"

    def _ttl_seconds(self, expires_at: datetime, now: Optional[datetime] = None) -> int:
        """Key lifetime measured on the caller's clock, plus retention."""
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        remaining = int((expires_at - now).total_seconds())
        return max(1, remaining + self.retention_seconds)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the store is handed to services."""
        # Short-lived sync client so the async pool is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def put(self, challenge: OTPChallenge, now: Optional[datetime] = None) -> None:
        await self.client.set(
            self._key(challenge.identifier),
            json.dumps(challenge.to_dict()),
            ex=self._ttl_seconds(challenge.expires_at, now),
        )

    async def get(self, identifier: str) -> Optional[OTPChallenge]:
        raw = await self.client.get(self._key(identifier))
        if raw is None:
            return None
        try:
            return OTPChallenge.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("otp_challenge_corrupt", identifier=identifier, error=str(exc))
            return None

    async def discard(self, identifier: str, nonce: str) -> bool:
        removed = await self._discard(keys=[self._key(identifier)], args=[nonce])
        return bool(removed)

    async def consume(
        self, identifier: str, code: str, purpose: OTPPurpose, now: datetime
    ) -> ConsumeResult:
        result = await self._consume(
            keys=[self._key(identifier)],
            args=[code, now.timestamp(), purpose.value],
        )
        status = ConsumeStatus(result[0])
        if status != ConsumeStatus.OK:
            return ConsumeResult(status=status)
        try:
            challenge = OTPChallenge.from_dict(json.loads(result[1]))
        except (ValueError, KeyError, TypeError) as exc:
            # Already deleted by the script; treat as if nothing was stored.
            logger.warning("otp_challenge_corrupt", identifier=identifier, error=str(exc))
            return ConsumeResult(status=ConsumeStatus.NOT_FOUND)
        return ConsumeResult(status=status, challenge=challenge)

    async def close(self) -> None:
        await self.client.aclose()
