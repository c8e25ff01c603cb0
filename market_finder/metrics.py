"""
Lightweight async metrics helpers that write counters and latency samples to Redis.

Design:
- Counters: Redis INCRBY on key `metrics:counter:{name}`
- Latency samples: LPUSH to `metrics:lat:{name}`, LTRIM to keep last 1000 samples
- get_metrics() aggregates counters and computes simple stats for lat samples (count, avg, p50)
- If no Redis client is registered, or Redis errors, values are kept in-memory (process-local).
"""

import logging
import statistics
from typing import Dict, Any, Optional

from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

_MEM_COUNTERS: Dict[str, int] = {}
_MEM_LATS: Dict[str, list] = {}
_redis = None


def set_redis(client: Optional[Any]) -> None:
    """Register (or clear) the redis.asyncio client used for metrics."""
    global _redis
    _redis = client


def reset() -> None:
    """Clear process-local samples."""
    _MEM_COUNTERS.clear()
    _MEM_LATS.clear()


def _mem_increment(name: str, amount: int) -> None:
    _MEM_COUNTERS[name] = _MEM_COUNTERS.get(name, 0) + amount


def _mem_observe(name: str, ms: float, max_samples: int) -> None:
    samples = _MEM_LATS.setdefault(name, [])
    samples.insert(0, ms)
    del samples[max_samples:]


async def increment(name: str, amount: int = 1) -> None:
    """Increment a named counter by amount"""
    if _redis is None:
        _mem_increment(name, amount)
        return
    try:
        await _redis.incrby(f"metrics:counter:{name}", amount)
    except RedisError as e:
        logger.debug("metrics incr fell back to memory: %s", e)
        _mem_increment(name, amount)


async def observe_latency(name: str, ms: float, max_samples: int = 1000) -> None:
    """Record a latency sample (milliseconds) for a named metric"""
    if _redis is None:
        _mem_observe(name, ms, max_samples)
        return
    key = f"metrics:lat:{name}"
    try:
        await _redis.lpush(key, str(ms))
        await _redis.ltrim(key, 0, max_samples - 1)
    except RedisError as e:
        logger.debug("metrics latency fell back to memory: %s", e)
        _mem_observe(name, ms, max_samples)


def _summarize(vals: list) -> Dict[str, float]:
    return {
        'count': len(vals),
        'avg_ms': sum(vals) / len(vals),
        'p50_ms': float(statistics.median(vals)),
    }


def _decode(key) -> str:
    return key.decode() if isinstance(key, (bytes, bytearray)) else key


async def get_metrics() -> Dict[str, Any]:
    """Return a JSON-serializable dict of metrics: counters and simple latency stats.

    Redis values are merged with any in-memory samples recorded while Redis
    was unavailable.
    """
    counters: Dict[str, int] = dict(_MEM_COUNTERS)
    lat_vals: Dict[str, list] = {n: list(v) for n, v in _MEM_LATS.items()}

    if _redis is not None:
        try:
            # KEYS is fine for the handful of metric names we write
            for k in await _redis.keys('metrics:counter:*'):
                key = _decode(k)
                name = key.split(':', 2)[-1]
                v = await _redis.get(key)
                counters[name] = counters.get(name, 0) + (int(v) if v is not None else 0)
            for k in await _redis.keys('metrics:lat:*'):
                key = _decode(k)
                name = key.split(':', 2)[-1]
                vals = [float(v) for v in await _redis.lrange(key, 0, -1)]
                lat_vals.setdefault(name, []).extend(vals)
        except RedisError as e:
            logger.warning("metrics read from redis failed, reporting memory only: %s", e)

    return {
        "counters": counters,
        "latencies": {n: _summarize(v) for n, v in lat_vals.items() if v},
    }
