"""
速率限制服务
按客户端标识（IP 或 X-Client-ID）限制入站请求频率
"""
import math
import time
import logging
from typing import Callable, Dict, List, Tuple, Any
from collections import defaultdict
import threading

logger = logging.getLogger("GeminiProxy.RateLimiter")


class RateLimiter:
    """
    基于客户端标识的速率限制器
    使用滑动窗口算法；检查与记录在同一把锁内完成，
    并发请求不会同时看到过期的计数
    """

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: float = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        # 存储格式: {client_id: [timestamp1, timestamp2, ...]}
        self._usage_records: Dict[str, List[float]] = defaultdict(list)
        self._lock = threading.Lock()
        self._clock = clock
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    def _prune(self, records: List[float], now: float) -> None:
        cutoff_time = now - self.window_seconds
        records[:] = [ts for ts in records if ts > cutoff_time]

    def _retry_after_locked(self, records: List[float], now: float) -> int:
        if not records:
            return 0
        return max(1, math.ceil(min(records) + self.window_seconds - now))

    def check_and_record(self, client_id: str) -> Tuple[bool, int, int]:
        """
        检查是否允许请求，并记录使用

        Returns:
            (is_allowed, remaining, retry_after_seconds)
        """
        now = self._clock()

        with self._lock:
            records = self._usage_records[client_id]
            self._prune(records, now)
            current_usage = len(records)

            if current_usage >= self.max_requests:
                retry_after = self._retry_after_locked(records, now)
                logger.warning(
                    f"Rate limit exceeded for client={client_id[:16]}. "
                    f"Usage: {current_usage}/{self.max_requests}. Retry after: {retry_after}s"
                )
                return False, 0, retry_after

            records.append(now)
            remaining = self.max_requests - current_usage - 1
            logger.debug(
                f"Rate limit check passed for client={client_id[:16]}. "
                f"Usage: {current_usage + 1}/{self.max_requests}, Remaining: {remaining}"
            )
            return True, remaining, 0

    def allow(self, client_id: str) -> bool:
        allowed, _, _ = self.check_and_record(client_id)
        return allowed

    def retry_after(self, client_id: str) -> int:
        """距离该客户端窗口内最早一次请求过期的秒数（不记录使用）"""
        now = self._clock()
        with self._lock:
            records = self._usage_records.get(client_id)
            if not records:
                return 0
            self._prune(records, now)
            return self._retry_after_locked(records, now)

    def get_usage_info(self, client_id: str) -> Dict[str, Any]:
        """获取使用情况信息（不记录使用）"""
        now = self._clock()
        with self._lock:
            records = self._usage_records.get(client_id, [])
            cutoff_time = now - self.window_seconds
            valid_records = [ts for ts in records if ts > cutoff_time]
            current_usage = len(valid_records)
            return {
                "client_id": client_id,
                "max_requests": self.max_requests,
                "window_seconds": self.window_seconds,
                "current_usage": current_usage,
                "remaining": max(0, self.max_requests - current_usage),
                "retry_after": self._retry_after_locked(valid_records, now) if current_usage >= self.max_requests else 0,
            }

    def cleanup_old_records(self) -> int:
        """
        清理所有过期的记录（由 lifespan 中的后台任务定期调用以释放内存）
        """
        now = self._clock()

        with self._lock:
            keys_to_remove = []
            for client_id, records in self._usage_records.items():
                self._prune(records, now)
                if not records:
                    keys_to_remove.append(client_id)

            for client_id in keys_to_remove:
                del self._usage_records[client_id]

        if keys_to_remove:
            logger.info(f"Cleaned up {len(keys_to_remove)} empty rate limit records")
        return len(keys_to_remove)
