# -*- coding: utf-8 -*-
"""运行时对象（任务、调度、逻辑点、Agent）的 ID 生成器。

ID 形如 `task_7123456789012345678`：前缀 + 雪花算法生成的 64 位整数，
在同一进程内单调递增，因此也可以直接用作排序键。
"""
import threading
import time


class SnowflakeGenerator:
    """线程安全的雪花 ID 生成器（41 位时间戳 | 10 位实例号 | 12 位序列号）。"""

    INSTANCE_BITS = 10
    SEQUENCE_BITS = 12

    def __init__(self, instance: int = 0, epoch: int = 1704067200000):  # 2024-01-01
        max_instance = -1 ^ (-1 << self.INSTANCE_BITS)
        if instance > max_instance or instance < 0:
            raise ValueError(f"Instance ID must be between 0 and {max_instance}")
        self.instance = instance
        self.epoch = epoch
        self.sequence = 0
        self.last_timestamp = -1
        self._lock = threading.Lock()
        self._max_sequence = -1 ^ (-1 << self.SEQUENCE_BITS)

    @staticmethod
    def _current_millis() -> int:
        return int(time.time() * 1000)

    def __iter__(self):
        return self

    def __next__(self) -> int:
        with self._lock:
            timestamp = self._current_millis()
            # 时钟回拨时沿用上一个时间戳，保证单调
            if timestamp < self.last_timestamp:
                timestamp = self.last_timestamp

            if timestamp == self.last_timestamp:
                self.sequence = (self.sequence + 1) & self._max_sequence
                if self.sequence == 0:
                    while timestamp <= self.last_timestamp:
                        timestamp = self._current_millis()
            else:
                self.sequence = 0

            self.last_timestamp = timestamp
            return ((timestamp - self.epoch) << (self.INSTANCE_BITS + self.SEQUENCE_BITS)) | \
                (self.instance << self.SEQUENCE_BITS) | \
                self.sequence


_generator = SnowflakeGenerator()


def generate_id(prefix: str) -> str:
    """生成一个带前缀的唯一 ID。"""
    return f"{prefix}_{next(_generator)}"
