"""
流水线配置
限制项通过构造参数显式传入，from_env() 只是从环境变量构建的便捷入口
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from state_update_errors import ConfigError

DEFAULT_MAX_LOOKUP_DISTANCE = 100
DEFAULT_BLOCK_FETCH_TIMEOUT = 30.0  # 秒
DEFAULT_TX_CONCURRENCY = 10


def env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigError(f"环境变量 {name} 的值无效: {raw!r}") from e


@dataclass(frozen=True)
class PipelineConfig:
    """
    状态更新流水线的限制项

    Attributes:
        max_lookup_distance: 单次运行最多获取的新区块数量
        block_fetch_timeout: 整个区块范围请求的总超时（秒）
        tx_concurrency: 同一区块内并发获取交易/收据的线程数
    """
    max_lookup_distance: int = DEFAULT_MAX_LOOKUP_DISTANCE
    block_fetch_timeout: float = DEFAULT_BLOCK_FETCH_TIMEOUT
    tx_concurrency: int = DEFAULT_TX_CONCURRENCY

    def __post_init__(self):
        for name in ('max_lookup_distance', 'tx_concurrency'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} 必须是正整数: {value!r}")
        timeout = self.block_fetch_timeout
        if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
            raise ConfigError(f"block_fetch_timeout 必须是正数: {timeout!r}")

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> 'PipelineConfig':
        """从 .env / 环境变量读取配置"""
        load_dotenv(dotenv_path)
        return cls(
            max_lookup_distance=env_number(
                'BLOCK_MAX_LOOKUP_DISTANCE', DEFAULT_MAX_LOOKUP_DISTANCE, int),
            block_fetch_timeout=env_number(
                'BLOCK_REQUEST_TIMEOUT', DEFAULT_BLOCK_FETCH_TIMEOUT, float),
            tx_concurrency=env_number(
                'BLOCK_REQUEST_TX_BATCH', DEFAULT_TX_CONCURRENCY, int),
        )
