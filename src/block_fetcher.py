"""
区块范围获取模块
并发获取 (since, since + window] 内的区块，整个范围受同一个总超时限制
"""

import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Any, List, Mapping

from chain_source import ChainDataSource, to_hex_str
from state_models import Block
from state_update_config import PipelineConfig
from state_update_errors import BlockFetchTimeoutError, ChainDataError, TransactionShapeError

logger = logging.getLogger(__name__)

MAX_BLOCK_FETCH_WORKERS = 32


def extract_transaction_hash(tx: Any) -> str:
    """
    区块中的交易可能是完整交易对象，也可能只是哈希

    Raises:
        TransactionShapeError: 两种格式都不是
    """
    if isinstance(tx, Mapping) and tx.get('hash'):
        return to_hex_str(tx['hash'])
    if isinstance(tx, (str, bytes, bytearray)):
        return to_hex_str(tx)
    raise TransactionShapeError(f"未知的交易格式: {type(tx).__name__}")


def map_block(native: Mapping[str, Any]) -> Block:
    """把节点返回的区块转换为 Block"""
    return Block(
        block_height=native['number'],
        block_hash=to_hex_str(native['hash']),
        parent_hash=to_hex_str(native['parentHash']),
        time=datetime.fromtimestamp(native['timestamp'], tz=timezone.utc),
        transaction_hashes=[extract_transaction_hash(tx) for tx in native.get('transactions', [])],
    )


class RangeFetcher:
    """按高度升序返回检查点之后的新区块"""

    def __init__(self, source: ChainDataSource, config: PipelineConfig):
        self.source = source
        self.config = config

    def lookup_window(self, since: int) -> int:
        height_in_network = self.source.current_height()
        if isinstance(height_in_network, bool) or not isinstance(height_in_network, int):
            raise ChainDataError(f"无法获取网络高度: {height_in_network!r}")
        return min(self.config.max_lookup_distance, height_in_network - since)

    def _fetch_block(self, height: int) -> Block:
        native = self.source.block_at(height, include_transactions=True)
        if native is None:
            raise ChainDataError(f"区块 {height} 不存在")
        return map_block(native)

    def fetch(self, since: int) -> List[Block]:
        """
        获取 since 之后最多 max_lookup_distance 个区块

        Raises:
            BlockFetchTimeoutError: 超时，不返回部分结果
        """
        window = self.lookup_window(since)
        if window <= 0:
            logger.info(f"没有新区块 (since={since})")
            return []

        logger.info(f"获取区块 {since + 1}..{since + window}")
        timeout = self.config.block_fetch_timeout
        executor = ThreadPoolExecutor(
            max_workers=min(window, MAX_BLOCK_FETCH_WORKERS),
            thread_name_prefix='block-fetch',
        )
        try:
            futures = [executor.submit(self._fetch_block, since + offset)
                       for offset in range(1, window + 1)]
            done, not_done = wait(futures, timeout=timeout, return_when=FIRST_EXCEPTION)

            errors = [f.exception() for f in futures if f in done and f.exception() is not None]
            if errors:
                raise errors[0]
            if not_done:
                raise BlockFetchTimeoutError(since, window, timeout)

            return [f.result() for f in futures]
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
