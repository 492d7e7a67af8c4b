"""
链重组检测
只检查检查点所在高度的区块哈希，不会继续向前回溯分叉点
"""

import logging
from typing import Optional

from chain_source import ChainDataSource, same_hash, to_hex_str
from state_models import Checkpoint

logger = logging.getLogger(__name__)


class ReorgDetector:

    def __init__(self, source: ChainDataSource):
        self.source = source

    def check(self, checkpoint: Checkpoint) -> Optional[str]:
        """
        Returns:
            被回滚的区块哈希；链未重组或检查点没有哈希时返回 None
        """
        if not checkpoint.block_hash:
            return None

        latest = self.source.block_at(checkpoint.block_height)
        current_hash = to_hex_str(latest['hash']) if latest is not None else None
        if same_hash(current_hash, checkpoint.block_hash):
            return None

        logger.info(
            f"检测到链重组: 高度 {checkpoint.block_height} "
            f"已知 {checkpoint.block_hash}, 当前 {current_hash}"
        )
        return checkpoint.block_hash
