"""
状态更新流水线
链重组检测 -> 获取新区块 -> 按区块补全交易 -> 汇总持有人余额变化
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, List, Mapping, Optional, Union

from block_fetcher import RangeFetcher
from chain_source import ChainDataSource
from erc20_parser import EventParser
from holder_balances import aggregate_holders
from reorg_detector import ReorgDetector
from state_models import Block, Checkpoint, StateUpdate, Transaction, TransferEvent
from state_update_config import PipelineConfig
from transaction_enricher import TransactionEnricher

logger = logging.getLogger(__name__)


class StateUpdatePipeline:
    """
    每次调用 get_state_update() 产生一个 StateUpdate

    结果要么是链重组报告，要么是完整补全的新区块列表；
    任何错误都会让整次运行失败，不会返回部分结果。
    """

    def __init__(self, source: ChainDataSource, config: Optional[PipelineConfig] = None):
        self.source = source
        self.config = config or PipelineConfig()
        self.reorg_detector = ReorgDetector(source)
        self.range_fetcher = RangeFetcher(source, self.config)

    def _enrich_transactions(self, block: Block, enricher: TransactionEnricher) -> List[Transaction]:
        if not block.transaction_hashes:
            return []

        executor = ThreadPoolExecutor(
            max_workers=min(self.config.tx_concurrency, len(block.transaction_hashes)),
            thread_name_prefix='tx-enrich',
        )
        try:
            # map() 按输入顺序返回结果，第一个失败的交易会在这里抛出
            return list(executor.map(enricher.enrich, block.transaction_hashes))
        finally:
            executor.shutdown(wait=True, cancel_futures=True)

    def process_block(self, block: Block, enricher: TransactionEnricher) -> Block:
        block.transactions = self._enrich_transactions(block, enricher)
        transfers: List[TransferEvent] = [
            ev for tx in block.transactions for ev in tx.transfers
        ]
        block.holders_update = aggregate_holders(transfers)
        logger.info(
            f"区块 {block.block_height}: {len(block.transactions)} 笔交易, "
            f"{len(transfers)} 笔转账, {len(block.holders_update)} 个持有人变化"
        )
        return block

    def get_state_update(self, checkpoint: Union[Checkpoint, Mapping[str, Any]]) -> StateUpdate:
        if not isinstance(checkpoint, Checkpoint):
            checkpoint = Checkpoint.from_request(checkpoint)

        update = StateUpdate()

        reversed_hash = self.reorg_detector.check(checkpoint)
        if reversed_hash is not None:
            update.reversed_blocks.append(reversed_hash)
            return update

        blocks = self.range_fetcher.fetch(checkpoint.block_height)
        if not blocks:
            return update

        enricher = TransactionEnricher(self.source, EventParser(checkpoint.token_address))
        for block in blocks:
            self.process_block(block, enricher)

        update.incoming_blocks = blocks
        return update
