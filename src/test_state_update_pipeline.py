"""
测试状态更新流水线
"""

import threading
import time
import unittest

from fake_chain import FakeChainSource, make_address, make_hash, transfer_log, approval_log
from state_models import Checkpoint, HolderUpdate
from state_update_config import PipelineConfig
from state_update_errors import InvalidCheckpointError
from state_update_pipeline import StateUpdatePipeline

TOKEN = make_address(0x1000)
OTHER_TOKEN = make_address(0x2000)
A = make_address(0xa)
B = make_address(0xb)
C = make_address(0xc)


class InFlightChainSource(FakeChainSource):
    """记录同时进行中的 transaction() 调用数的峰值"""

    def __init__(self, tip=0):
        super().__init__(tip)
        self.in_flight = 0
        self.peak = 0
        self._counter = threading.Lock()

    def transaction(self, tx_hash):
        with self._counter:
            self.in_flight += 1
            self.peak = max(self.peak, self.in_flight)
        try:
            time.sleep(0.02)
            return super().transaction(tx_hash)
        finally:
            with self._counter:
                self.in_flight -= 1


class TestStateUpdatePipeline(unittest.TestCase):
    """测试完整的状态更新流程"""

    def setUp(self):
        self.source = FakeChainSource(tip=102)
        self.source.add_block(100, block_hash='0xbbb')

        # 区块 101: A->B 100, B->C 40；区块 102: 一笔无关合约的转账
        tx1, tx2, tx3 = make_hash(1), make_hash(2), make_hash(3)
        self.source.add_transaction(tx1, index=0, logs=[
            transfer_log(TOKEN, A, B, 100),
            approval_log(TOKEN, A, C, 500),
        ])
        self.source.add_transaction(tx2, index=1, logs=[transfer_log(TOKEN, B, C, 40)])
        self.source.add_transaction(tx3, index=0, logs=[transfer_log(OTHER_TOKEN, A, B, 1)])
        self.source.add_block(101, transactions=[{'hash': tx1}, tx2])
        self.source.add_block(102, transactions=[tx3])
        self.tx_hashes = [tx1, tx2, tx3]

        self.pipeline = StateUpdatePipeline(self.source, PipelineConfig(max_lookup_distance=10))

    def test_reorg_scenario(self):
        update = self.pipeline.get_state_update(
            Checkpoint(block_height=100, block_hash='0xaaa', token_address=TOKEN))
        self.assertEqual(update.to_dict(), {'reversedBlocks': ['0xaaa'], 'incomingBlocks': []})
        self.assertEqual(self.source.calls_to('current_height'), [])

    def test_forward_scenario(self):
        update = self.pipeline.get_state_update(Checkpoint(block_height=100, token_address=TOKEN))

        self.assertEqual(update.reversed_blocks, [])
        self.assertEqual([b.block_height for b in update.incoming_blocks], [101, 102])

        block101, block102 = update.incoming_blocks
        self.assertEqual([tx.hash for tx in block101.transactions], self.tx_hashes[:2])
        self.assertEqual(len(block101.transactions[0].events), 2)
        self.assertEqual(block101.holders_update, [
            HolderUpdate(A, incoming='0', outgoing='100'),
            HolderUpdate(B, incoming='100', outgoing='40'),
            HolderUpdate(C, incoming='40', outgoing='0'),
        ])
        self.assertEqual([tx.hash for tx in block102.transactions], self.tx_hashes[2:])
        self.assertEqual(block102.transactions[0].events, ())
        self.assertEqual(block102.holders_update, [])

    def test_matching_checkpoint_hash_continues(self):
        update = self.pipeline.get_state_update(
            Checkpoint(block_height=100, block_hash='0xbbb', token_address=TOKEN))
        self.assertEqual(len(update.incoming_blocks), 2)

    def test_transaction_order_is_preserved(self):
        hashes = [make_hash(n, prefix=7) for n in range(8)]
        for index, tx_hash in enumerate(hashes):
            self.source.add_transaction(tx_hash, index=index)
            # 先提交的交易返回得更慢
            self.source.delays[tx_hash] = 0.02 * (len(hashes) - index)
        self.source.add_block(103, transactions=hashes)
        self.source.tip = 103

        pipeline = StateUpdatePipeline(self.source, PipelineConfig(tx_concurrency=4))
        update = pipeline.get_state_update(Checkpoint(block_height=102))
        self.assertEqual([tx.hash for tx in update.incoming_blocks[0].transactions], hashes)
        self.assertEqual([tx.index for tx in update.incoming_blocks[0].transactions], list(range(8)))

    def test_transaction_fetches_respect_concurrency_limit(self):
        source = InFlightChainSource(tip=1)
        hashes = [make_hash(n, prefix=8) for n in range(12)]
        for index, tx_hash in enumerate(hashes):
            source.add_transaction(tx_hash, index=index)
        source.add_block(1, transactions=hashes)

        update = StateUpdatePipeline(source, PipelineConfig(tx_concurrency=3)) \
            .get_state_update(Checkpoint(block_height=0))
        self.assertEqual(len(update.incoming_blocks[0].transactions), 12)
        self.assertLessEqual(source.peak, 3)
        self.assertGreaterEqual(source.peak, 2)

    def test_blocks_are_enriched_one_after_another(self):
        blocks = {}
        for height in (103, 104, 105):
            hashes = [make_hash(n, prefix=height) for n in range(4)]
            for index, tx_hash in enumerate(hashes):
                self.source.add_transaction(tx_hash, index=index)
            # 每个区块的最后一笔交易最慢
            self.source.delays[hashes[-1]] = 0.05
            self.source.add_block(height, transactions=hashes)
            blocks[height] = hashes
        self.source.tip = 105

        pipeline = StateUpdatePipeline(self.source, PipelineConfig(tx_concurrency=8))
        pipeline.get_state_update(Checkpoint(block_height=102))

        calls = self.source.calls_to('transaction')
        self.assertEqual(len(calls), 12)
        for height in (103, 104):
            last_of_block = max(calls.index(h) for h in blocks[height])
            first_of_next = min(calls.index(h) for h in blocks[height + 1])
            self.assertLess(last_of_block, first_of_next)

    def test_heights_are_contiguous(self):
        for height in range(103, 120):
            self.source.add_block(height)
        self.source.tip = 119
        update = StateUpdatePipeline(self.source, PipelineConfig(max_lookup_distance=7)) \
            .get_state_update(Checkpoint(block_height=100))
        self.assertEqual([b.block_height for b in update.incoming_blocks], list(range(101, 108)))

    def test_no_token_address_means_no_events(self):
        update = self.pipeline.get_state_update(Checkpoint(block_height=100))
        for block in update.incoming_blocks:
            self.assertTrue(all(tx.events == () for tx in block.transactions))
            self.assertEqual(block.holders_update, [])

    def test_zero_window(self):
        update = self.pipeline.get_state_update(Checkpoint(block_height=102))
        self.assertEqual(update.to_dict(), {'reversedBlocks': [], 'incomingBlocks': []})

    def test_enrichment_failure_fails_the_run(self):
        self.source.failing[self.tx_hashes[2]] = ConnectionError('timeout')
        with self.assertRaises(ConnectionError):
            self.pipeline.get_state_update(Checkpoint(block_height=100, token_address=TOKEN))

    def test_request_payload(self):
        update = self.pipeline.get_state_update({'blockHeight': 100, 'tokenAddress': TOKEN})
        self.assertEqual(len(update.incoming_blocks), 2)

        self.source.tip = 1
        self.source.add_block(1)
        update = self.pipeline.get_state_update({})
        self.assertEqual([b.block_height for b in update.incoming_blocks], [1])

    def test_invalid_checkpoint_rejected_before_network(self):
        for payload in ({'blockHeight': None}, {'blockHeight': '100'}, {'blockHeight': -1},
                        {'blockHeight': True}):
            with self.assertRaises(InvalidCheckpointError):
                self.pipeline.get_state_update(payload)
        self.assertEqual(self.source.calls, [])

    def test_serialized_output(self):
        update = self.pipeline.get_state_update(Checkpoint(block_height=100, token_address=TOKEN))
        block = update.to_dict()['incomingBlocks'][0]
        self.assertEqual(block['blockHeight'], 101)
        self.assertEqual(block['transactionHashes'], self.tx_hashes[:2])
        self.assertEqual(block['holdersUpdate'][1], {'address': B, 'incoming': '100', 'outgoing': '40'})
        events = block['transactions'][0]['events']
        self.assertEqual(events[0], {'eventType': 'Transfer', 'from': A, 'to': B,
                                     'value': '100', 'eventIndex': 0})
        self.assertEqual(events[1], {'eventType': 'Approve', 'owner': A, 'spender': C, 'value': '500'})


if __name__ == "__main__":
    unittest.main()
