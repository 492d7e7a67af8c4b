"""
测试用的内存链数据源和日志构造工具
"""

import threading
import time
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import encode as abi_encode
from web3 import Web3

from erc20_parser import EventParser

TRANSFER_TOPIC = Web3.keccak(text='Transfer(address,address,uint256)')
APPROVAL_TOPIC = Web3.keccak(text='Approval(address,address,uint256)')

BASE_TIMESTAMP = 1_600_000_000


def make_address(n: int) -> str:
    return Web3.to_checksum_address('0x' + f'{n:040x}')


def make_hash(n: int, prefix: int = 0) -> str:
    return '0x' + f'{prefix:08x}{n:056x}'


def _indexed_address(address: str) -> bytes:
    return abi_encode(['address'], [address])


def transfer_log(token: str, sender: str, receiver: str, value: int, **extra) -> Dict[str, Any]:
    log = {
        'address': token,
        'topics': [TRANSFER_TOPIC, _indexed_address(sender), _indexed_address(receiver)],
        'data': abi_encode(['uint256'], [value]),
    }
    log.update(extra)
    return log


def approval_log(token: str, owner: str, spender: str, value: int, **extra) -> Dict[str, Any]:
    log = {
        'address': token,
        'topics': [APPROVAL_TOPIC, _indexed_address(owner), _indexed_address(spender)],
        'data': abi_encode(['uint256'], [value]),
    }
    log.update(extra)
    return log


class FakeChainSource:
    """实现 ChainDataSource 接口的内存数据源，记录所有调用"""

    def __init__(self, tip: int = 0):
        self.tip: Any = tip
        self.blocks: Dict[int, Dict[str, Any]] = {}
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.receipts: Dict[str, Dict[str, Any]] = {}
        self.delays: Dict[Any, float] = {}
        self.failing: Dict[str, Exception] = {}
        self.block_gate: Optional[threading.Event] = None
        self.calls: List[Tuple[str, Any]] = []
        self._lock = threading.Lock()

    def _record(self, name: str, arg: Any):
        with self._lock:
            self.calls.append((name, arg))

    def calls_to(self, name: str) -> List[Any]:
        with self._lock:
            return [arg for call, arg in self.calls if call == name]

    def current_height(self):
        self._record('current_height', None)
        return self.tip

    def block_at(self, height: int, include_transactions: bool = False):
        self._record('block_at', height)
        if self.block_gate is not None:
            self.block_gate.wait(5)
        if height in self.delays:
            time.sleep(self.delays[height])
        return self.blocks.get(height)

    def transaction(self, tx_hash: str):
        self._record('transaction', tx_hash)
        if tx_hash in self.delays:
            time.sleep(self.delays[tx_hash])
        if tx_hash in self.failing:
            raise self.failing[tx_hash]
        return self.transactions[tx_hash]

    def transaction_receipt(self, tx_hash: str):
        self._record('transaction_receipt', tx_hash)
        return self.receipts[tx_hash]

    def add_block(self, height: int, block_hash: Optional[str] = None,
                  transactions: Sequence[Any] = ()) -> Dict[str, Any]:
        native = {
            'number': height,
            'hash': block_hash or make_hash(height, prefix=0xb10c),
            'parentHash': make_hash(height - 1, prefix=0xb10c),
            'timestamp': BASE_TIMESTAMP + height * 12,
            'transactions': list(transactions),
        }
        self.blocks[height] = native
        return native

    def add_transaction(self, tx_hash: str, logs: Sequence[Dict[str, Any]] = (), index: int = 0,
                        sender: Optional[str] = None, receiver: Optional[str] = None,
                        nonce: int = 0) -> Dict[str, Any]:
        self.transactions[tx_hash] = {
            'hash': tx_hash,
            'from': sender or make_address(0xaa),
            'to': receiver,
            'nonce': nonce,
            'gasPrice': 20 * 10 ** 9,
            'gas': 100_000,
            'r': b'\x01' * 32,
            's': b'\x02' * 32,
            'v': 27,
            'transactionIndex': index,
        }
        self.receipts[tx_hash] = {
            'transactionHash': tx_hash,
            'transactionIndex': index,
            'gasUsed': 52_000,
            'logs': list(logs),
        }
        return self.transactions[tx_hash]


def parse_events(logs: Sequence[Dict[str, Any]], token_address: Optional[str]) -> List[Any]:
    """用标准 ERC-20 ABI 解析日志"""
    return EventParser(token_address).parse(logs)
