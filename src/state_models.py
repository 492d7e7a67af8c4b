"""
状态更新的数据模型
区块、交易、代币事件、持有人余额变化，以及对外输出的字典格式
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union

from state_update_errors import InvalidCheckpointError


class EventType(str, Enum):
    TRANSFER = 'Transfer'
    APPROVE = 'Approve'


@dataclass(frozen=True)
class TransferEvent:
    """代币转账事件"""
    from_address: str
    to_address: str
    value: int
    event_index: int
    event_type: ClassVar[EventType] = EventType.TRANSFER

    def to_dict(self) -> Dict[str, Any]:
        return {
            'eventType': self.event_type.value,
            'from': self.from_address,
            'to': self.to_address,
            'value': str(self.value),
            'eventIndex': self.event_index,
        }


@dataclass(frozen=True)
class ApproveEvent:
    """代币授权事件"""
    owner: str
    spender: str
    value: int
    event_type: ClassVar[EventType] = EventType.APPROVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'eventType': self.event_type.value,
            'owner': self.owner,
            'spender': self.spender,
            'value': str(self.value),
        }


Event = Union[TransferEvent, ApproveEvent]


@dataclass(frozen=True)
class Transaction:
    """交易与收据合并后的记录"""
    hash: str
    sender: str
    receiver: Optional[str]
    nonce: int
    gas_price: str
    gas_limit: str
    gas_consumed: str
    r: Optional[str]
    s: Optional[str]
    v: Optional[int]
    index: int
    events: Tuple[Event, ...] = ()

    @property
    def transfers(self) -> List[TransferEvent]:
        return [ev for ev in self.events if ev.event_type is EventType.TRANSFER]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hash': self.hash,
            'sender': self.sender,
            'receiver': self.receiver,
            'nonce': self.nonce,
            'gasPrice': self.gas_price,
            'gasLimit': self.gas_limit,
            'gasConsumed': self.gas_consumed,
            'r': self.r,
            's': self.s,
            'v': self.v,
            'index': self.index,
            'events': [ev.to_dict() for ev in self.events],
        }


@dataclass
class HolderUpdate:
    """单个地址在一个区块内的转入/转出总量（十进制字符串）"""
    address: str
    incoming: str = '0'
    outgoing: str = '0'

    def to_dict(self) -> Dict[str, str]:
        return {
            'address': self.address,
            'incoming': self.incoming,
            'outgoing': self.outgoing,
        }


@dataclass
class Block:
    """区块记录，交易和持有人变化在流水线运行中填充"""
    block_height: int
    block_hash: str
    parent_hash: str
    time: datetime
    transaction_hashes: List[str] = field(default_factory=list)
    transactions: List[Transaction] = field(default_factory=list)
    holders_update: List[HolderUpdate] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'blockHeight': self.block_height,
            'blockHash': self.block_hash,
            'parentHash': self.parent_hash,
            'time': self.time.isoformat(),
            'transactionHashes': list(self.transaction_hashes),
            'transactions': [tx.to_dict() for tx in self.transactions],
            'holdersUpdate': [holder.to_dict() for holder in self.holders_update],
        }


@dataclass
class StateUpdate:
    """
    一次流水线运行的结果
    reversed_blocks 与 incoming_blocks 互斥：要么报告链重组，要么报告新区块
    """
    reversed_blocks: List[str] = field(default_factory=list)
    incoming_blocks: List[Block] = field(default_factory=list)

    @property
    def is_reorg(self) -> bool:
        return bool(self.reversed_blocks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'reversedBlocks': list(self.reversed_blocks),
            'incomingBlocks': [block.to_dict() for block in self.incoming_blocks],
        }


@dataclass(frozen=True)
class Checkpoint:
    """调用方已处理到的最后一个区块"""
    block_height: int
    block_hash: Optional[str] = None
    token_address: Optional[str] = None

    def __post_init__(self):
        height = self.block_height
        if isinstance(height, bool) or not isinstance(height, int) or height < 0:
            raise InvalidCheckpointError(f"区块高度必须是非负整数: {height!r}")

    @classmethod
    def from_request(cls, payload: Mapping[str, Any]) -> 'Checkpoint':
        """
        解析入站请求 {blockHeight, tokenAddress?, blockHash?}

        blockHeight 缺省为 0；空字符串的 hash/地址视为未提供
        """
        return cls(
            block_height=payload.get('blockHeight', 0),
            block_hash=payload.get('blockHash') or None,
            token_address=payload.get('tokenAddress') or None,
        )
