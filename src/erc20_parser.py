"""
ERC-20 事件解析模块
按代币合约地址过滤交易收据中的日志，并解码 Transfer / Approve 事件
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from web3 import Web3

from state_models import ApproveEvent, Event, EventType, TransferEvent

logger = logging.getLogger(__name__)

# ERC20 代币事件 ABI
ERC20_EVENT_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "from", "type": "address"},
            {"indexed": True, "name": "to", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"}
        ],
        "name": "Transfer",
        "type": "event"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "owner", "type": "address"},
            {"indexed": True, "name": "spender", "type": "address"},
            {"indexed": False, "name": "value", "type": "uint256"}
        ],
        "name": "Approval",
        "type": "event"
    }
]

# 标准 ERC-20 中授权事件名为 Approval
TRACKED_EVENTS = {
    'Transfer': EventType.TRANSFER,
    'Approve': EventType.APPROVE,
    'Approval': EventType.APPROVE,
}


@dataclass(frozen=True)
class DecodedLog:
    """按 ABI 解码成功的日志"""
    name: str
    args: Dict[str, Any]


@dataclass(frozen=True)
class DecodeFailure:
    """无法解码的日志，会被忽略而不是作为错误抛出"""
    reason: str


LogDecodeResult = Union[DecodedLog, DecodeFailure]


def event_signature(event_abi: Mapping[str, Any]) -> str:
    """Transfer(address,address,uint256) 形式的事件签名"""
    types = ','.join(inp['type'] for inp in event_abi['inputs'])
    return f"{event_abi['name']}({types})"


def build_topic_index(abi: Sequence[Mapping[str, Any]]) -> Dict[bytes, Mapping[str, Any]]:
    """topics[0] -> 事件 ABI"""
    return {
        bytes(Web3.keccak(text=event_signature(item))): item
        for item in abi
        if item.get('type') == 'event' and not item.get('anonymous', False)
    }


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, str):
        return bytes(Web3.to_bytes(hexstr=value))
    return bytes(value)


def decode_log(log: Mapping[str, Any], topic_index: Mapping[bytes, Mapping[str, Any]]) -> LogDecodeResult:
    """
    用已知事件签名解码单条日志

    Args:
        log: 交易收据中的日志（topics/data 可以是 bytes 或十六进制字符串）
        topic_index: build_topic_index() 的结果

    Returns:
        DecodedLog，或者说明原因的 DecodeFailure
    """
    topics = log.get('topics') or []
    if not topics:
        return DecodeFailure('日志没有 topics')

    try:
        event_abi = topic_index.get(_as_bytes(topics[0]))
    except (ValueError, TypeError) as e:
        return DecodeFailure(f"topic 格式错误: {e}")
    if event_abi is None:
        return DecodeFailure('未知的事件签名')

    indexed = [inp for inp in event_abi['inputs'] if inp.get('indexed')]
    plain = [inp for inp in event_abi['inputs'] if not inp.get('indexed')]
    if len(topics) - 1 != len(indexed):
        return DecodeFailure(f"{event_abi['name']} 的 topics 数量不匹配")

    args: Dict[str, Any] = {}
    try:
        for inp, topic in zip(indexed, topics[1:]):
            (args[inp['name']],) = abi_decode([inp['type']], _as_bytes(topic))
        values = abi_decode([inp['type'] for inp in plain], _as_bytes(log.get('data') or b''))
    except (DecodingError, ValueError, TypeError) as e:
        return DecodeFailure(f"{event_abi['name']} 解码失败: {e}")
    args.update(zip((inp['name'] for inp in plain), values))

    for inp in event_abi['inputs']:
        if inp['type'] == 'address':
            args[inp['name']] = Web3.to_checksum_address(args[inp['name']])

    return DecodedLog(name=event_abi['name'], args=args)


def _event_index(log: Mapping[str, Any], position: int) -> int:
    index = log.get('transactionLogIndex')
    if index is None:
        return position
    if isinstance(index, str):
        return int(index, 16) if index.startswith('0x') else int(index)
    return int(index)


class EventParser:
    """把单个代币合约的日志解析为 Transfer / Approve 事件"""

    def __init__(self, token_address: Optional[str], abi: Sequence[Mapping[str, Any]] = ERC20_EVENT_ABI):
        self.token_address = token_address
        self._topic_index = build_topic_index(abi)

    def _matches(self, log: Mapping[str, Any]) -> bool:
        address = log.get('address')
        return address is not None and str(address).lower() == self.token_address.lower()

    def parse(self, logs: Sequence[Mapping[str, Any]]) -> List[Event]:
        """解析日志列表；未配置代币地址时返回空列表"""
        if not self.token_address:
            return []

        events: List[Event] = []
        for position, log in enumerate(logs):
            if not self._matches(log):
                continue

            decoded = decode_log(log, self._topic_index)
            if isinstance(decoded, DecodeFailure):
                logger.debug(f"忽略无法解码的日志 #{position}: {decoded.reason}")
                continue

            event_type = TRACKED_EVENTS.get(decoded.name)
            if event_type is None:
                logger.debug(f"忽略不跟踪的事件 {decoded.name}")
                continue

            try:
                if event_type is EventType.TRANSFER:
                    events.append(TransferEvent(
                        from_address=decoded.args['from'],
                        to_address=decoded.args['to'],
                        value=decoded.args['value'],
                        event_index=_event_index(log, position),
                    ))
                else:
                    events.append(ApproveEvent(
                        owner=decoded.args['owner'],
                        spender=decoded.args['spender'],
                        value=decoded.args['value'],
                    ))
            except KeyError as e:
                logger.debug(f"事件 {decoded.name} 缺少参数 {e}")

        return events
