"""
持有人余额变化统计
把一个区块内的 Transfer 事件汇总为每个地址的转入/转出总量
"""

from typing import Dict, Iterable, List, Union

from state_models import HolderUpdate, TransferEvent


def add_amounts(left: Union[str, int], right: Union[str, int]) -> str:
    """
    精确的无符号整数加法，十进制字符串进出

    >>> add_amounts('9007199254740993', '1')
    '9007199254740994'
    """
    total = int(left) + int(right)
    if total < 0:
        raise ValueError(f"金额不能为负: {left} + {right}")
    return str(total)


def aggregate_holders(transfers: Iterable[TransferEvent]) -> List[HolderUpdate]:
    """
    按地址首次出现的顺序返回 HolderUpdate

    同一区块内只能由单个线程调用
    """
    holders: Dict[str, HolderUpdate] = {}

    for transfer in transfers:
        sender = holders.setdefault(transfer.from_address, HolderUpdate(transfer.from_address))
        receiver = holders.setdefault(transfer.to_address, HolderUpdate(transfer.to_address))
        sender.outgoing = add_amounts(sender.outgoing, transfer.value)
        receiver.incoming = add_amounts(receiver.incoming, transfer.value)

    return list(holders.values())
