"""
交易补全模块
根据交易哈希获取交易与收据，合并成 Transaction 并解析其中的代币事件
"""

import logging
from typing import Any, Mapping, Optional

from chain_source import ChainDataSource, to_hex_str
from erc20_parser import EventParser
from state_models import Transaction
from state_update_errors import TransactionShapeError

logger = logging.getLogger(__name__)


def _optional_hex(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, int):
        return hex(value)
    return to_hex_str(value)


def merge_transaction(native_tx: Mapping[str, Any], receipt: Mapping[str, Any],
                      parser: EventParser) -> Transaction:
    """
    合并交易与收据（收据字段优先）

    Raises:
        TransactionShapeError: 缺少必要字段或字段类型无法识别
    """
    native = {**native_tx, **receipt}
    try:
        tx_hash = native.get('transactionHash') or native['hash']
        return Transaction(
            hash=to_hex_str(tx_hash),
            sender=native['from'],
            receiver=native.get('to'),
            nonce=int(native['nonce']),
            gas_price=str(int(native['gasPrice'])),
            gas_limit=str(int(native['gas'])),
            gas_consumed=str(int(native['gasUsed'])),
            r=_optional_hex(native.get('r')),
            s=_optional_hex(native.get('s')),
            v=None if native.get('v') is None else int(native['v']),
            index=int(native['transactionIndex']),
            events=tuple(parser.parse(native.get('logs') or [])),
        )
    except KeyError as e:
        raise TransactionShapeError(f"交易缺少字段 {e}") from e
    except (TypeError, ValueError) as e:
        raise TransactionShapeError(f"交易字段格式错误: {e}") from e


class TransactionEnricher:
    """获取单笔交易的完整记录；任何网络错误都直接向上抛出"""

    def __init__(self, source: ChainDataSource, parser: EventParser):
        self.source = source
        self.parser = parser

    def enrich(self, tx_hash: str) -> Transaction:
        native_tx = self.source.transaction(tx_hash)
        receipt = self.source.transaction_receipt(tx_hash)
        if native_tx is None or receipt is None:
            raise TransactionShapeError(f"交易或收据不存在: {tx_hash}")
        tx = merge_transaction(native_tx, receipt, self.parser)
        logger.debug(f"交易 {tx.hash} 解析出 {len(tx.events)} 个事件")
        return tx
