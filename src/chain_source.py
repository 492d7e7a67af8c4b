"""
链上数据源
流水线只依赖 ChainDataSource 接口，Web3ChainSource 是基于 web3.py 的实现
"""

import logging
from typing import Any, Mapping, Optional, Protocol

import requests
from requests.adapters import HTTPAdapter
from web3 import Web3
from web3.exceptions import BlockNotFound

logger = logging.getLogger(__name__)


class ChainDataSource(Protocol):
    """流水线需要的链上数据接口，实现必须支持多线程并发调用"""

    def current_height(self) -> int:
        ...

    def block_at(self, height: int, include_transactions: bool = False) -> Optional[Mapping[str, Any]]:
        ...

    def transaction(self, tx_hash: str) -> Mapping[str, Any]:
        ...

    def transaction_receipt(self, tx_hash: str) -> Mapping[str, Any]:
        ...


def to_hex_str(value: Any) -> str:
    """把 HexBytes/bytes 或十六进制字符串统一成 '0x' 开头的字符串"""
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(bytes(value))
    raise TypeError(f"无法转换为十六进制字符串: {type(value).__name__}")


def same_hash(left: Optional[str], right: Optional[str]) -> bool:
    if left is None or right is None:
        return False
    return left.lower() == right.lower()


class Web3ChainSource:
    """基于 web3.py 的链上数据源"""

    def __init__(self, w3: Web3):
        self.w3 = w3

    def current_height(self) -> int:
        return self.w3.eth.block_number

    def block_at(self, height: int, include_transactions: bool = False) -> Optional[Mapping[str, Any]]:
        try:
            return self.w3.eth.get_block(height, full_transactions=include_transactions)
        except BlockNotFound:
            logger.debug(f"区块 {height} 不存在")
            return None

    def transaction(self, tx_hash: str) -> Mapping[str, Any]:
        return self.w3.eth.get_transaction(tx_hash)

    def transaction_receipt(self, tx_hash: str) -> Mapping[str, Any]:
        return self.w3.eth.get_transaction_receipt(tx_hash)


def create_web3(url: str, pool_size: int = 10) -> Web3:
    """创建带连接池的 HTTP Web3 实例，连接池大小与并发线程数一致"""
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=pool_size, pool_maxsize=pool_size)
    session.mount('http://', adapter)
    session.mount('https://', adapter)
    return Web3(Web3.HTTPProvider(url, session=session))
