"""
状态更新流水线的异常定义
"""


class StateUpdateError(Exception):
    """所有状态更新错误的基类"""


class ConfigError(StateUpdateError, ValueError):
    """配置项缺失或取值不合法"""


class InvalidCheckpointError(StateUpdateError, ValueError):
    """调用方提供的检查点不可用，在任何网络请求之前拒绝"""


class ChainDataError(StateUpdateError):
    """链上数据源返回了无法使用的结果"""


class BlockFetchTimeoutError(ChainDataError, TimeoutError):
    """区块范围请求超过了总超时时间，调用方需要用同一检查点重试"""

    def __init__(self, since: int, window: int, timeout: float):
        super().__init__(
            f"获取区块 {since + 1}..{since + window} 超时 ({timeout}s)"
        )
        self.since = since
        self.window = window
        self.timeout = timeout


class TransactionShapeError(StateUpdateError, ValueError):
    """交易或收据的结构无法解析，属于致命解码错误"""
