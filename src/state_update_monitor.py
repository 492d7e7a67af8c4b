"""
持续监控代币状态更新
每个周期运行一次流水线并在内存中推进检查点，失败时指数退避后重试。
检查点不会持久化，进程重启后从 --from-block / BLOCK_FROM_BLOCK 重新开始。
"""

import argparse
import json
import logging
import os
import sys
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional

from dotenv import load_dotenv
from tqdm import tqdm

from chain_source import Web3ChainSource, create_web3
from state_models import Block, Checkpoint, StateUpdate
from state_update_config import PipelineConfig, env_number
from state_update_errors import ConfigError
from state_update_pipeline import StateUpdatePipeline

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
HISTORY_SIZE = 256


@dataclass(frozen=True)
class MonitorSettings:
    """运行监控进程需要的环境配置"""
    web3_url: str
    token_address: Optional[str] = None
    from_block: int = 0
    poll_interval: float = 1.5
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> 'MonitorSettings':
        load_dotenv(dotenv_path)
        web3_url = os.getenv('WEB3_URL') or os.getenv('ALCHEMY_API_URL')
        if not web3_url:
            raise ConfigError("未找到 WEB3_URL 或 ALCHEMY_API_URL 环境变量")
        return cls(
            web3_url=web3_url,
            token_address=os.getenv('BLOCK_TOKEN_ADDRESS') or None,
            from_block=env_number('BLOCK_FROM_BLOCK', 0, int),
            poll_interval=env_number('POLL_INTERVAL', 1.5, float),
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        )


class StateUpdateMonitor:
    """
    循环调用流水线的调度器

    - 新区块：检查点推进到最后一个区块
    - 链重组：检查点回退一个高度（使用记住的哈希），多个周期后可以退出更深的分叉
    - 失败：记录错误并按 poll_interval * 2^n 退避，最长 max_backoff 秒
    """

    def __init__(self, pipeline: StateUpdatePipeline, checkpoint: Checkpoint,
                 poll_interval: float = 1.5, max_backoff: float = 60.0,
                 on_update: Optional[Callable[[StateUpdate], None]] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.pipeline = pipeline
        self.checkpoint = checkpoint
        self.poll_interval = poll_interval
        self.max_backoff = max_backoff
        self.on_update = on_update
        self.sleep = sleep
        self.failures = 0
        self._history: Dict[int, str] = {}
        if checkpoint.block_hash:
            self._history[checkpoint.block_height] = checkpoint.block_hash

    def _remember(self, blocks: List[Block]):
        for block in blocks:
            self._history[block.block_height] = block.block_hash
        while len(self._history) > HISTORY_SIZE:
            del self._history[min(self._history)]

    def advance(self, update: StateUpdate):
        """根据运行结果推进检查点"""
        if update.reversed_blocks:
            height = self.checkpoint.block_height
            self._history.pop(height, None)
            previous = max(height - 1, 0)
            self.checkpoint = replace(
                self.checkpoint,
                block_height=previous,
                block_hash=self._history.get(previous),
            )
            logger.warning(f"区块 {height} 被回滚，检查点回退到 {previous}")
        elif update.incoming_blocks:
            self._remember(update.incoming_blocks)
            last = update.incoming_blocks[-1]
            self.checkpoint = replace(
                self.checkpoint,
                block_height=last.block_height,
                block_hash=last.block_hash,
            )

    def tick(self) -> StateUpdate:
        update = self.pipeline.get_state_update(self.checkpoint)
        # 回调成功后才推进检查点，失败时下一轮用同一检查点重试
        if self.on_update is not None:
            self.on_update(update)
        self.advance(update)
        return update

    def backoff_delay(self) -> float:
        return min(self.max_backoff, self.poll_interval * 2 ** self.failures)

    def run(self, max_ticks: Optional[int] = None):
        ticks = 0
        while max_ticks is None or ticks < max_ticks:
            ticks += 1
            try:
                update = self.tick()
            except Exception as e:
                self.failures += 1
                delay = self.backoff_delay()
                logger.error(f"状态更新失败 (第 {self.failures} 次): {str(e)}，{delay:.1f}s 后重试")
                self.sleep(delay)
                continue

            self.failures = 0
            # 链重组或者取满了一个窗口时立即进入下一轮
            caught_up = len(update.incoming_blocks) < self.pipeline.config.max_lookup_distance
            if caught_up and not update.reversed_blocks:
                self.sleep(self.poll_interval)


def log_update(update: StateUpdate):
    if update.reversed_blocks:
        logger.info(f"回滚区块: {', '.join(update.reversed_blocks)}")
        return
    for block in update.incoming_blocks:
        logger.info(
            f"区块 {block.block_height} ({block.block_hash}): "
            f"{len(block.transactions)} 笔交易, {len(block.holders_update)} 个持有人变化"
        )


def write_ndjson(update: StateUpdate, path: str, mode: str = 'w') -> int:
    """每个新区块写成一行 JSON"""
    with open(path, mode) as f:
        for block in tqdm(update.incoming_blocks, desc='写入区块', unit='block', disable=not update.incoming_blocks):
            f.write(json.dumps(block.to_dict()) + '\n')
    return len(update.incoming_blocks)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='代币持有人状态更新监控')
    parser.add_argument('--from-block', type=int, help='已处理的最后一个区块高度')
    parser.add_argument('--block-hash', help='已处理的最后一个区块哈希')
    parser.add_argument('--token-address', help='跟踪的代币合约地址')
    parser.add_argument('--once', action='store_true', help='只运行一次并输出结果')
    parser.add_argument('--output', help='把新区块以 NDJSON 格式写入文件')
    parser.add_argument('--max-ticks', type=int, help='最多运行的周期数')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_arg_parser().parse_args(argv)
    settings = MonitorSettings.from_env()
    config = PipelineConfig.from_env()

    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)

    w3 = create_web3(settings.web3_url, pool_size=config.tx_concurrency)
    pipeline = StateUpdatePipeline(Web3ChainSource(w3), config)
    checkpoint = Checkpoint(
        block_height=settings.from_block if args.from_block is None else args.from_block,
        block_hash=args.block_hash,
        token_address=args.token_address or settings.token_address,
    )

    if args.once:
        update = pipeline.get_state_update(checkpoint)
        if args.output:
            count = write_ndjson(update, args.output)
            logger.info(f"已写入 {count} 个区块到 {args.output}")
        else:
            print(json.dumps(update.to_dict(), indent=2))
        return 0

    def on_update(update: StateUpdate):
        log_update(update)
        if args.output:
            write_ndjson(update, args.output, mode='a')

    logger.info(f"开始监控，起始检查点: {checkpoint}")
    monitor = StateUpdateMonitor(
        pipeline, checkpoint,
        poll_interval=settings.poll_interval,
        on_update=on_update,
    )
    try:
        monitor.run(max_ticks=args.max_ticks)
    except KeyboardInterrupt:
        logger.info("监控已停止")
    return 0


if __name__ == "__main__":
    sys.exit(main())
