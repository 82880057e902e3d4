"""压缩管理器 - 按名称登记策略，在每轮回复结束后运行当前策略并累计指标"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .base import CompactionAction, CompactionStrategy, CompactionContext, CompactResult
from ..utils.logger import logger


@dataclass
class CompactionMetrics:
    """单个策略的累计指标"""
    strategy_name: str
    runs: int = 0
    failures: int = 0
    # 连续失败次数，成功一次即清零；失败的压缩在下一轮重试
    consecutive_failures: int = 0
    tokens_saved: int = 0
    total_duration: float = 0.0
    actions: Dict[str, int] = field(default_factory=dict)
    last_run_at: Optional[datetime] = None

    @property
    def success_count(self) -> int:
        return self.runs - self.failures

    @property
    def success_rate(self) -> float:
        return self.success_count / self.runs if self.runs else 0.0

    @property
    def avg_duration(self) -> float:
        return self.total_duration / self.runs if self.runs else 0.0

    def record(self, result: Optional[CompactResult], duration: float) -> None:
        """result 为 None 表示策略抛出异常或被中断"""
        self.runs += 1
        self.total_duration += duration
        self.last_run_at = datetime.now()

        if result is None or not result.success:
            self.failures += 1
            self.consecutive_failures += 1
            action = CompactionAction.FAILED
        else:
            self.consecutive_failures = 0
            self.tokens_saved += max(result.tokens_saved, 0)
            action = result.action
        self.actions[action.value] = self.actions.get(action.value, 0) + 1


class CompactionManager:
    """压缩管理器

    第一个登记的策略自动成为当前策略；会话只调用 check_and_compact。
    """

    def __init__(self):
        self._strategies: Dict[str, CompactionStrategy] = {}
        self._metrics: Dict[str, CompactionMetrics] = {}
        self.active: Optional[str] = None

    def register_strategy(self, name: str, strategy: CompactionStrategy, activate: bool = False) -> None:
        self._strategies[name] = strategy
        self._metrics.setdefault(name, CompactionMetrics(strategy_name=name))
        if activate or self.active is None:
            self.active = name
        logger.info(f"登记压缩策略: {name}{' (当前)' if self.active == name else ''}")

    def activate(self, name: str) -> None:
        if name not in self._strategies:
            raise ValueError(f"压缩策略 '{name}' 不存在，可用: {', '.join(self._strategies) or '无'}")
        self.active = name

    @property
    def strategy_names(self) -> List[str]:
        return list(self._strategies)

    @property
    def strategy(self) -> CompactionStrategy:
        if self.active is None:
            raise ValueError("尚未登记压缩策略")
        return self._strategies[self.active]

    async def check_and_compact(self, context: CompactionContext, force: bool = False) -> Optional[CompactResult]:
        """未超出预算时返回 None；force=True 时总是交给策略判断"""
        strategy = self.strategy
        name = self.active

        if not force and not strategy.should_compact(context):
            return None

        metrics = self._metrics[name]
        started = time.monotonic()
        result: Optional[CompactResult] = None
        try:
            result = await strategy.compact(context)
        except asyncio.CancelledError:
            logger.warning(f"压缩被中断 [{name}] chat={context.chat.id}")
            raise
        except Exception as e:
            logger.error(f"压缩异常 [{name}]: {e}", exc_info=True)
            raise
        finally:
            metrics.record(result, time.monotonic() - started)

        if result.success:
            logger.info(
                f"压缩完成 [{name}/{result.action.value}] chat={context.chat.id}: "
                f"{result.tokens_before} → {result.tokens_after} tokens"
            )
        else:
            logger.warning(
                f"压缩失败 [{name}]，下一轮重试（连续 {metrics.consecutive_failures} 次）: {result.error}"
            )
        return result

    def get_metrics(self, name: Optional[str] = None) -> CompactionMetrics:
        name = name or self.active
        if name is None or name not in self._metrics:
            return CompactionMetrics(strategy_name=name or "unknown")
        return self._metrics[name]
