"""压缩策略实现"""

from .rolling_summary import RollingSummaryStrategy

__all__ = ["RollingSummaryStrategy"]
