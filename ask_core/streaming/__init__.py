"""流式补全管线：解码 -> 聚合 -> 控制 -> 合并。"""

from ask_core.streaming.aggregator import DeltaAggregator
from ask_core.streaming.controller import RequestController, RequestSession, SessionState
from ask_core.streaming.decoder import StreamDecoder
from ask_core.streaming.reconciler import MessageReconciler

__all__ = [
    "DeltaAggregator",
    "MessageReconciler",
    "RequestController",
    "RequestSession",
    "SessionState",
    "StreamDecoder",
]
