"""Task delegation core: launching, completion, harvesting, cancellation and broadcasts."""

from .broadcast import BroadcastBus, decode_envelopes, encode_envelope, parse_broadcasts
from .cache import SeenCache
from .cancel import CancellationController
from .events import TaskEventWatcher
from .harvest import ResultHarvester, latest_turn
from .launcher import ASYNC_TASK_PREFIX, OUTPUT_POINTER, TaskLauncher, task_title
from .models import (
    Broadcast,
    BroadcastDelivered,
    BroadcastFailed,
    BroadcastPartial,
    BroadcastsRead,
    ErrorCode,
    OutputBundle,
    TaskCancelled,
    TaskCompleted,
    TaskFailed,
    TaskList,
    TaskMessageSent,
    TaskRunning,
)
from .oracle import CompletionOracle

__all__ = [
    "ASYNC_TASK_PREFIX",
    "Broadcast",
    "BroadcastBus",
    "BroadcastDelivered",
    "BroadcastFailed",
    "BroadcastPartial",
    "BroadcastsRead",
    "CancellationController",
    "CompletionOracle",
    "ErrorCode",
    "OUTPUT_POINTER",
    "OutputBundle",
    "ResultHarvester",
    "SeenCache",
    "TaskCancelled",
    "TaskCompleted",
    "TaskEventWatcher",
    "TaskFailed",
    "TaskList",
    "TaskMessageSent",
    "TaskRunning",
    "decode_envelopes",
    "encode_envelope",
    "latest_turn",
    "parse_broadcasts",
    "task_title",
]
