from .loop import ManagerLoop, run_manager_loop
from .queue_probe import DatabaseQueueProbe, ProbeResult, QueueDepthProbe
from .supervisor import InstanceInfo, ProcessSupervisor, SubprocessSupervisor

__all__ = [
    "DatabaseQueueProbe",
    "InstanceInfo",
    "ManagerLoop",
    "ProbeResult",
    "ProcessSupervisor",
    "QueueDepthProbe",
    "SubprocessSupervisor",
    "run_manager_loop",
]
