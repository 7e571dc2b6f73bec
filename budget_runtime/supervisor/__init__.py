"""Two-process supervision: health gate, process-tree termination, PID file."""

from .health_gate import HealthGate
from .pid_file import PidFile, stop_running_instance
from .process_tree import get_process_tree_killer, kill_process_tree
from .supervisor import ChildProcess, ChildRole, ChildSpec, ProcessSupervisor, SupervisorState

__all__ = [
    "HealthGate",
    "PidFile",
    "stop_running_instance",
    "get_process_tree_killer",
    "kill_process_tree",
    "ChildProcess",
    "ChildRole",
    "ChildSpec",
    "ProcessSupervisor",
    "SupervisorState",
]
