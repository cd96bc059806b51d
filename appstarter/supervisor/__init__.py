"""
The Supervisor package.
Manages the lifecycle of command processes.

This package contains the central ProcessManager class and its helper modules,
which together handle starting, stopping, watching and restarting processes.
"""
from .supervisor import ProcessManager
from .slots import ManagedProcess, SlotMap

__all__ = ['ProcessManager', 'ManagedProcess', 'SlotMap']
