"""Broker process handle, installer and $SYS sampler."""

from .installer import BinaryInstaller, Installer
from .process import BrokerHandle, MosquittoProcess
from .sysstats import SysStatsMonitor

__all__ = ["BinaryInstaller", "BrokerHandle", "Installer", "MosquittoProcess", "SysStatsMonitor"]
