"""
The Supervisor package.
Manages the lifecycle of the adapter subprocess.

This package contains the ProcessSupervisor and its helper modules, which
together handle launching the adapter, keeping its protocol and diagnostic
streams apart, restarting it once after a crash, and shutting it down.
"""
from .supervisor import ProcessSupervisor
from .protocol import ProtocolReader, ProtocolWriter, write_frame

__all__ = ['ProcessSupervisor', 'ProtocolReader', 'ProtocolWriter', 'write_frame']
