"""
Cluster Supervisor

Launches named clusters of worker processes through a process-control
daemon and supervises them:
- operator-initiated shutdown vs unexpected cluster death
- structured demultiplexing of worker stdout/stderr
"""

__version__ = "0.1.0"
