"""
deployd - A self-hosted continuous-deployment orchestrator.

Builds each pushed revision into a fresh instance directory, swaps it in for
the running copy and supervises the resulting process. Coordination happens
between independent processes on one host through PID files, a loopback HTTP
control plane and append-only log files.
"""

__version__ = "0.1.0"
