"""
host-spine - launch application hosts locally.

- hostspine.core: errors, logging, settings, settings stores
- hostspine.launch: staging, dependency install, process supervision, run coordination
- hostspine.cli: ``host-spine`` command line
"""

__version__ = "0.1.0"
