"""
CLI layer for host-spine.

Terminal transport only: argument parsing, coloured output and tables. The
launch pipeline lives in ``hostspine.launch``.

Entry point::

    host-spine --help
"""

from hostspine.cli.app import app

__all__ = ["app"]
