"""
Worker module.
Contains the handler registry and the worker process entry point.
"""

from docqueue.worker.main import run

__all__ = ["run"]
