"""
capture - Local mutation capture.
"""

from finsync.capture.change_capture import ChangeCapture, MutationListener

__all__ = [
    "ChangeCapture",
    "MutationListener",
]
