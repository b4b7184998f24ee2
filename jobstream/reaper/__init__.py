"""
Reaper module.
Contains the periodic promotion sweep and the optional stalled-job reclaim.
"""

from jobstream.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
