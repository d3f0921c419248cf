"""
DriveTrack - live driver location tracking.
"""
__version__ = "1.0.0"
