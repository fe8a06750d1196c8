"""
pjn_sync - legal case synchronization against the PJN portal.

The Manager Loop scales worker processes from queue depth and schedules;
workers keep each user's causas, folders and movements in step with the
portal.
"""

__version__ = "0.1.0"
