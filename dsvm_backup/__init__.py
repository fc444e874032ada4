"""Backup subsystem of the data-science VM."""

__version__ = "0.3.0"
