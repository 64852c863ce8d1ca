"""
nsctl — NetServa fleet and vhost management from the workstation
"""

__version__ = "0.3.0"

__all__ = ['__version__']
