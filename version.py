"""
Version information for the CRM PDF generator.

This file is the single source of truth for the distribution version.
setup.py parses it and both packages import __version__ from here.
"""

__version__ = "0.2.0"
__version_info__ = (0, 2, 0)
