"""
staysync - Keep property booking calendars in sync across channel feeds.
"""

__version__ = "0.1.0"
