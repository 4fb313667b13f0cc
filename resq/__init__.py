"""ResQ - emergency incident reporting and dispatch"""

__version__ = "1.0.0"
