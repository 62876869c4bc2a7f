"""Registration autopilot for camp and class enrollment sites."""

__version__ = "0.4.0"
