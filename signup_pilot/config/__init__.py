"""Configuration module for signup-pilot."""

from signup_pilot.config.settings import PilotConfig, load_config

__all__ = ["PilotConfig", "load_config"]
