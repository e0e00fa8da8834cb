"""Publish host system statistics to an MQTT broker for Home Assistant."""

__version__ = "1.0.0"
