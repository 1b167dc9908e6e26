"""Simulated crane device for Azure IoT Hub."""

__version__ = "0.1.0"
