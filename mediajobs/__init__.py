"""Media job broker, workers and notification bridge."""

__version__ = "0.1.0"
