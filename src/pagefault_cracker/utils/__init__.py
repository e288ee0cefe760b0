"""Constants, dataclasses and errors."""
