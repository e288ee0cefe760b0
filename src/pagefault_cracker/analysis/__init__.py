"""Offline recovery: offset scanning, digit and swap-bit recovery, forgery."""
