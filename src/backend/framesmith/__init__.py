"""
framesmith - image sequence to video assembly.

Upscale -> interpolate -> encode, with capability-probed backend selection,
graceful fallback to classical backends and weighted progress reporting.
"""

__version__ = "0.1.0"
