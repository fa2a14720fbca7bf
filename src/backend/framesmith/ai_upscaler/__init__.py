"""
AI Backends Package

Super resolution (Real-ESRGAN, Lanczos), frame interpolation (RIFE, blend),
capability probing, model weight management and the ffmpeg frame writer.
"""

from . import utils
from .model_manager import ModelManager, get_model_manager
from .capabilities import CapabilityProbe

__all__ = ['utils', 'ModelManager', 'get_model_manager', 'CapabilityProbe']
