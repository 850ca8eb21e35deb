"""VoiceLens - ask a spoken question about what the camera sees."""

__version__ = "0.1.0"
__author__ = "VoiceLens Team"

from voicelens.config import Config, load_config

__all__ = ["Config", "load_config", "__version__"]
