"""
Library config for strata. The values here control how the controller finds
its managed objects and config sources, how it reconciles, and how it logs.
"""

# Local
from .config import library_config


# Delegate attribute access on this module to the loaded library config
def __getattr__(name):
    if name in library_config or hasattr({}, name):
        return getattr(library_config, name)
    raise AttributeError(f"No such config attribute {name}")


__all__ = list(library_config.keys())
