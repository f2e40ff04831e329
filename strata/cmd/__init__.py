"""
This module holds all of the command classes for strata's main entrypoint
"""

# Local
from .base import CmdBase
from .resolve_cmd import ResolveCmd
from .run_controller_cmd import RunControllerCmd
