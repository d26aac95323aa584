"""
Script context modules: env, log.
"""

from pipelibs.engines.script.modules.env import make_env_module
from pipelibs.engines.script.modules.log import make_log_module

__all__ = [
    "make_env_module",
    "make_log_module",
]
