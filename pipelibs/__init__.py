"""
pipelibs: shared pipeline libraries for job scripts.

Resolves declared libraries to immutable revisions, contributes their
modules, binds their global variables as per-job singletons and carries
those singletons across checkpoints.
"""

__version__ = "0.1.0"
