"""
shiftwork - batch-job scheduler primitives.

Packages:
- shiftwork.core: settings, logging, errors, ORM tables
- shiftwork.script: the compiled step-tree model
- shiftwork.engine: token tree executor, dispatch queue, lifecycle
- shiftwork.worker: polling worker agents
"""

__version__ = "0.3.0"
