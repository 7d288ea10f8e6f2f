"""REST API for definitions, instances and workers.

``create_app()`` in :mod:`shiftwork.api.app` is the composition root.
"""
