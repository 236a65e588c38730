"""layerforge build monitor: a read-only projection over the run ledger.

Modules
-------
projection
    ``MonitorProjection`` reads the ledger and produces ``MonitorSnapshot``
    models, a frozen point-in-time view of a pipeline run.
renderer
    ``MonitorRenderer`` turns a ``MonitorSnapshot`` into Rich renderables.
"""
