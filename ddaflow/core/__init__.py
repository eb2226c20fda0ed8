"""
Dataflow engine: records, channels, operators, task nodes, flows, the scheduler and the cache. Import the
public names from `ddaflow.api`.
"""
