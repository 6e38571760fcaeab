"""Content-generation agents and the fixed-order article pipeline.

Agents are plain objects with an `agent_type` and a `run(ctx)` method; the orchestrator only sequences them,
persists the shared context after every stage and stops at the first failing stage.
"""
