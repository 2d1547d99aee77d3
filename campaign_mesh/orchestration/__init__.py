"""
Orchestration Package

Core coordination components for campaign agents:
- Task dependency scheduling with retries and backoff
- Metric-driven trigger evaluation
- Goal decomposition, consensus and replanning
- Execution monitoring and coordination state

Modules are imported directly (``from campaign_mesh.orchestration.scheduler import ...``);
the schemas depend on ``orchestration.enums`` so nothing is re-exported here.
"""
