"""HTTP surface for the agent and pattern endpoints."""
