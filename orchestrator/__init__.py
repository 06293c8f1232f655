"""SMS orchestrator - programs, live agents, broadcasts and rate limits."""
