"""HTTP API for the agentshift server."""
