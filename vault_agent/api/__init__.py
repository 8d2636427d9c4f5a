"""HTTP API for the vault agent."""
