"""HTTP API for the Tessera runtime."""
