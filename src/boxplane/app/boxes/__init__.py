"""Box registry: model, status state machine, and service."""
