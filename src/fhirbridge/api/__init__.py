"""FHIRBridge HTTP API."""
