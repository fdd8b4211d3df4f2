"""HTTP surface: schemas, service wiring, health probes and versioned routers."""
