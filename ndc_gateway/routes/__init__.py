"""HTTP routers: probes, service index and metrics."""
