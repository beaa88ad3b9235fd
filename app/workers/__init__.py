"""Queue and worker primitives for background processing."""
