"""HTTP layer: guard pipeline, error envelopes and versioned routers."""
