"""Collection, aggregation and live propagation service for FHE Analytics."""
