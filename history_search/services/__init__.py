"""Service layer: cache, fetcher, aggregation, pipeline and history sources."""
