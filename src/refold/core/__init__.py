"""Core data structures: histograms, responses, the cache, configuration and linear algebra."""
