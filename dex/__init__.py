"""DEX quoting: per-venue adapters and the concurrent quote aggregator."""
