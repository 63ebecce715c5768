"""Cross-cutting infrastructure: errors, logging, rate limiting."""
