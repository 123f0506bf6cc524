"""Performance-gated deployment pipeline."""
