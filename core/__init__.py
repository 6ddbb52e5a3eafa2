"""core/ -- Settings and immutable runtime configuration."""
