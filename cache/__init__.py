"""cache/ -- Optional Redis cache for auth projections."""
