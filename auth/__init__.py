"""auth/ -- Authentication and session management package.

Layer rule: auth/ imports only stdlib, third-party libraries, core/config
and the cache/ TTL helper. It does NOT import from api/.
api/ imports from auth/, not the other way around.
"""
